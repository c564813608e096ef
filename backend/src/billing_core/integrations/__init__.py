"""Clients for collaborators outside the billing core."""
