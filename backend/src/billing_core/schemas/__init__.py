"""Pydantic schemas for the billing core."""
