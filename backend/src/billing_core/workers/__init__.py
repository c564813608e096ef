"""Background workers for scheduled billing jobs."""
