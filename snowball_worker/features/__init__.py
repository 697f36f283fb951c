"""Feature slices of the worker service."""
