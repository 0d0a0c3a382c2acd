"""HTTP status surface for the worker."""
