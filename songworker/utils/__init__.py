"""Utility helpers shared across songworker modules."""
