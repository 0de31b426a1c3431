"""Shared helpers (logging and retry decorators)."""
