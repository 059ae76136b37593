"""Shared helpers: paths, logging, error formatting."""
