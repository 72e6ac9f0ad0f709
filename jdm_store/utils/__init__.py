"""Shared helpers: paths, logging, dates, error formatting."""
