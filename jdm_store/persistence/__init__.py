"""Flat-file input for the store."""

from .csv_layer import CSVReader

__all__ = ["CSVReader"]
