"""Payme merchant API: webhook endpoint for the Payme transaction protocol."""

__version__ = "1.0.0"
