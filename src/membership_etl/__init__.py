"""Bulk member import for the society membership backend."""

__version__ = "0.1.0"
