"""Clinic CRM scheduling core."""

__version__ = "0.1.0"
