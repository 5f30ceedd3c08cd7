"""Persistence and request-context primitives shared by the scheduling core."""
