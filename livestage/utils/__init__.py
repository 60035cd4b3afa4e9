"""Utility helpers for the session engine."""

from .logging import configure_logging

__all__ = ["configure_logging"]
