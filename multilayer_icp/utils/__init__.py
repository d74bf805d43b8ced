"""Shared helpers (logging setup)."""

from .setup_logging import setup_logging

__all__ = ["setup_logging"]
