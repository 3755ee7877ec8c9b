"""Kwilt activity completion engine."""

from kwilt.core.logger import configure_logging

__all__ = ["configure_logging"]
