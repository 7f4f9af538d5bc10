"""Output helpers for diagnostics histories."""

from . import writer

__all__ = ["writer"]
