"""Persistence of research runs on the local filesystem."""

from .run_store import RunStore

__all__ = ["RunStore"]
