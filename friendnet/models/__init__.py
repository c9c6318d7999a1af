"""Convenience exports for ORM models."""
from .document import Document

__all__ = ["Document"]
