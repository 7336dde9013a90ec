"""Network share session management."""

from .session import ShareSession

__all__ = ["ShareSession"]
