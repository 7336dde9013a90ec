"""Command line interface for nas-backup-agent."""

from .dispatcher import main

__all__ = ["main"]
