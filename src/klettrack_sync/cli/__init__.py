"""Command line interface for klettrack-sync."""

from klettrack_sync.cli.main import app, main

__all__ = ["app", "main"]
