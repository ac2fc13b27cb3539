"""Tails Dashboard - web viewer and SSE endpoint."""

from .app import create_app, run_server

__all__ = ["create_app", "run_server"]
