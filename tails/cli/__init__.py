"""Tails command line interface."""

from .main import cli

__all__ = ["cli"]
