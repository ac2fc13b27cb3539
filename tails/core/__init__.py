"""Core data types for Tails."""

from .events import LineEvent, format_sse, sse_comment, sse_retry

__all__ = ["LineEvent", "format_sse", "sse_comment", "sse_retry"]
