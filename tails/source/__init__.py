"""Tails line sources and the runner that feeds them into the broker."""

from .runner import RestartPolicy, SourceRunner, SourceState
from .tailer import (
    DEFAULT_TAIL_COMMAND,
    FileFollowSource,
    LineSource,
    TailProcessSource,
    create_source,
)

__all__ = [
    "LineSource",
    "TailProcessSource",
    "FileFollowSource",
    "create_source",
    "DEFAULT_TAIL_COMMAND",
    "SourceRunner",
    "RestartPolicy",
    "SourceState",
]
