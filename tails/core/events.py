"""LineEvent - one tailed line, and its Server-Sent Events wire format."""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class LineEvent:
    """A single line read from the tailed file.

    Two events are equal when their text is equal; the receive timestamp is
    informational only.
    """
    data: str
    received_at: datetime = field(
        default_factory=lambda: datetime.now(timezone.utc),
        compare=False,
        repr=False,
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "data": self.data,
            "received_at": self.received_at.isoformat(),
        }

    def to_sse(self, event_name: Optional[str] = "message") -> str:
        """Format this line as a Server-Sent Events frame."""
        return format_sse(self.data, event_name)

    @classmethod
    def from_raw(cls, raw: str) -> "LineEvent":
        """Create an event from a raw line, stripping the line terminator."""
        return cls(data=raw.rstrip("\r\n"))


def format_sse(data: str, event_name: Optional[str] = None) -> str:
    """Format data as an SSE frame.

    Args:
        data: The payload. Embedded line breaks become separate ``data:`` lines.
        event_name: Optional ``event:`` field. Omitted when empty.

    Returns:
        SSE formatted string terminated by a blank line.
    """
    lines = []
    if event_name:
        lines.append(f"event: {event_name}")
    for part in data.replace("\r\n", "\n").replace("\r", "\n").split("\n"):
        lines.append(f"data: {part}")
    return "\n".join(lines) + "\n\n"


def sse_comment(text: str) -> str:
    """Format an SSE comment frame (ignored by EventSource clients)."""
    return f": {text}\n\n"


def sse_retry(milliseconds: int) -> str:
    """Format the SSE reconnection delay field."""
    return f"retry: {int(milliseconds)}\n\n"
