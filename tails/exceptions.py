"""Exception hierarchy for Tails.

HTTP-facing errors carry the status code the dashboard translates them into.
"""

from typing import List, Optional


class TailsError(Exception):
    """Base exception for all Tails errors."""

    status_code: int = 500

    def __init__(self, message: str = "An internal error occurred") -> None:
        self.message = message
        super().__init__(message)


class BrokerStoppedError(TailsError):
    """The broker is not running."""

    status_code = 503

    def __init__(self, message: str = "Event broker is not running") -> None:
        super().__init__(message)


class SubscriberCapacityError(TailsError):
    """The broker refused a join because its subscriber limit is reached."""

    status_code = 503

    def __init__(self, limit: int) -> None:
        self.limit = limit
        super().__init__(f"Maximum client connections reached ({limit})")


class StreamingUnsupportedError(TailsError):
    """The transport cannot flush a response incrementally."""

    status_code = 500

    def __init__(self, message: str = "Streaming unsupported!") -> None:
        super().__init__(message)


class SourceError(TailsError):
    """The line source stopped producing lines.

    ``retryable`` tells the runner whether respawning the source can help.
    """

    retryable: bool = True


class SourceExitedError(SourceError):
    """The tail process exited or the followed file went away."""

    retryable = True

    def __init__(self, message: str, returncode: Optional[int] = None) -> None:
        self.returncode = returncode
        super().__init__(message)


class SourceUnavailableError(SourceError):
    """The line source cannot be started at all."""

    retryable = False


class ConfigError(TailsError):
    """Invalid configuration."""

    def __init__(self, message: str, errors: Optional[List[str]] = None) -> None:
        self.errors = errors or []
        super().__init__(message)
