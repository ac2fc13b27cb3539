"""SourceRunner - pumps a line source into the broker and restarts it."""

import asyncio
import logging
from contextlib import aclosing
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

from ..core.tasks import cancel_and_wait
from ..exceptions import BrokerStoppedError, SourceError, SourceExitedError
from ..streaming.broker import EventBroker
from .tailer import LineSource

logger = logging.getLogger(__name__)


class SourceState(str, Enum):
    """Lifecycle of the source runner."""
    IDLE = "idle"
    RUNNING = "running"
    BACKOFF = "backoff"
    FINISHED = "finished"
    FAILED = "failed"
    STOPPED = "stopped"


@dataclass
class RestartPolicy:
    """When and how fast to respawn a line source that exited.

    Attributes:
        enabled: Respawn at all. When False a single run is authoritative.
        initial_backoff: Delay before the first respawn, in seconds.
        max_backoff: Upper bound for the delay.
        multiplier: Growth factor between consecutive failed runs.
        max_attempts: Consecutive failed runs tolerated before giving up.
            None retries forever.
    """
    enabled: bool = True
    initial_backoff: float = 0.5
    max_backoff: float = 30.0
    multiplier: float = 2.0
    max_attempts: Optional[int] = 10

    def delay(self, attempt: int) -> float:
        """Get the backoff before the given (1-based) consecutive attempt."""
        return min(self.max_backoff, self.initial_backoff * self.multiplier ** (attempt - 1))


class SourceRunner:
    """The reader task between a LineSource and the broker.

    A run that produced at least one line resets the failure count, so only
    back-to-back failures count against max_attempts.

    Usage:
        runner = SourceRunner(TailProcessSource(path), broker)
        runner.start()
        ...
        await runner.stop()
    """

    def __init__(
        self,
        source: LineSource,
        broker: EventBroker,
        policy: Optional[RestartPolicy] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep
    ):
        """Initialize the runner.

        Args:
            source: The line source to pump.
            broker: The broker to publish into.
            policy: Restart policy. Defaults to RestartPolicy().
            sleep: Coroutine used for backoff delays.
        """
        self._source = source
        self._broker = broker
        self._policy = policy or RestartPolicy()
        self._sleep = sleep
        self._state = SourceState.IDLE
        self._task: Optional[asyncio.Task] = None
        self._runs = 0
        self._restarts = 0
        self._failures = 0
        self._lines = 0
        self._last_error: Optional[str] = None
        self._last_line_at: Optional[datetime] = None

    @property
    def state(self) -> SourceState:
        """Get the runner state."""
        return self._state

    @property
    def restarts(self) -> int:
        """Get the number of respawns so far."""
        return self._restarts

    @property
    def last_error(self) -> Optional[str]:
        """Get the message of the last source error."""
        return self._last_error

    def status(self) -> Dict[str, Any]:
        """Get an operator-facing status summary."""
        return {
            "state": self._state.value,
            "path": str(self._source.path),
            "runs": self._runs,
            "restarts": self._restarts,
            "consecutive_failures": self._failures,
            "lines": self._lines,
            "last_error": self._last_error,
            "last_line_at": self._last_line_at.isoformat() if self._last_line_at else None,
        }

    def start(self) -> asyncio.Task:
        """Run in a background task."""
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())
            self._task.add_done_callback(self._on_done)
        return self._task

    async def stop(self) -> None:
        """Cancel the background task."""
        task, self._task = self._task, None
        try:
            if task is not None and not task.done():
                await cancel_and_wait(task)
        finally:
            if self._state in (SourceState.RUNNING, SourceState.BACKOFF):
                self._state = SourceState.STOPPED

    async def run(self) -> None:
        """Pump lines until the source fails for good or the broker stops."""
        while True:
            self._state = SourceState.RUNNING
            self._runs += 1
            produced = False
            try:
                async with aclosing(self._source.lines()) as lines:
                    async for line in lines:
                        produced = True
                        self._lines += 1
                        self._last_line_at = datetime.now(timezone.utc)
                        await self._broker.publish(line)
                error: SourceError = SourceExitedError("line source ended")
            except SourceError as e:
                error = e
            except OSError as e:
                error = SourceExitedError(str(e))
            except BrokerStoppedError:
                self._state = SourceState.STOPPED
                return

            self._last_error = str(error)
            if produced:
                self._failures = 0

            if not error.retryable:
                self._state = SourceState.FAILED
                logger.error("Line source failed: %s", error)
                return

            if not self._policy.enabled:
                self._state = SourceState.FINISHED
                logger.info("Line source finished: %s", error)
                return

            self._failures += 1
            max_attempts = self._policy.max_attempts
            if max_attempts is not None and self._failures > max_attempts:
                self._state = SourceState.FAILED
                logger.error(
                    "Line source failed %d times in a row, giving up: %s",
                    self._failures, error
                )
                return

            delay = self._policy.delay(self._failures)
            self._state = SourceState.BACKOFF
            logger.warning("Line source exited (%s); restarting in %.1fs", error, delay)
            await self._sleep(delay)
            self._restarts += 1

    def _on_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._state = SourceState.FAILED
            self._last_error = str(exc)
            logger.error("Source runner crashed", exc_info=exc)
