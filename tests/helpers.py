"""Test helpers shared across Tails test modules."""

import asyncio
from typing import AsyncIterator, List, Sequence, Tuple

from tails.exceptions import SourceError
from tails.source.tailer import LineSource
from tails.streaming.broker import EventBroker, Subscription


class ScriptedSource(LineSource):
    """LineSource whose runs are scripted as (lines, error) pairs.

    Each call to lines() plays the next run: it yields the lines, then raises
    the error. Calls past the end of the script replay the last run.
    """

    def __init__(self, runs: Sequence[Tuple[List[str], SourceError]], path: str = "scripted.log"):
        super().__init__(path)
        self._runs = list(runs)
        self.started = 0

    async def lines(self) -> AsyncIterator[str]:
        index = min(self.started, len(self._runs) - 1)
        self.started += 1
        lines, error = self._runs[index]
        for line in lines:
            yield line
        raise error


async def barrier(broker: EventBroker) -> None:
    """Wait until the broker loop has handled every message sent so far.

    Joining an already-closed subscription is acknowledged in FIFO order
    without touching the registry.
    """
    marker = broker.create_subscription()
    marker.close()
    await broker.join(marker)


async def drain(subscription: Subscription) -> List[str]:
    """Read every event currently queued for a subscription."""
    received = []
    while subscription.pending:
        event = await subscription.get(timeout=1.0)
        if event is None:
            break
        received.append(event.data)
    return received


async def wait_for_condition(predicate, timeout: float = 2.0) -> None:
    """Poll predicate until it returns True."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)
