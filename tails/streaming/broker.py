"""EventBroker - single-owner fan-out of tailed lines to subscribers.

All registry mutations and broadcasts go through one asyncio task reading a
FIFO inbox, so the subscriber registry needs no lock.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union
from uuid import uuid4

from ..core.events import LineEvent
from ..core.tasks import cancel_and_wait
from ..exceptions import BrokerStoppedError, SubscriberCapacityError

logger = logging.getLogger(__name__)


class DeliveryPolicy(str, Enum):
    """What the broker does when a subscriber's queue is full."""
    DROP = "drop"
    TIMEOUT = "timeout"


class CapacityMode(str, Enum):
    """What the broker does with a join once max_subscribers is reached."""
    REJECT = "reject"
    PREEMPT = "preempt"


class CloseReason(str, Enum):
    """Why a subscription stopped receiving events."""
    LEFT = "left"
    DISCONNECTED = "disconnected"
    PREEMPTED = "preempted"
    TIMEOUT = "timeout"
    SHUTDOWN = "shutdown"


class Subscription:
    """A subscriber's private delivery queue.

    The object itself is the subscriber identity. The broker loop is the only
    writer; the owning session is the only reader.
    """

    def __init__(self, maxsize: int = 1000):
        """Initialize the subscription.

        Args:
            maxsize: Queue capacity. 0 means unbounded.
        """
        self.id = str(uuid4())[:8]
        self.connected_at = datetime.now(timezone.utc)
        self.delivered = 0
        self.dropped = 0
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._closed = asyncio.Event()
        self._close_reason: Optional[CloseReason] = None

    def __repr__(self) -> str:
        state = f"closed={self._close_reason.value}" if self._close_reason else "open"
        return f"<Subscription {self.id} {state} pending={self.pending}>"

    @property
    def closed(self) -> bool:
        """Check if the subscription has been closed."""
        return self._closed.is_set()

    @property
    def close_reason(self) -> Optional[CloseReason]:
        """Get the reason of the first close() call."""
        return self._close_reason

    @property
    def pending(self) -> int:
        """Get the number of events waiting to be read."""
        return self._queue.qsize()

    def close(self, reason: CloseReason = CloseReason.LEFT) -> bool:
        """Stop delivery and wake a reader blocked in get().

        Returns:
            True if this call closed the subscription, False if already closed.
        """
        if self._closed.is_set():
            return False
        self._close_reason = reason
        self._closed.set()
        return True

    def offer(self, event: LineEvent) -> bool:
        """Queue an event without waiting.

        Returns:
            False if the queue is full and the event was dropped.
        """
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.dropped += 1
            return False
        self.delivered += 1
        return True

    async def put(self, event: LineEvent, timeout: float) -> bool:
        """Queue an event, waiting up to timeout seconds for room.

        Returns early with False if the subscription is closed meanwhile.

        Returns:
            True if the event was queued.
        """
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            pass
        else:
            self.delivered += 1
            return True

        put_task = asyncio.ensure_future(self._queue.put(event))
        close_task = asyncio.ensure_future(self._closed.wait())
        try:
            done, _ = await asyncio.wait(
                {put_task, close_task},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for task in (put_task, close_task):
                if not task.done():
                    task.cancel()

        if put_task in done:
            self.delivered += 1
            return True
        return False

    async def get(self, timeout: Optional[float] = None) -> Optional[LineEvent]:
        """Wait for the next event.

        Args:
            timeout: Seconds to wait. None waits forever.

        Returns:
            The next event, or None once the subscription is closed.

        Raises:
            asyncio.TimeoutError: If nothing arrived within timeout.
        """
        if self._closed.is_set():
            return None
        try:
            return self._queue.get_nowait()
        except asyncio.QueueEmpty:
            pass

        get_task = asyncio.ensure_future(self._queue.get())
        close_task = asyncio.ensure_future(self._closed.wait())
        try:
            done, _ = await asyncio.wait(
                {get_task, close_task},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            for task in (get_task, close_task):
                if not task.done():
                    task.cancel()

        if self._closed.is_set():
            return None
        if get_task in done:
            return get_task.result()
        raise asyncio.TimeoutError()


@dataclass
class Join:
    """Inbox message: register a subscription and resolve ack."""
    subscription: Subscription
    ack: asyncio.Future


@dataclass
class Leave:
    """Inbox message: deregister a subscription if present."""
    subscription: Subscription


@dataclass
class Publish:
    """Inbox message: broadcast an event to every registered subscription."""
    event: LineEvent


class EventBroker:
    """Fan-out broker between one line producer and many subscribers.

    Join, Leave and Publish are messages on one FIFO inbox handled strictly
    one at a time by the broker loop, which is the only writer of the
    registry.

    Usage:
        broker = EventBroker(policy=DeliveryPolicy.DROP)
        await broker.start()

        subscription = await broker.join()
        await broker.publish("line1")
        event = await subscription.get()

        broker.leave(subscription)
        await broker.stop()
    """

    def __init__(
        self,
        policy: Union[DeliveryPolicy, str] = DeliveryPolicy.DROP,
        queue_size: int = 1000,
        send_timeout: float = 5.0,
        max_subscribers: Optional[int] = None,
        capacity_mode: Union[CapacityMode, str] = CapacityMode.REJECT,
        ingest_queue_size: int = 1024
    ):
        """Initialize the EventBroker.

        Args:
            policy: Delivery policy for subscribers whose queue is full.
            queue_size: Per-subscriber queue capacity. 0 means unbounded.
            send_timeout: Seconds the TIMEOUT policy waits before evicting.
            max_subscribers: Optional limit on concurrent subscribers.
            capacity_mode: Reject new joins or preempt the oldest subscriber
                once max_subscribers is reached.
            ingest_queue_size: Events publish() may run ahead of the loop.
                0 means unbounded.
        """
        if queue_size < 0:
            raise ValueError("queue_size must be >= 0")
        if send_timeout <= 0:
            raise ValueError("send_timeout must be > 0")
        if max_subscribers is not None and max_subscribers < 1:
            raise ValueError("max_subscribers must be >= 1")
        if ingest_queue_size < 0:
            raise ValueError("ingest_queue_size must be >= 0")

        self._policy = DeliveryPolicy(policy)
        self._queue_size = queue_size
        self._send_timeout = send_timeout
        self._max_subscribers = max_subscribers
        self._capacity_mode = CapacityMode(capacity_mode)
        self._ingest_queue_size = ingest_queue_size

        self._inbox: asyncio.Queue = asyncio.Queue()
        self._ingest_space = asyncio.Event()
        self._ingest_space.set()
        self._backlog = 0
        self._subscribers: Dict[Subscription, bool] = {}
        self._task: Optional[asyncio.Task] = None
        self._running = False

        self._published = 0
        self._delivered = 0
        self._dropped = 0
        self._evicted = 0

    @property
    def is_running(self) -> bool:
        """Check if the broker loop is running."""
        return self._running

    @property
    def policy(self) -> DeliveryPolicy:
        """Get the delivery policy."""
        return self._policy

    @property
    def subscriber_count(self) -> int:
        """Get the number of registered subscribers."""
        return len(self._subscribers)

    @property
    def subscribers(self) -> List[Subscription]:
        """Get a snapshot of the registry in registration order."""
        return list(self._subscribers)

    def create_subscription(self) -> Subscription:
        """Create an unregistered subscription sized for this broker."""
        return Subscription(maxsize=self._queue_size)

    async def start(self) -> None:
        """Spawn the broker loop. Must be called from a running event loop."""
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._listen())
        logger.debug("Broker started (policy=%s)", self._policy.value)

    async def stop(self) -> None:
        """Stop the loop and close every subscription.

        Pending publishes are discarded and pending joins fail with
        BrokerStoppedError.
        """
        if not self._running:
            return
        self._running = False

        task, self._task = self._task, None
        try:
            if task is not None:
                await cancel_and_wait(task)
        finally:
            for subscription in list(self._subscribers):
                subscription.close(CloseReason.SHUTDOWN)
            self._subscribers.clear()

            while not self._inbox.empty():
                message = self._inbox.get_nowait()
                if isinstance(message, Join) and not message.ack.done():
                    message.ack.set_exception(BrokerStoppedError())
            self._backlog = 0
            self._ingest_space.set()
            logger.debug("Broker stopped")

    async def join(self, subscription: Optional[Subscription] = None) -> Subscription:
        """Register a subscriber.

        Returns once the broker loop has registered it, so every event
        published afterwards is delivered to it. Joining twice is a no-op.

        Args:
            subscription: Optional subscription. Created if not provided.

        Returns:
            The registered subscription.

        Raises:
            BrokerStoppedError: If the broker is not running.
            SubscriberCapacityError: If max_subscribers is reached in REJECT mode.
        """
        self._ensure_running()
        if subscription is None:
            subscription = self.create_subscription()

        ack = asyncio.get_running_loop().create_future()
        self._inbox.put_nowait(Join(subscription, ack))
        try:
            await ack
        except asyncio.CancelledError:
            self.leave(subscription)
            raise
        return subscription

    def leave(self, subscription: Subscription) -> None:
        """Deregister a subscriber without waiting.

        Safe to call for unknown subscriptions, more than once, or after the
        broker stopped.
        """
        if not self._running:
            return
        self._inbox.put_nowait(Leave(subscription))

    async def publish(self, event: Union[LineEvent, str]) -> None:
        """Queue an event for broadcast.

        Suspends while the loop is ingest_queue_size events behind.

        Raises:
            BrokerStoppedError: If the broker is not running.
        """
        self._ensure_running()
        event = self._coerce(event)
        while self._ingest_full():
            self._ingest_space.clear()
            await self._ingest_space.wait()
            self._ensure_running()
        self._backlog += 1
        self._inbox.put_nowait(Publish(event))

    def publish_nowait(self, event: Union[LineEvent, str]) -> bool:
        """Queue an event for broadcast without waiting.

        Returns:
            False if the ingest queue is full and the event was not queued.

        Raises:
            BrokerStoppedError: If the broker is not running.
        """
        self._ensure_running()
        if self._ingest_full():
            return False
        self._backlog += 1
        self._inbox.put_nowait(Publish(self._coerce(event)))
        return True

    def stats(self) -> Dict[str, Any]:
        """Get broker counters."""
        return {
            "running": self._running,
            "policy": self._policy.value,
            "subscribers": len(self._subscribers),
            "max_subscribers": self._max_subscribers,
            "capacity_mode": self._capacity_mode.value,
            "published": self._published,
            "delivered": self._delivered,
            "dropped": self._dropped,
            "evicted": self._evicted,
            "backlog": self._backlog,
        }

    async def __aenter__(self) -> "EventBroker":
        await self.start()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.stop()

    def _ensure_running(self) -> None:
        if not self._running:
            raise BrokerStoppedError()

    def _ingest_full(self) -> bool:
        return 0 < self._ingest_queue_size <= self._backlog

    @staticmethod
    def _coerce(event: Union[LineEvent, str]) -> LineEvent:
        if isinstance(event, LineEvent):
            return event
        return LineEvent(data=event)

    async def _listen(self) -> None:
        """Broker loop: the only code that touches the registry."""
        while True:
            message = await self._inbox.get()
            try:
                if isinstance(message, Publish):
                    try:
                        await self._broadcast(message.event)
                    finally:
                        self._backlog -= 1
                        self._ingest_space.set()
                elif isinstance(message, Join):
                    self._register(message)
                elif isinstance(message, Leave):
                    self._unregister(message.subscription, CloseReason.LEFT)
            except Exception:
                logger.exception("Broker failed to handle %s message", type(message).__name__)

    def _register(self, message: Join) -> None:
        subscription = message.subscription
        # Caller was cancelled before we got here.
        if message.ack.done():
            return

        if subscription in self._subscribers or subscription.closed:
            message.ack.set_result(subscription)
            return

        if self._max_subscribers is not None and len(self._subscribers) >= self._max_subscribers:
            if self._capacity_mode is CapacityMode.REJECT:
                logger.warning(
                    "Rejected client %s. %d/%d registered clients",
                    subscription.id, len(self._subscribers), self._max_subscribers
                )
                message.ack.set_exception(SubscriberCapacityError(self._max_subscribers))
                return
            oldest = next(iter(self._subscribers))
            self._unregister(oldest, CloseReason.PREEMPTED)
            logger.info("Client %s preempted by client %s", oldest.id, subscription.id)

        self._subscribers[subscription] = True
        message.ack.set_result(subscription)
        logger.info("Client added. %d registered clients", len(self._subscribers))

    def _unregister(self, subscription: Subscription, reason: CloseReason) -> bool:
        if self._subscribers.pop(subscription, None) is None:
            return False
        subscription.close(reason)
        logger.info("Removed client. %d registered clients", len(self._subscribers))
        return True

    async def _broadcast(self, event: LineEvent) -> None:
        self._published += 1
        for subscription in list(self._subscribers):
            if subscription.closed:
                continue

            if self._policy is DeliveryPolicy.DROP:
                if subscription.offer(event):
                    self._delivered += 1
                    continue
                self._dropped += 1
                if subscription.dropped == 1 or subscription.dropped % 100 == 0:
                    logger.warning(
                        "Client %s is not keeping up: %d events dropped",
                        subscription.id, subscription.dropped
                    )
                continue

            if await subscription.put(event, self._send_timeout):
                self._delivered += 1
            elif not subscription.closed:
                self._evicted += 1
                self._unregister(subscription, CloseReason.TIMEOUT)
                logger.warning(
                    "Evicted client %s: no room for %.1fs",
                    subscription.id, self._send_timeout
                )
