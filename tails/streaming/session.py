"""SubscriberSession - bridges one streaming HTTP connection to the broker."""

import asyncio
import logging
from typing import AsyncIterator, Awaitable, Callable, Optional

from ..core.events import format_sse, sse_comment, sse_retry
from ..core.tasks import cancel_and_wait
from .broker import CloseReason, EventBroker, Subscription

logger = logging.getLogger(__name__)

DisconnectCheck = Callable[[], Awaitable[bool]]


class SubscriberSession:
    """One open Server-Sent Events connection.

    The session joins the broker when streaming starts and leaves exactly once
    when it ends: normal close, transport error, task cancellation or client
    disconnect noticed by the watcher.

    Usage with FastAPI:
        @app.get("/sse")
        async def sse(request: Request):
            session = SubscriberSession(broker, is_disconnected=request.is_disconnected)
            return StreamingResponse(session.stream(), media_type="text/event-stream")
    """

    def __init__(
        self,
        broker: EventBroker,
        heartbeat_interval: float = 30.0,
        event_name: Optional[str] = "message",
        retry_ms: Optional[int] = 3000,
        is_disconnected: Optional[DisconnectCheck] = None,
        disconnect_poll_interval: float = 1.0
    ):
        """Initialize the session.

        Args:
            broker: The broker to join.
            heartbeat_interval: Seconds of silence before a heartbeat comment.
            event_name: SSE event field for each line. Omitted when empty.
            retry_ms: Reconnection delay sent to the client. None to omit.
            is_disconnected: Async callable reporting client disconnect.
            disconnect_poll_interval: Seconds between disconnect checks.
        """
        self._broker = broker
        self._heartbeat_interval = heartbeat_interval
        self._event_name = event_name
        self._retry_ms = retry_ms
        self._is_disconnected = is_disconnected
        self._disconnect_poll_interval = disconnect_poll_interval
        self._subscription: Optional[Subscription] = None
        self._left = False

    @property
    def subscription(self) -> Optional[Subscription]:
        """Get the broker subscription, once joined."""
        return self._subscription

    @property
    def is_open(self) -> bool:
        """Check if the session is joined and still receiving."""
        return self._subscription is not None and not self._left

    async def open(self) -> Subscription:
        """Join the broker.

        Raises:
            BrokerStoppedError: If the broker is not running.
            SubscriberCapacityError: If the broker is full.
        """
        if self._subscription is None:
            self._subscription = await self._broker.join()
        return self._subscription

    def close(self, reason: CloseReason = CloseReason.LEFT) -> None:
        """Stop receiving and leave the broker. Only the first call has effect."""
        if self._left or self._subscription is None:
            return
        self._left = True
        self._subscription.close(reason)
        self._broker.leave(self._subscription)
        logger.debug("Session %s closed (%s)", self._subscription.id, self._subscription.close_reason.value)

    async def stream(self) -> AsyncIterator[str]:
        """Generate the SSE stream for this connection.

        Yields:
            SSE formatted frames, one per line, plus heartbeat comments.
        """
        subscription = await self.open()
        watcher: Optional[asyncio.Task] = None
        if self._is_disconnected is not None:
            watcher = asyncio.create_task(self._watch_disconnect())

        try:
            if self._retry_ms is not None:
                yield sse_retry(self._retry_ms)
            yield sse_comment(f"connected {subscription.id}")

            while True:
                try:
                    event = await subscription.get(timeout=self._heartbeat_interval)
                except asyncio.TimeoutError:
                    yield sse_comment("heartbeat")
                    continue

                if event is None:
                    if subscription.close_reason in (CloseReason.PREEMPTED, CloseReason.SHUTDOWN):
                        yield format_sse(subscription.close_reason.value, "close")
                    break

                yield event.to_sse(self._event_name)
        finally:
            self.close()
            if watcher is not None:
                await cancel_and_wait(watcher)

    async def _watch_disconnect(self) -> None:
        """Close the session as soon as the client goes away."""
        while not self._left:
            try:
                disconnected = await self._is_disconnected()
            except Exception:
                logger.debug("Disconnect check failed", exc_info=True)
                disconnected = True
            if disconnected:
                self.close(CloseReason.DISCONNECTED)
                return
            await asyncio.sleep(self._disconnect_poll_interval)
