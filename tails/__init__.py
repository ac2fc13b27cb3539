"""Tails - serve a growing log file to the web over Server-Sent Events.

Every line appended to the tailed file is pushed, in order, to every
connected browser.

Usage:
    from tails import EventBroker

    async with EventBroker() as broker:
        subscription = await broker.join()
        await broker.publish("line1")
        event = await subscription.get()

CLI:
    tails serve ./app.log 8080       # Serve a file
    tails commands                   # List commands
"""

__version__ = "1.0.0"

from .core.events import LineEvent
from .exceptions import (
    BrokerStoppedError,
    ConfigError,
    SourceError,
    SourceExitedError,
    SourceUnavailableError,
    StreamingUnsupportedError,
    SubscriberCapacityError,
    TailsError,
)
from .streaming.broker import CapacityMode, DeliveryPolicy, EventBroker, Subscription
from .streaming.session import SubscriberSession

__all__ = [
    # Core
    "LineEvent",
    # Streaming
    "EventBroker",
    "Subscription",
    "DeliveryPolicy",
    "CapacityMode",
    "SubscriberSession",
    # Errors
    "TailsError",
    "BrokerStoppedError",
    "SubscriberCapacityError",
    "StreamingUnsupportedError",
    "SourceError",
    "SourceExitedError",
    "SourceUnavailableError",
    "ConfigError",
]
