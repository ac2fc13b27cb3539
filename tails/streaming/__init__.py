"""Tails Streaming - fan-out of tailed lines to Server-Sent Events clients.

This module provides:
- EventBroker: single-owner control loop for subscriber membership and fan-out
- Subscription: a subscriber's private delivery queue
- SubscriberSession: one streaming HTTP connection bound to the broker

Usage:
    from tails.streaming import EventBroker, SubscriberSession

    broker = EventBroker()
    await broker.start()

    session = SubscriberSession(broker)
    async for frame in session.stream():
        ...
"""

from .broker import (
    CapacityMode,
    CloseReason,
    DeliveryPolicy,
    EventBroker,
    Join,
    Leave,
    Publish,
    Subscription,
)
from .session import SubscriberSession

__all__ = [
    "EventBroker",
    "Subscription",
    "DeliveryPolicy",
    "CapacityMode",
    "CloseReason",
    "Join",
    "Leave",
    "Publish",
    "SubscriberSession",
]
