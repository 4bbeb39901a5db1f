"""
In-process publish/subscribe bus connecting the monitoring services.

Subscriptions are set up explicitly by the composition root, so the
dependency graph between SLA evaluation, fault recovery and status
aggregation is visible in one place and can be replaced by a fake in tests.

Delivery is at-least-once, in-process, and sequential: `publish` awaits every
matching handler in subscription order before returning. A flow that awaits
its own publishes therefore gets happens-before ordering for its events.
"""

from __future__ import annotations

import fnmatch
import inspect
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Union

logger = logging.getLogger("selfheal.events")


@dataclass(frozen=True)
class Event:
    type: str
    payload: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


EventHandler = Callable[[Event], Union[None, Awaitable[None]]]


@dataclass
class Subscription:
    id: str
    pattern: str
    handler: EventHandler


class EventBus:
    """
    Pattern-based pub/sub. Patterns are fnmatch-style: "sla_event",
    "recovery_*", "*".

    Handler exceptions are logged and do not stop delivery to the remaining
    subscribers.
    """

    def __init__(self) -> None:
        self._subscriptions: Dict[str, Subscription] = {}

    def subscribe(self, pattern: str, handler: EventHandler) -> str:
        sub_id = f"sub_{uuid.uuid4().hex[:12]}"
        self._subscriptions[sub_id] = Subscription(id=sub_id, pattern=pattern, handler=handler)
        return sub_id

    def unsubscribe(self, subscription_id: str) -> None:
        self._subscriptions.pop(subscription_id, None)

    def clear(self) -> None:
        self._subscriptions.clear()

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)

    async def publish(self, event_type: str, payload: Dict[str, Any] | None = None) -> Event:
        event = Event(type=event_type, payload=payload or {})

        # Snapshot so handlers may (un)subscribe while we deliver.
        matching: List[Subscription] = [
            sub for sub in list(self._subscriptions.values())
            if fnmatch.fnmatchcase(event_type, sub.pattern)
        ]

        for sub in matching:
            try:
                result = sub.handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:  # noqa: BLE001
                logger.exception(
                    "Event handler failed: subscription=%s event_type=%s",
                    sub.id,
                    event_type,
                )

        return event

