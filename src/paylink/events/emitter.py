"""In-process publisher for ledger events.

Services emit after a transition has committed, so a handler never sees an
event for a change that was rolled back. Handlers run inline on the calling
thread (or event loop) and must stay cheap; a failing handler is logged and
skipped, never allowed to fail the claim or funding call that emitted.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from paylink.events.types import DomainEvent, EventCategory

logger = logging.getLogger(__name__)

EventHandler = Callable[[DomainEvent], None]


@dataclass(frozen=True)
class _Subscription:
    handler: EventHandler
    event_types: frozenset[str] = frozenset()  # empty = any type
    categories: frozenset[EventCategory] = frozenset()  # empty = any category

    def matches(self, event: DomainEvent) -> bool:
        if self.event_types and event.event_type not in self.event_types:
            return False
        return not self.categories or event.category in self.categories


def _as_set(value: object) -> Iterable:
    return value if isinstance(value, (list, tuple, set, frozenset)) else (value,)


class EventEmitter:
    """Routes ledger events to subscribed handlers.

    Usage:
        emitter = EventEmitter()
        emitter.on(ClaimSucceeded, notify_creator)
        emitter.on_category(EventCategory.FUNDING, audit_log.write)
        emitter.on_all(outbox.append)
    """

    def __init__(self) -> None:
        self._subscriptions: list[_Subscription] = []

    def on(
        self,
        event_type: type[DomainEvent] | list[type[DomainEvent]],
        handler: EventHandler,
    ) -> None:
        """Subscribe to one event class or a list of them."""
        names = frozenset(t.__name__ for t in _as_set(event_type))
        self._subscriptions.append(_Subscription(handler, event_types=names))

    def on_category(
        self,
        category: EventCategory | list[EventCategory],
        handler: EventHandler,
    ) -> None:
        """Subscribe to every event in one or more categories."""
        self._subscriptions.append(
            _Subscription(handler, categories=frozenset(_as_set(category)))
        )

    def on_all(self, handler: EventHandler) -> None:
        """Subscribe to every event."""
        self._subscriptions.append(_Subscription(handler))

    def off(self, handler: EventHandler) -> None:
        """Drop every subscription held by handler."""
        self._subscriptions = [s for s in self._subscriptions if s.handler is not handler]

    def emit(self, event: DomainEvent) -> list[Exception]:
        """Deliver an event; returns the exceptions raised by handlers."""
        errors: list[Exception] = []
        for sub in self._subscriptions:
            if not sub.matches(event):
                continue
            try:
                sub.handler(event)
            except Exception as e:
                logger.exception("Handler %r failed for event %s", sub.handler, event.event_type)
                errors.append(e)
        return errors
