"""Typed in-process publish/subscribe channel.

Every component talks to the others through an `EventBus` instance that is
constructed once per process and passed in. Handlers for a type run in
subscription order; a failing handler is logged and skipped so the rest still
receive the event. There is no replay and no persistence.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Awaitable, Callable, Mapping

logger = logging.getLogger(__name__)

EVENT_SCHEMA_VERSION = 1


class EventType(str, Enum):
    PRICE_UPDATED = "price:updated"
    PRICE_STALE = "price:stale"
    PRICE_BATCH_COMPLETED = "price:batch_completed"

    POSITION_CREATED = "position:created"
    POSITION_ENTRY_SET = "position:entry_set"
    POSITION_UPDATED = "position:updated"
    POSITION_PAUSED = "position:paused"
    POSITION_RESUMED = "position:resumed"
    POSITION_CLOSED = "position:closed"
    POSITION_ACTIVATION_FAILED = "position:activation_failed"

    TAKEPROFIT_TRIGGERED = "takeprofit:triggered"

    MONITOR_STARTED = "monitor:started"
    MONITOR_STOPPED = "monitor:stopped"
    MONITOR_PRIORITY_CHANGED = "monitor:priority_changed"

    TRADE_BUY_CONFIRMED = "trade:buy_confirmed"
    TRADE_BUY_FAILED = "trade:buy_failed"
    TRADE_SELL_CONFIRMED = "trade:sell_confirmed"
    TRADE_SELL_FAILED = "trade:sell_failed"
    TRADE_BALANCE_FAILED = "trade:balance_failed"

    CONFIG_UPDATED = "config:updated"

    @property
    def namespace(self) -> str:
        return self.value.split(":", 1)[0]


@dataclass(frozen=True)
class Event:
    type: EventType
    payload: Mapping[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "schema_version": EVENT_SCHEMA_VERSION,
            "type": self.type.value,
            "timestamp": self.timestamp,
            "payload": dict(self.payload),
        }


Handler = Callable[[Event], Any]


class _Subscription:
    __slots__ = ("handler",)

    def __init__(self, handler: Handler) -> None:
        self.handler = handler


class EventBus:
    def __init__(self) -> None:
        self._subscriptions: dict[EventType, list[_Subscription]] = {}
        self._wildcard: list[_Subscription] = []
        self._counts: Counter[str] = Counter()
        self._background: set[asyncio.Task] = set()

    def subscribe(self, event_type: EventType | str, handler: Handler) -> Callable[[], None]:
        """Register `handler` for one type; the returned callable removes exactly it."""
        kind = EventType(event_type)
        sub = _Subscription(handler)
        self._subscriptions.setdefault(kind, []).append(sub)
        return lambda: self._remove(self._subscriptions.get(kind, []), sub)

    def subscribe_all(self, handler: Handler) -> Callable[[], None]:
        sub = _Subscription(handler)
        self._wildcard.append(sub)
        return lambda: self._remove(self._wildcard, sub)

    @staticmethod
    def _remove(bucket: list[_Subscription], sub: _Subscription) -> None:
        try:
            bucket.remove(sub)
        except ValueError:
            pass

    def subscriber_count(self, event_type: EventType | str) -> int:
        return len(self._subscriptions.get(EventType(event_type), []))

    def counts(self) -> dict[str, int]:
        """Publish counters keyed by event type and by namespace (`price:*`)."""
        return dict(self._counts)

    def _prepare(self, event_type: EventType | str, payload: Mapping[str, Any] | None) -> tuple[Event, list[_Subscription]]:
        kind = EventType(event_type)
        event = Event(type=kind, payload=MappingProxyType(dict(payload or {})))
        self._counts[kind.value] += 1
        self._counts[f"{kind.namespace}:*"] += 1
        # Snapshot so handlers can unsubscribe during delivery.
        return event, list(self._subscriptions.get(kind, [])) + list(self._wildcard)

    def publish(self, event_type: EventType | str, payload: Mapping[str, Any] | None = None) -> Event:
        """Deliver synchronously. Coroutine handlers are scheduled on the running loop."""
        event, subs = self._prepare(event_type, payload)
        for sub in subs:
            try:
                result = sub.handler(event)
            except Exception:
                logger.exception("EVENT_HANDLER_FAILED type=%s handler=%r", event.type.value, sub.handler)
                continue
            if inspect.isawaitable(result):
                self._schedule(event, sub.handler, result)
        return event

    async def apublish(self, event_type: EventType | str, payload: Mapping[str, Any] | None = None) -> Event:
        """Deliver in order, awaiting each coroutine handler before the next."""
        event, subs = self._prepare(event_type, payload)
        for sub in subs:
            try:
                result = sub.handler(event)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("EVENT_HANDLER_FAILED type=%s handler=%r", event.type.value, sub.handler)
        return event

    def _schedule(self, event: Event, handler: Handler, awaitable: Awaitable[Any]) -> None:
        try:
            task = asyncio.ensure_future(awaitable)
        except RuntimeError:
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            logger.warning("EVENT_HANDLER_DROPPED type=%s handler=%r reason=no_running_loop", event.type.value, handler)
            return
        self._background.add(task)

        def _done(t: asyncio.Task) -> None:
            self._background.discard(t)
            if t.cancelled():
                return
            exc = t.exception()
            if exc is not None:
                logger.error(
                    "EVENT_HANDLER_FAILED type=%s handler=%r",
                    event.type.value,
                    handler,
                    exc_info=(type(exc), exc, exc.__traceback__),
                )

        task.add_done_callback(_done)

    async def drain(self) -> None:
        """Wait for coroutine handlers scheduled by `publish`."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
