"""Batched, priority-ordered price polling for watched assets.

One ticking task owns the loop. Each tick snapshots the registered tokens,
orders them high -> medium -> low and looks prices up `batch_size` at a time
with a short pause between batches. Results for tokens that were
unregistered while their lookup was in flight are dropped.

`price:updated` is delivered with `EventBus.apublish`, so the position
evaluation for an asset finishes before that asset can be looked up again.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from trading.events import Event, EventBus, EventType
from trading.price_source import PriceSource
from trading.settings import EngineSettings, SettingsProvider
from utils.addressing import normalize_address

logger = logging.getLogger(__name__)


class Priority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return {"high": 3, "medium": 2, "low": 1}[self.value]


@dataclass
class MonitoredToken:
    asset_id: str
    symbol: str
    priority: Priority
    last_price: float | None = None
    last_update: float | None = None
    consecutive_failures: int = 0
    registered_at: float = field(default_factory=time.time)


@dataclass
class _LookupOutcome:
    asset_id: str
    status: str  # ok | stale | discarded | busy


class PriceScheduler:
    def __init__(self, bus: EventBus, price_source: PriceSource, settings: SettingsProvider) -> None:
        self._bus = bus
        self._price_source = price_source
        self._settings = settings
        self._tokens: dict[str, MonitoredToken] = {}
        self._in_flight: set[str] = set()
        self._task: asyncio.Task | None = None
        self._stop = asyncio.Event()
        self._reschedule = asyncio.Event()
        self._ticks = 0
        self._last_tick: dict[str, Any] = {}
        self._unsubscribe = [
            bus.subscribe(EventType.MONITOR_PRIORITY_CHANGED, self._on_priority_changed),
        ]
        self._unsubscribe_settings = settings.subscribe(self._on_settings_changed)

    # registration -----------------------------------------------------------

    def register_token(self, asset_id: str, symbol: str | None = None, priority: Priority = Priority.MEDIUM) -> None:
        key = normalize_address(asset_id)
        if not key:
            raise ValueError("asset id is required")
        priority = Priority(priority)
        existing = self._tokens.get(key)
        if existing is not None:
            existing.priority = priority
            if symbol:
                existing.symbol = symbol
            logger.debug("MONITOR_REREGISTER token=%s priority=%s", key, priority.value)
            return
        self._tokens[key] = MonitoredToken(asset_id=key, symbol=symbol or "", priority=priority)
        interval = self.current_interval()
        logger.info("MONITOR_START token=%s symbol=%s priority=%s interval=%.2fs", key, symbol or "-", priority.value, interval)
        self._bus.publish(EventType.MONITOR_STARTED, {"assetId": key, "interval": interval})

    def unregister_token(self, asset_id: str, reason: str) -> bool:
        key = normalize_address(asset_id)
        if self._tokens.pop(key, None) is None:
            return False
        logger.info("MONITOR_STOP token=%s reason=%s", key, reason)
        self._bus.publish(EventType.MONITOR_STOPPED, {"assetId": key, "reason": reason})
        return True

    def update_priority(self, asset_id: str, priority: Priority) -> bool:
        token = self._tokens.get(normalize_address(asset_id))
        if token is None:
            return False
        token.priority = Priority(priority)
        return True

    def is_registered(self, asset_id: str) -> bool:
        return normalize_address(asset_id) in self._tokens

    def get_token(self, asset_id: str) -> MonitoredToken | None:
        token = self._tokens.get(normalize_address(asset_id))
        return MonitoredToken(**vars(token)) if token is not None else None

    def monitored_tokens(self) -> list[MonitoredToken]:
        return [MonitoredToken(**vars(t)) for t in self._tokens.values()]

    def _on_priority_changed(self, event: Event) -> None:
        asset_id = str(event.payload.get("assetId", ""))
        try:
            priority = Priority(event.payload.get("priority"))
        except ValueError:
            logger.warning("MONITOR_PRIORITY_INVALID token=%s value=%r", asset_id, event.payload.get("priority"))
            return
        self.update_priority(asset_id, priority)

    # cadence ----------------------------------------------------------------

    def current_interval(self, settings: EngineSettings | None = None) -> float:
        """Base cadence, stretched so one tick never exceeds the source's rate budget."""
        settings = settings or self._settings.current()
        count, window = settings.price_rate_limit
        budget = len(self._tokens) * window / max(1, count)
        return max(settings.price_check_seconds, budget)

    def _on_settings_changed(self, old: EngineSettings, new: EngineSettings) -> None:
        if (old.price_check_seconds, old.price_rate_limit) != (new.price_check_seconds, new.price_rate_limit):
            logger.info("MONITOR_INTERVAL_CHANGED interval=%.2fs", self.current_interval(new))
            self._reschedule.set()

    # polling ----------------------------------------------------------------

    async def _lookup(self, token: MonitoredToken) -> _LookupOutcome:
        key = token.asset_id
        if self._tokens.get(key) is not token:
            # Unregistered after the tick snapshot was taken.
            logger.debug("PRICE_LOOKUP_SKIPPED token=%s reason=unregistered", key)
            return _LookupOutcome(key, "discarded")
        if key in self._in_flight:
            return _LookupOutcome(key, "busy")
        self._in_flight.add(key)
        try:
            try:
                price = await self._price_source.get_price(key)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("PRICE_LOOKUP_ERROR token=%s err=%s", key, exc)
                price = None

            if self._tokens.get(key) is not token:
                logger.debug("PRICE_RESULT_DISCARDED token=%s reason=unregistered", key)
                return _LookupOutcome(key, "discarded")

            if price is not None and price > 0:
                previous = token.last_price
                token.last_price = float(price)
                token.last_update = time.time()
                token.consecutive_failures = 0
                await self._bus.apublish(
                    EventType.PRICE_UPDATED,
                    {"assetId": key, "price": float(price), "previousPrice": previous},
                )
                return _LookupOutcome(key, "ok")

            token.consecutive_failures += 1
            self._maybe_demote(token)
            await self._bus.apublish(
                EventType.PRICE_STALE,
                {"assetId": key, "attempts": token.consecutive_failures},
            )
            return _LookupOutcome(key, "stale")
        finally:
            self._in_flight.discard(key)

    def _maybe_demote(self, token: MonitoredToken) -> None:
        threshold = self._settings.current().stale_demote_after
        if token.priority != Priority.HIGH or token.consecutive_failures < threshold:
            return
        token.priority = Priority.MEDIUM
        logger.warning(
            "MONITOR_DEMOTE token=%s failures=%s priority=%s",
            token.asset_id,
            token.consecutive_failures,
            token.priority.value,
        )
        self._bus.publish(
            EventType.MONITOR_PRIORITY_CHANGED,
            {
                "assetId": token.asset_id,
                "priority": Priority.MEDIUM.value,
                "previousPriority": Priority.HIGH.value,
                "reason": "stale_demotion",
            },
        )

    async def check_once(self) -> dict[str, Any]:
        """Run one tick over a snapshot of the registered set."""
        settings = self._settings.current()
        snapshot = sorted(self._tokens.values(), key=lambda t: t.priority.rank, reverse=True)
        if not snapshot:
            return {}
        started = time.perf_counter()
        outcomes: list[_LookupOutcome] = []
        batch_size = max(1, settings.batch_size)
        for offset in range(0, len(snapshot), batch_size):
            if offset:
                await asyncio.sleep(settings.batch_pause_seconds)
            batch = snapshot[offset : offset + batch_size]
            outcomes.extend(await asyncio.gather(*(self._lookup(token) for token in batch)))

        summary = {
            "checked": len(outcomes),
            "succeeded": sum(1 for o in outcomes if o.status == "ok"),
            "failed": sum(1 for o in outcomes if o.status == "stale"),
            "discarded": sum(1 for o in outcomes if o.status in ("discarded", "busy")),
            "elapsedMs": round((time.perf_counter() - started) * 1000.0, 2),
            "registered": len(self._tokens),
        }
        self._ticks += 1
        self._last_tick = summary
        self._bus.publish(EventType.PRICE_BATCH_COMPLETED, summary)
        return summary

    async def force_check(self, asset_id: str) -> bool:
        """Look one registered asset up now. False if unknown or already in flight."""
        token = self._tokens.get(normalize_address(asset_id))
        if token is None:
            return False
        outcome = await self._lookup(token)
        return outcome.status in ("ok", "stale")

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        while not self._stop.is_set():
            tick_started = loop.time()
            try:
                await self.check_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("PRICE_TICK_FAILED")
            await self._sleep_until_next_tick(loop, tick_started)

    async def _sleep_until_next_tick(self, loop: asyncio.AbstractEventLoop, tick_started: float) -> None:
        while not self._stop.is_set():
            remaining = tick_started + self.current_interval() - loop.time()
            if remaining <= 0:
                return
            self._reschedule.clear()
            try:
                await asyncio.wait_for(self._reschedule.wait(), timeout=remaining)
            except asyncio.TimeoutError:
                return

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._stop.clear()
        self._task = asyncio.create_task(self._run(), name="price-scheduler")
        logger.info("PRICE_SCHEDULER started interval=%.2fs tokens=%s", self.current_interval(), len(self._tokens))

    async def stop(self) -> None:
        self._stop.set()
        self._reschedule.set()
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("PRICE_SCHEDULER stopped ticks=%s", self._ticks)

    def close(self) -> None:
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe = []
        self._unsubscribe_settings()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def stats(self) -> dict[str, Any]:
        by_priority = {p.value: 0 for p in Priority}
        for token in self._tokens.values():
            by_priority[token.priority.value] += 1
        return {
            "registered": len(self._tokens),
            "byPriority": by_priority,
            "ticks": self._ticks,
            "interval": self.current_interval(),
            "lastTick": dict(self._last_tick),
            "running": self.running,
        }
