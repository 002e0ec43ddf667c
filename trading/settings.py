"""Immutable engine settings snapshot and the provider that swaps it."""

from __future__ import annotations

import dataclasses
import logging
import math
from dataclasses import dataclass
from typing import Any, Callable

import config
from trading.events import EventBus, EventType
from trading.ladder import LadderError, LadderKind, Stage, enabled_stages, parse_ladder, validate_ladders
from utils.http_client import rate_limit_for

logger = logging.getLogger(__name__)

SettingsListener = Callable[["EngineSettings", "EngineSettings"], Any]


class SettingsError(ValueError):
    """Settings update rejected; the previous snapshot stays active."""


@dataclass(frozen=True)
class EngineSettings:
    buy_amount: float = 0.01
    slippage_bps: int = 300
    price_check_seconds: float = 5.0
    batch_size: int = 5
    batch_pause_seconds: float = 0.1
    stale_demote_after: int = 5
    entry_price_attempts: int = 20
    entry_price_retry_seconds: float = 2.0
    paused_recheck_seconds: float = 30.0
    discovery_interval_seconds: float = 10.0
    min_score: float = 0.0
    buy_delay_seconds: float = 0.0
    take_profit: tuple[Stage, ...] = ()
    stop_loss: tuple[Stage, ...] = ()
    quote_asset: str = ""
    price_rate_limit: tuple[int, float] = (1_000_000, 1.0)
    state_flush_retries: int = 3

    @classmethod
    def from_config(cls) -> "EngineSettings":
        try:
            take_profit = parse_ladder(config.TAKE_PROFIT_LADDER, LadderKind.TAKE_PROFIT)
            stop_loss = parse_ladder(config.STOP_LOSS_LADDER, LadderKind.STOP_LOSS)
        except LadderError as exc:
            raise SettingsError(str(exc)) from exc
        settings = cls(
            buy_amount=config.BUY_AMOUNT_ETH,
            slippage_bps=config.LIVE_SLIPPAGE_BPS,
            price_check_seconds=config.PRICE_CHECK_SECONDS,
            batch_size=config.PRICE_BATCH_SIZE,
            batch_pause_seconds=config.PRICE_BATCH_PAUSE_SECONDS,
            stale_demote_after=config.PRICE_STALE_DEMOTE_AFTER,
            entry_price_attempts=config.ENTRY_PRICE_ATTEMPTS,
            entry_price_retry_seconds=config.ENTRY_PRICE_RETRY_SECONDS,
            paused_recheck_seconds=config.PAUSED_RECHECK_SECONDS,
            discovery_interval_seconds=config.DISCOVERY_INTERVAL_SECONDS,
            min_score=config.MIN_SCORE,
            buy_delay_seconds=config.BUY_DELAY_SECONDS,
            take_profit=take_profit,
            stop_loss=stop_loss,
            quote_asset=config.WETH_ADDRESS,
            price_rate_limit=rate_limit_for(config.PRICE_SOURCE_NAME),
            state_flush_retries=config.STATE_FLUSH_RETRIES,
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        problems = []
        if not (math.isfinite(self.buy_amount) and self.buy_amount > 0):
            problems.append(f"buy_amount must be > 0 (got {self.buy_amount})")
        if not 0 < self.slippage_bps < 10_000:
            problems.append(f"slippage_bps must be in (0, 10000) (got {self.slippage_bps})")
        if not self.price_check_seconds > 0:
            problems.append("price_check_seconds must be > 0")
        if self.batch_size < 1:
            problems.append("batch_size must be >= 1")
        if self.batch_pause_seconds < 0:
            problems.append("batch_pause_seconds must be >= 0")
        if self.stale_demote_after < 1:
            problems.append("stale_demote_after must be >= 1")
        if self.entry_price_attempts < 1:
            problems.append("entry_price_attempts must be >= 1")
        if self.entry_price_retry_seconds < 0:
            problems.append("entry_price_retry_seconds must be >= 0")
        if self.buy_delay_seconds < 0:
            problems.append("buy_delay_seconds must be >= 0")
        if not self.paused_recheck_seconds > 0:
            problems.append("paused_recheck_seconds must be > 0")
        if self.state_flush_retries < 1:
            problems.append("state_flush_retries must be >= 1")
        count, window = self.price_rate_limit
        if count < 1 or window <= 0:
            problems.append(f"price_rate_limit must be positive (got {count}/{window})")
        if problems:
            raise SettingsError("; ".join(problems))
        try:
            validate_ladders(self.take_profit, self.stop_loss)
        except LadderError as exc:
            raise SettingsError(str(exc)) from exc

    def active_stages(self) -> list[Stage]:
        """Enabled stages in evaluation order: take-profit ladder, then stop-loss."""
        return enabled_stages(self.take_profit, self.stop_loss)


class SettingsProvider:
    """Holds the current snapshot; updates are validated in full, then swapped."""

    def __init__(self, initial: EngineSettings, bus: EventBus | None = None) -> None:
        initial.validate()
        self._current = initial
        self._bus = bus
        self._listeners: list[SettingsListener] = []

    def current(self) -> EngineSettings:
        return self._current

    def subscribe(self, listener: SettingsListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def update(self, **changes: Any) -> EngineSettings:
        try:
            candidate = dataclasses.replace(self._current, **changes)
        except TypeError as exc:
            raise SettingsError(str(exc)) from exc
        return self.apply(candidate)

    def apply(self, candidate: EngineSettings) -> EngineSettings:
        candidate.validate()
        old, self._current = self._current, candidate
        changed = sorted(
            f.name for f in dataclasses.fields(EngineSettings) if getattr(old, f.name) != getattr(candidate, f.name)
        )
        logger.info("CONFIG_UPDATED fields=%s", ",".join(changed) or "-")
        for listener in list(self._listeners):
            try:
                listener(old, candidate)
            except Exception:
                logger.exception("CONFIG_LISTENER_FAILED listener=%r", listener)
        if self._bus is not None:
            self._bus.publish(EventType.CONFIG_UPDATED, {"fields": changed})
        return candidate
