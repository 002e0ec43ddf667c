"""Position lifecycle: buy, entry price, staged exits, pause and reactivation.

States per position::

    awaiting-entry-price -> monitoring -> {paused} -> completed
                                 ^            |
                                 +------------+  (balance returns)

Stage sells are at-most-once: the completion flag is checked immediately
before the venue call and set right after a successful (or zero-balance)
sell. Balances are always read fresh because funds can move outside the bot.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Any, Callable, Iterable

from trading.events import Event, EventBus, EventType
from trading.ladder import Stage
from trading.position_store import Position, PositionStore
from trading.price_scheduler import PriceScheduler, Priority
from trading.price_source import PriceSource
from trading.settings import SettingsProvider
from trading.venue import SwapVenue, TokenBalance, WalletAccessor, WalletError
from utils.addressing import is_evm_address, normalize_address
from utils.state_file import StateWriteError

logger = logging.getLogger(__name__)

QUOTE_DECIMALS = 18


class PositionState(str, Enum):
    AWAITING_ENTRY = "awaiting-entry-price"
    MONITORING = "monitoring"
    PAUSED = "paused"
    COMPLETED = "completed"


def position_state(position: Position) -> PositionState:
    if position.closed:
        return PositionState.COMPLETED
    if position.paused:
        return PositionState.PAUSED
    if position.entry_price is None:
        return PositionState.AWAITING_ENTRY
    return PositionState.MONITORING


def sell_amount_raw(balance: TokenBalance, stage: Stage) -> int:
    """Share of the current balance to sell; full exits sell the exact balance."""
    if stage.full_exit:
        return balance.amount_raw
    amount = balance.amount_raw * int(round(stage.sell_percent * 100)) // 10_000
    return amount if amount > 0 else balance.amount_raw


class PositionEngine:
    def __init__(
        self,
        store: PositionStore,
        scheduler: PriceScheduler,
        bus: EventBus,
        venue: SwapVenue,
        wallet: WalletAccessor,
        price_source: PriceSource,
        settings: SettingsProvider,
    ) -> None:
        self._store = store
        self._scheduler = scheduler
        self._bus = bus
        self._venue = venue
        self._wallet = wallet
        self._price_source = price_source
        self._settings = settings
        self._evaluating: set[str] = set()
        self._entry_tasks: dict[str, asyncio.Task] = {}
        self._buy_tasks: dict[str, asyncio.Task] = {}
        self._buying: set[str] = set()
        self._paused_task: asyncio.Task | None = None
        self._unsubscribe: list[Callable[[], None]] = []

    # lifecycle --------------------------------------------------------------

    async def start(self) -> None:
        if not self._unsubscribe:
            self._unsubscribe.append(self._bus.subscribe(EventType.PRICE_UPDATED, self._on_price_updated))
        resumed = 0
        for position in self._store.list_active():
            if position.entry_price is None:
                self._spawn_entry(position.asset_id, position.symbol)
            else:
                self._scheduler.register_token(position.asset_id, position.symbol, Priority.HIGH)
            resumed += 1
        if self._paused_task is None or self._paused_task.done():
            self._paused_task = asyncio.create_task(self._paused_loop(), name="paused-recheck")
        logger.info(
            "ENGINE_START resumed=%s paused=%s",
            resumed,
            len(self._store.list_paused()),
        )

    async def stop(self) -> None:
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe = []
        pending_buys = self.scheduled_buys()
        for key in pending_buys:
            self.cancel_scheduled_buy(key)
        if pending_buys:
            logger.info("BUY_CANCELLED_ON_STOP count=%s", len(pending_buys))
        # Buys already past their delay are allowed to finish.
        await self.wait_for_buys()
        tasks = list(self._entry_tasks.values())
        if self._paused_task is not None:
            tasks.append(self._paused_task)
            self._paused_task = None
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._entry_tasks.clear()
        logger.info("ENGINE_STOP")

    def state_of(self, asset_id: str) -> PositionState | None:
        position = self._store.get(asset_id)
        return position_state(position) if position is not None else None

    # durability -------------------------------------------------------------

    async def _commit(self, label: str, mutate: Callable[..., Any], *args: Any) -> Any:
        """Apply a store mutation; on write failure retry the flush, not the mutation."""
        try:
            return mutate(*args)
        except StateWriteError as exc:
            last_error: StateWriteError = exc
        retries = self._settings.current().state_flush_retries
        for attempt in range(1, retries + 1):
            await asyncio.sleep(min(0.25 * attempt, 2.0))
            try:
                self._store.flush()
                logger.warning("STATE_FLUSH_RECOVERED op=%s attempt=%s", label, attempt)
                return None
            except StateWriteError as exc:
                last_error = exc
        logger.critical("STATE_NOT_DURABLE op=%s args=%s err=%s", label, args, last_error)
        return None

    # buy path ---------------------------------------------------------------

    async def buy(self, asset_id: str, symbol: str = "") -> bool:
        key = normalize_address(asset_id)
        existing = self._store.get(key)
        if existing is not None and not existing.closed:
            logger.info("AUTO_BUY skip token=%s reason=position_exists", key)
            return False
        settings = self._settings.current()
        amount_raw = int(settings.buy_amount * 10**QUOTE_DECIMALS)
        result = await self._venue.swap(settings.quote_asset, key, amount_raw)
        if not result.ok:
            logger.warning("AUTO_BUY failed token=%s symbol=%s err=%s", key, symbol, result.error)
            self._bus.publish(EventType.TRADE_BUY_FAILED, {"assetId": key, "symbol": symbol, "error": result.error})
            return False

        await self._commit("create", self._store.create, key, symbol, None, settings.buy_amount)
        logger.info(
            "AUTO_BUY ok token=%s symbol=%s spent=%s received_raw=%s tx=%s",
            key,
            symbol,
            settings.buy_amount,
            result.amount_out,
            result.signature,
        )
        self._bus.publish(
            EventType.TRADE_BUY_CONFIRMED,
            {
                "assetId": key,
                "symbol": symbol,
                "signature": result.signature,
                "amountIn": result.amount_in,
                "amountOut": result.amount_out,
                "price": result.price,
            },
        )
        self._bus.publish(
            EventType.POSITION_CREATED,
            {"assetId": key, "symbol": symbol, "entryPrice": None, "size": settings.buy_amount},
        )
        self._spawn_entry(key, symbol)
        return True

    async def process_candidates(self, candidates: Iterable[Any]) -> list[str]:
        """Discovery consumer: buy unseen candidates that meet the score floor.

        With a buy delay configured, accepted candidates are scheduled instead
        of bought; the returned ids are then the newly scheduled ones.
        """
        settings = self._settings.current()
        min_score = settings.min_score
        accepted: list[str] = []
        for candidate in candidates:
            key = normalize_address(getattr(candidate, "id", ""))
            symbol = str(getattr(candidate, "symbol", "") or "")
            if not is_evm_address(key):
                logger.debug("DISCOVERY_SKIP token=%r reason=invalid_id", getattr(candidate, "id", None))
                continue
            if self._store.is_seen(key):
                continue
            try:
                score = float(getattr(candidate, "score", 0.0) or 0.0)
            except (TypeError, ValueError):
                logger.warning("DISCOVERY_SKIP token=%s reason=invalid_score score=%r", key, getattr(candidate, "score", None))
                continue
            if score < min_score:
                # Not marked seen: a later cycle with a higher score may pass.
                logger.debug("DISCOVERY_SKIP token=%s reason=score_min score=%.2f min=%.2f", key, score, min_score)
                continue
            if settings.buy_delay_seconds > 0:
                if self.schedule_buy(key, symbol, settings.buy_delay_seconds):
                    accepted.append(key)
                continue
            if await self._buy_unseen(key, symbol):
                accepted.append(key)
        return accepted

    async def _buy_unseen(self, key: str, symbol: str) -> bool:
        if self._store.is_seen(key):
            logger.info("AUTO_BUY skip token=%s reason=already_seen", key)
            return False
        if not await self.buy(key, symbol):
            return False
        await self._commit("mark_seen", self._store.mark_seen, key)
        return True

    # delayed buys -----------------------------------------------------------

    def schedule_buy(self, asset_id: str, symbol: str = "", delay: float | None = None) -> bool:
        """Buy after `delay` seconds. One pending buy per asset; a delay of 0 still runs as a task."""
        key = normalize_address(asset_id)
        pending = self._buy_tasks.get(key)
        if pending is not None and not pending.done():
            logger.info("BUY_SCHEDULE skip token=%s reason=already_scheduled", key)
            return False
        if delay is None:
            delay = self._settings.current().buy_delay_seconds
        task = asyncio.create_task(self._delayed_buy(key, symbol, max(0.0, delay)), name=f"buy-{key}")
        self._buy_tasks[key] = task

        def _done(t: asyncio.Task) -> None:
            if self._buy_tasks.get(key) is t:
                del self._buy_tasks[key]
                self._buying.discard(key)
            if not t.cancelled() and t.exception() is not None:
                exc = t.exception()
                logger.error("BUY_TASK_FAILED token=%s", key, exc_info=(type(exc), exc, exc.__traceback__))

        task.add_done_callback(_done)
        logger.info("BUY_SCHEDULED token=%s symbol=%s delay=%.2fs", key, symbol or "-", delay)
        return True

    async def _delayed_buy(self, key: str, symbol: str, delay: float) -> bool:
        await asyncio.sleep(delay)
        # Delay elapsed: the buy can no longer be cancelled.
        self._buying.add(key)
        return await self._buy_unseen(key, symbol)

    def cancel_scheduled_buy(self, asset_id: str) -> bool:
        key = normalize_address(asset_id)
        task = self._buy_tasks.get(key)
        if task is None or task.done() or key in self._buying:
            return False
        task.cancel()
        del self._buy_tasks[key]
        logger.info("BUY_CANCELLED token=%s", key)
        return True

    def scheduled_buys(self) -> list[str]:
        return [key for key, task in self._buy_tasks.items() if not task.done() and key not in self._buying]

    async def wait_for_buys(self) -> None:
        while self._buy_tasks:
            await asyncio.gather(*list(self._buy_tasks.values()), return_exceptions=True)

    # awaiting-entry-price ---------------------------------------------------

    def _spawn_entry(self, asset_id: str, symbol: str) -> None:
        running = self._entry_tasks.get(asset_id)
        if running is not None and not running.done():
            return
        task = asyncio.create_task(self.acquire_entry_price(asset_id, symbol), name=f"entry-{asset_id}")
        self._entry_tasks[asset_id] = task

        def _done(t: asyncio.Task) -> None:
            if self._entry_tasks.get(asset_id) is t:
                del self._entry_tasks[asset_id]
            if not t.cancelled() and t.exception() is not None:
                exc = t.exception()
                logger.error("ENTRY_TASK_FAILED token=%s", asset_id, exc_info=(type(exc), exc, exc.__traceback__))

        task.add_done_callback(_done)

    async def wait_for_entries(self) -> None:
        while self._entry_tasks:
            await asyncio.gather(*list(self._entry_tasks.values()), return_exceptions=True)

    async def acquire_entry_price(self, asset_id: str, symbol: str = "") -> float | None:
        """Poll the price source directly until a positive price or attempts run out."""
        key = normalize_address(asset_id)
        settings = self._settings.current()
        attempts = settings.entry_price_attempts
        for attempt in range(1, attempts + 1):
            try:
                price = await self._price_source.get_price(key)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("ENTRY_PRICE_ERROR token=%s attempt=%s/%s err=%s", key, attempt, attempts, exc)
                price = None
            if price is not None and price > 0:
                position = self._store.get(key)
                if position is None or position.closed:
                    return None
                if position.entry_price is not None:
                    logger.info("ENTRY_PRICE token=%s already_set=%.12g", key, position.entry_price)
                    self._scheduler.register_token(key, symbol or position.symbol, Priority.HIGH)
                    return position.entry_price
                await self._commit("set_entry_price", self._store.set_entry_price, key, float(price))
                logger.info("ENTRY_PRICE token=%s price=%.12g attempt=%s", key, price, attempt)
                self._bus.publish(
                    EventType.POSITION_ENTRY_SET,
                    {"assetId": key, "entryPrice": float(price), "attempts": attempt},
                )
                self._scheduler.register_token(key, symbol or position.symbol, Priority.HIGH)
                return float(price)
            if attempt < attempts:
                await asyncio.sleep(settings.entry_price_retry_seconds)

        logger.critical("ENTRY_PRICE_EXHAUSTED token=%s symbol=%s attempts=%s", key, symbol, attempts)
        self._bus.publish(
            EventType.POSITION_ACTIVATION_FAILED,
            {"assetId": key, "symbol": symbol, "attempts": attempts, "reason": "no_entry_price"},
        )
        return None

    # monitoring -------------------------------------------------------------

    async def _on_price_updated(self, event: Event) -> None:
        asset_id = str(event.payload.get("assetId", ""))
        price = event.payload.get("price")
        if not asset_id or price is None:
            return
        await self.evaluate(asset_id, float(price))

    async def _read_balance(self, asset_id: str) -> TokenBalance | None:
        try:
            return await self._wallet.get_balance(asset_id)
        except WalletError as exc:
            logger.warning("BALANCE_READ_FAILED token=%s err=%s", asset_id, exc)
            self._bus.publish(EventType.TRADE_BALANCE_FAILED, {"assetId": asset_id, "error": str(exc)})
            return None

    @staticmethod
    def _is_complete(position: Position, stages: list[Stage]) -> bool:
        if all(position.is_stage_sold(stage.id) for stage in stages):
            return True
        return any(stage.full_exit and position.is_stage_sold(stage.id) for stage in stages)

    async def evaluate(self, asset_id: str, price: float) -> PositionState | None:
        key = normalize_address(asset_id)
        if key in self._evaluating:
            logger.debug("EVALUATE_SKIP token=%s reason=in_progress", key)
            return None
        self._evaluating.add(key)
        try:
            return await self._evaluate(key, price)
        finally:
            self._evaluating.discard(key)

    async def _evaluate(self, key: str, price: float) -> PositionState | None:
        position = self._store.get(key)
        if position is None:
            return None
        state = position_state(position)
        if state != PositionState.MONITORING:
            if state in (PositionState.PAUSED, PositionState.COMPLETED):
                self._scheduler.unregister_token(key, state.value)
            return state

        await self._commit("update_price", self._store.update_price, key, price)
        position = self._store.get(key)
        self._bus.publish(
            EventType.POSITION_UPDATED,
            {
                "assetId": key,
                "symbol": position.symbol,
                "currentPrice": position.current_price,
                "multiple": position.multiple,
                "percentChange": position.percent_change,
                "highestMultiple": position.highest_multiple,
            },
        )

        balance = await self._read_balance(key)
        if balance is None:
            return PositionState.MONITORING
        stages = self._settings.current().active_stages()
        if balance.is_zero:
            if self._is_complete(position, stages):
                await self._complete(key, "all_stages_sold")
                return PositionState.COMPLETED
            await self._pause(key, "zero_balance")
            return PositionState.PAUSED

        for stage in stages:
            position = self._store.get(key)
            if position.is_stage_sold(stage.id) or not stage.crossed(position.multiple):
                continue
            if not await self._execute_stage(position, stage):
                break
        return PositionState.MONITORING

    async def _execute_stage(self, position: Position, stage: Stage) -> bool:
        """Sell one crossed stage. False stops evaluation of later stages this tick."""
        key = position.asset_id
        balance = await self._read_balance(key)
        if balance is None:
            return False
        if balance.is_zero:
            logger.info("AUTO_SELL stage=%s token=%s skipped=zero_balance", stage.id, key)
            await self._commit("mark_stage_sold", self._store.mark_stage_sold, key, stage.id)
            return True

        amount = sell_amount_raw(balance, stage)
        result = await self._venue.swap(key, self._settings.current().quote_asset, amount)
        if result.zero_balance:
            logger.info("AUTO_SELL stage=%s token=%s venue=zero_balance", stage.id, key)
            await self._commit("mark_stage_sold", self._store.mark_stage_sold, key, stage.id)
            return True
        if not result.ok:
            logger.warning(
                "AUTO_SELL failed stage=%s token=%s amount_raw=%s err=%s",
                stage.id,
                key,
                amount,
                result.error,
            )
            self._bus.publish(
                EventType.TRADE_SELL_FAILED,
                {"assetId": key, "stageId": stage.id, "amount": amount, "error": result.error},
            )
            return False

        await self._commit("mark_stage_sold", self._store.mark_stage_sold, key, stage.id)
        logger.info(
            "AUTO_SELL stage=%s token=%s multiple=%.2fx percent=%s amount_raw=%s tx=%s",
            stage.id,
            key,
            position.multiple,
            stage.sell_percent,
            amount,
            result.signature,
        )
        self._bus.publish(
            EventType.TRADE_SELL_CONFIRMED,
            {
                "assetId": key,
                "stageId": stage.id,
                "amount": amount,
                "amountOut": result.amount_out,
                "signature": result.signature,
                "price": result.price,
            },
        )
        self._bus.publish(
            EventType.TAKEPROFIT_TRIGGERED,
            {
                "assetId": key,
                "symbol": position.symbol,
                "stageId": stage.id,
                "kind": stage.kind.value,
                "multiple": position.multiple,
                "percentage": stage.sell_percent,
            },
        )
        return True

    async def _complete(self, key: str, reason: str) -> None:
        self._scheduler.unregister_token(key, "completed")
        await self._commit("close", self._store.close, key, reason)
        logger.info("POSITION_CLOSED token=%s reason=%s", key, reason)
        self._bus.publish(EventType.POSITION_CLOSED, {"assetId": key, "reason": reason})

    async def _pause(self, key: str, reason: str) -> None:
        self._scheduler.unregister_token(key, "paused")
        position = self._store.get(key)
        if position is None or position.paused or position.closed:
            logger.debug("POSITION_PAUSE skip token=%s reason=not_active", key)
            return
        await self._commit("pause", self._store.pause, key)
        logger.info("POSITION_PAUSED token=%s reason=%s", key, reason)
        self._bus.publish(EventType.POSITION_PAUSED, {"assetId": key, "reason": reason})

    # paused -> monitoring ---------------------------------------------------

    async def check_paused_positions(self) -> list[str]:
        """Reactivate paused positions whose balance came back, at the live price."""
        reactivated: list[str] = []
        for position in self._store.list_paused():
            key = position.asset_id
            balance = await self._read_balance(key)
            if balance is None or balance.is_zero:
                continue
            try:
                price = await self._price_source.get_price(key)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                logger.warning("PAUSED_RECHECK price_error token=%s err=%s", key, exc)
                price = None
            if price is None or price <= 0:
                logger.info("PAUSED_RECHECK token=%s balance_raw=%s price=none", key, balance.amount_raw)
                continue
            await self._commit("reactivate", self._store.reactivate, key, float(price))
            self._scheduler.register_token(key, position.symbol, Priority.HIGH)
            logger.info("POSITION_RESUMED token=%s entry=%.12g balance_raw=%s", key, price, balance.amount_raw)
            self._bus.publish(EventType.POSITION_RESUMED, {"assetId": key, "entryPrice": float(price)})
            reactivated.append(key)
        return reactivated

    async def _paused_loop(self) -> None:
        while True:
            await asyncio.sleep(self._settings.current().paused_recheck_seconds)
            try:
                await self.check_paused_positions()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("PAUSED_RECHECK loop error")

