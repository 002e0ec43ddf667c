"""Telegram notifications for the operator's personal chat."""

from __future__ import annotations

import logging
from html import escape
from typing import Any, Callable

import config
from trading.events import Event, EventBus, EventType

logger = logging.getLogger(__name__)


def _short(address: str) -> str:
    return f"{address[:6]}...{address[-4:]}" if len(address) > 12 else address


def format_event(event: Event) -> str | None:
    p = event.payload
    asset = escape(str(p.get("assetId", "")))
    label = escape(str(p.get("symbol") or _short(asset)))
    if event.type == EventType.TRADE_BUY_CONFIRMED:
        return f"<b>Bought</b> {label}\nToken: <code>{asset}</code>\nTx: <code>{escape(str(p.get('signature', '')))}</code>"
    if event.type == EventType.TAKEPROFIT_TRIGGERED:
        title = "Stop-loss hit" if p.get("kind") == "stop_loss" else "Take-profit hit"
        return (
            f"<b>{title}</b> {label}\n"
            f"Stage: <b>{escape(str(p.get('stageId', '')))}</b>\n"
            f"Multiple: <b>{float(p.get('multiple') or 0):.2f}x</b>\n"
            f"Sold: <b>{float(p.get('percentage') or 0):g}%</b> of holding"
        )
    if event.type == EventType.POSITION_CLOSED:
        return f"<b>Position closed</b> <code>{asset}</code>\nReason: {escape(str(p.get('reason', '')))}"
    if event.type == EventType.POSITION_PAUSED:
        return f"<b>Position paused</b> <code>{asset}</code>\nReason: {escape(str(p.get('reason', '')))}"
    if event.type == EventType.POSITION_RESUMED:
        return f"<b>Position resumed</b> <code>{asset}</code>\nNew entry: <code>${float(p.get('entryPrice') or 0):.8f}</code>"
    if event.type == EventType.POSITION_ACTIVATION_FAILED:
        return (
            f"<b>Activation failed</b> {label}\n"
            f"No entry price after {int(p.get('attempts') or 0)} attempts; position is not monitored."
        )
    return None


class TelegramNotifier:
    TYPES = (
        EventType.TRADE_BUY_CONFIRMED,
        EventType.TAKEPROFIT_TRIGGERED,
        EventType.POSITION_CLOSED,
        EventType.POSITION_PAUSED,
        EventType.POSITION_RESUMED,
        EventType.POSITION_ACTIVATION_FAILED,
    )

    def __init__(self, bot: Any, chat_id: int | None = None) -> None:
        self.bot = bot
        self.chat_id = int(chat_id if chat_id is not None else config.PERSONAL_TELEGRAM_ID or 0)
        self._unsubscribe: list[Callable[[], None]] = []

    def attach(self, bus: EventBus) -> None:
        if self.chat_id <= 0:
            logger.info("Telegram notifier disabled: PERSONAL_TELEGRAM_ID is not set")
            return
        for event_type in self.TYPES:
            self._unsubscribe.append(bus.subscribe(event_type, self.handle))

    def detach(self) -> None:
        for unsubscribe in self._unsubscribe:
            unsubscribe()
        self._unsubscribe = []

    async def handle(self, event: Event) -> None:
        text = format_event(event)
        if not text:
            return
        try:
            await self.bot.send_message(chat_id=self.chat_id, text=text, parse_mode="HTML")
        except Exception as exc:
            logger.warning("Failed to send %s notification: %s", event.type.value, exc)
