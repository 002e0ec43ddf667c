from __future__ import annotations

import json
import os
import tempfile
import unittest

from monitor.event_log import EventLogWriter
from monitor.notifier import TelegramNotifier, format_event
from trading.events import Event, EventBus, EventType

TOKEN = "0x" + "a" * 40


class FakeBot:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.sent: list[dict] = []

    async def send_message(self, **kwargs) -> None:
        if self.fail:
            raise RuntimeError("telegram down")
        self.sent.append(kwargs)


class NotifierTests(unittest.IsolatedAsyncioTestCase):
    async def test_stage_and_close_events_are_sent(self) -> None:
        bus = EventBus()
        bot = FakeBot()
        notifier = TelegramNotifier(bot, chat_id=42)
        notifier.attach(bus)

        bus.publish(
            EventType.TAKEPROFIT_TRIGGERED,
            {"assetId": TOKEN, "symbol": "AAA", "stageId": "tp1", "kind": "take_profit", "multiple": 2.04, "percentage": 50},
        )
        bus.publish(EventType.POSITION_UPDATED, {"assetId": TOKEN})
        bus.publish(EventType.POSITION_CLOSED, {"assetId": TOKEN, "reason": "all_stages_sold"})
        await bus.drain()

        self.assertEqual(len(bot.sent), 2)
        self.assertEqual(bot.sent[0]["chat_id"], 42)
        self.assertEqual(bot.sent[0]["parse_mode"], "HTML")
        self.assertIn("Take-profit hit", bot.sent[0]["text"])
        self.assertIn("2.04x", bot.sent[0]["text"])
        self.assertIn("all_stages_sold", bot.sent[1]["text"])

    async def test_send_failure_is_logged_not_raised(self) -> None:
        notifier = TelegramNotifier(FakeBot(fail=True), chat_id=42)
        event = Event(EventType.POSITION_PAUSED, {"assetId": TOKEN, "reason": "zero_balance"})
        with self.assertLogs("monitor.notifier", level="WARNING"):
            await notifier.handle(event)

    async def test_disabled_without_chat_id(self) -> None:
        bus = EventBus()
        notifier = TelegramNotifier(FakeBot(), chat_id=0)
        notifier.attach(bus)
        self.assertEqual(bus.subscriber_count(EventType.POSITION_CLOSED), 0)

    def test_stop_loss_wording_and_escaping(self) -> None:
        text = format_event(
            Event(
                EventType.TAKEPROFIT_TRIGGERED,
                {"assetId": TOKEN, "symbol": "<b>X", "stageId": "sl1", "kind": "stop_loss", "multiple": 0.79, "percentage": 100},
            )
        )
        self.assertIn("Stop-loss hit", text)
        self.assertIn("&lt;b&gt;X", text)
        self.assertIsNone(format_event(Event(EventType.PRICE_UPDATED, {"assetId": TOKEN})))


class EventLogWriterTests(unittest.TestCase):
    def test_writes_records_and_skips_noisy_types(self) -> None:
        with tempfile.TemporaryDirectory() as tmp_dir:
            path = os.path.join(tmp_dir, "logs", "events.jsonl")
            bus = EventBus()
            writer = EventLogWriter(path, run_tag="run_t", skip_types={EventType.PRICE_UPDATED.value})
            writer.attach(bus)
            writer.attach(bus)

            bus.publish(EventType.PRICE_UPDATED, {"assetId": TOKEN, "price": 1.0})
            bus.publish(EventType.POSITION_CREATED, {"assetId": TOKEN, "symbol": "AAA"})
            with self.assertLogs("monitor.event_log", level="CRITICAL"):
                bus.publish(EventType.POSITION_ACTIVATION_FAILED, {"assetId": TOKEN, "attempts": 20})
            writer.detach()
            bus.publish(EventType.POSITION_CLOSED, {"assetId": TOKEN, "reason": "x"})

            with open(path, "r", encoding="utf-8") as f:
                rows = [json.loads(line) for line in f]

        self.assertEqual([r["event_type"] for r in rows], ["position:created", "position:activation_failed"])
        self.assertEqual(rows[0]["run_tag"], "run_t")
        self.assertEqual(rows[0]["asset_id"], TOKEN)
        self.assertEqual(rows[1]["reason_code"], "POSITION_ACTIVATION_FAILED")


if __name__ == "__main__":
    unittest.main()
