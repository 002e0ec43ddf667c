from __future__ import annotations

import unittest
from types import SimpleNamespace

import main
from trading.position_store import PositionStore

TOKEN_A = "0x" + "a" * 40
TOKEN_B = "0x" + "b" * 40
TOKEN_C = "0x" + "c" * 40


class FakeScheduler:
    def stats(self) -> dict:
        return {"registered": 1, "interval": 5.0, "lastTick": {"checked": 1}}


class StatusFormattingTests(unittest.TestCase):
    def setUp(self) -> None:
        store = PositionStore(None)
        store.create(TOKEN_A, "AAA", 1.0, 0.01)
        store.update_price(TOKEN_A, 2.5)
        store.mark_stage_sold(TOKEN_A, "tp1")
        store.create(TOKEN_B, "BBB", 1.0, 0.01)
        store.pause(TOKEN_B)
        store.create(TOKEN_C, "CCC", 1.0, 0.01)
        store.close(TOKEN_C, "all_stages_sold")
        self.runtime = SimpleNamespace(store=store, scheduler=FakeScheduler(), mode="paper")

    def test_status_counts_positions_by_state(self) -> None:
        text = main.format_status(self.runtime)
        self.assertIn("<b>Mode:</b> paper", text)
        self.assertIn("completed=1, monitoring=1, paused=1", text)
        self.assertIn("interval 5.0s", text)

    def test_positions_list_hides_closed(self) -> None:
        text = main.format_positions(self.runtime)
        self.assertIn("<code>AAA</code> monitoring x2.50 (max x2.50) sold=tp1", text)
        self.assertIn("<code>BBB</code> paused", text)
        self.assertNotIn("CCC", text)

    def test_event_log_skips_per_tick_types(self) -> None:
        self.assertIn("price:updated", main.EVENT_LOG_SKIP_TYPES)
        self.assertNotIn("takeprofit:triggered", main.EVENT_LOG_SKIP_TYPES)


if __name__ == "__main__":
    unittest.main()
