from __future__ import annotations

import asyncio
import unittest

from trading.events import EventBus, EventType
from trading.price_scheduler import PriceScheduler, Priority
from trading.settings import EngineSettings, SettingsProvider


def addr(n: int) -> str:
    return "0x" + f"{n:040x}"


class FakePriceSource:
    def __init__(self, prices: dict[str, float | None] | None = None, delay: float = 0.0) -> None:
        self.prices = dict(prices or {})
        self.delay = delay
        self.calls: list[str] = []
        self.active = 0
        self.max_active = 0
        self.gate: asyncio.Event | None = None

    async def get_price(self, asset_id: str) -> float | None:
        self.calls.append(asset_id)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            if self.gate is not None:
                await self.gate.wait()
            if self.delay:
                await asyncio.sleep(self.delay)
            value = self.prices.get(asset_id)
            if isinstance(value, Exception):
                raise value
            return value
        finally:
            self.active -= 1


class PriceSchedulerTests(unittest.IsolatedAsyncioTestCase):
    def _build(self, source: FakePriceSource, **overrides) -> PriceScheduler:
        params = {"batch_size": 5, "batch_pause_seconds": 0.0, "price_check_seconds": 1.0}
        params.update(overrides)
        self.bus = EventBus()
        self.events: list[tuple[str, dict]] = []
        self.bus.subscribe_all(lambda e: self.events.append((e.type.value, dict(e.payload))))
        self.settings = SettingsProvider(EngineSettings(**params), self.bus)
        scheduler = PriceScheduler(self.bus, source, self.settings)
        self.addCleanup(scheduler.close)
        return scheduler

    def _of_type(self, event_type: EventType) -> list[dict]:
        return [payload for kind, payload in self.events if kind == event_type.value]

    async def test_register_is_idempotent_and_announces_once(self) -> None:
        scheduler = self._build(FakePriceSource())
        scheduler.register_token(addr(1), "AAA", Priority.LOW)
        scheduler.register_token(addr(1).upper().replace("0X", "0x"), None, Priority.HIGH)

        self.assertEqual(len(self._of_type(EventType.MONITOR_STARTED)), 1)
        self.assertEqual(scheduler.get_token(addr(1)).priority, Priority.HIGH)
        self.assertEqual(scheduler.get_token(addr(1)).symbol, "AAA")
        self.assertEqual(scheduler.stats()["registered"], 1)

    async def test_unregister_announces_and_reports_absence(self) -> None:
        scheduler = self._build(FakePriceSource())
        scheduler.register_token(addr(1))
        self.assertTrue(scheduler.unregister_token(addr(1), "completed"))
        self.assertFalse(scheduler.unregister_token(addr(1), "completed"))
        self.assertEqual(self._of_type(EventType.MONITOR_STOPPED), [{"assetId": addr(1), "reason": "completed"}])

    async def test_empty_tick_does_nothing(self) -> None:
        source = FakePriceSource()
        scheduler = self._build(source)
        self.assertEqual(await scheduler.check_once(), {})
        self.assertEqual(source.calls, [])

    async def test_batches_bound_concurrency_and_follow_priority(self) -> None:
        source = FakePriceSource(delay=0.01)
        scheduler = self._build(source, batch_size=5)
        for n in range(1, 7):
            scheduler.register_token(addr(n), priority=Priority.LOW)
        for n in range(7, 13):
            scheduler.register_token(addr(n), priority=Priority.HIGH)

        summary = await scheduler.check_once()

        self.assertEqual(summary["checked"], 12)
        self.assertEqual(summary["failed"], 12)
        self.assertLessEqual(source.max_active, 5)
        self.assertEqual(set(source.calls[:5]), {addr(n) for n in range(7, 12)})
        self.assertEqual(set(source.calls[-2:]), {addr(5), addr(6)})
        self.assertEqual(len(self._of_type(EventType.PRICE_BATCH_COMPLETED)), 1)

    async def test_success_publishes_price_and_resets_failures(self) -> None:
        source = FakePriceSource({addr(1): None})
        scheduler = self._build(source)
        scheduler.register_token(addr(1), priority=Priority.HIGH)

        await scheduler.check_once()
        source.prices[addr(1)] = 1.25
        await scheduler.check_once()
        source.prices[addr(1)] = 1.5
        await scheduler.check_once()

        self.assertEqual(self._of_type(EventType.PRICE_STALE), [{"assetId": addr(1), "attempts": 1}])
        updates = self._of_type(EventType.PRICE_UPDATED)
        self.assertEqual(updates[0], {"assetId": addr(1), "price": 1.25, "previousPrice": None})
        self.assertEqual(updates[1]["previousPrice"], 1.25)
        self.assertEqual(scheduler.get_token(addr(1)).consecutive_failures, 0)

    async def test_errors_count_as_stale(self) -> None:
        source = FakePriceSource({addr(1): RuntimeError("source down")})
        scheduler = self._build(source)
        scheduler.register_token(addr(1))
        with self.assertLogs("trading.price_scheduler", level="WARNING"):
            summary = await scheduler.check_once()
        self.assertEqual(summary["failed"], 1)

    async def test_demotes_high_priority_once_after_repeated_failures(self) -> None:
        scheduler = self._build(FakePriceSource(), stale_demote_after=5)
        scheduler.register_token(addr(1), priority=Priority.HIGH)

        for _ in range(4):
            await scheduler.check_once()
        self.assertEqual(scheduler.get_token(addr(1)).priority, Priority.HIGH)

        await scheduler.check_once()
        self.assertEqual(scheduler.get_token(addr(1)).priority, Priority.MEDIUM)

        await scheduler.check_once()
        self.assertEqual(scheduler.get_token(addr(1)).priority, Priority.MEDIUM)
        changes = self._of_type(EventType.MONITOR_PRIORITY_CHANGED)
        self.assertEqual(len(changes), 1)
        self.assertEqual(changes[0]["reason"], "stale_demotion")
        self.assertEqual(scheduler.get_token(addr(1)).consecutive_failures, 6)

    async def test_priority_change_event_updates_registration(self) -> None:
        scheduler = self._build(FakePriceSource())
        scheduler.register_token(addr(1), priority=Priority.MEDIUM)
        self.bus.publish(EventType.MONITOR_PRIORITY_CHANGED, {"assetId": addr(1), "priority": "low"})
        self.assertEqual(scheduler.get_token(addr(1)).priority, Priority.LOW)

    async def test_result_for_unregistered_token_is_discarded(self) -> None:
        source = FakePriceSource({addr(1): 2.0})
        source.gate = asyncio.Event()
        scheduler = self._build(source)
        scheduler.register_token(addr(1))

        tick = asyncio.create_task(scheduler.check_once())
        while not source.calls:
            await asyncio.sleep(0)
        scheduler.unregister_token(addr(1), "paused")
        source.gate.set()
        summary = await tick

        self.assertEqual(summary["discarded"], 1)
        self.assertEqual(self._of_type(EventType.PRICE_UPDATED), [])

    async def test_token_unregistered_mid_tick_is_not_looked_up_in_later_batch(self) -> None:
        source = FakePriceSource({addr(1): 2.0, addr(2): 3.0})
        source.gate = asyncio.Event()
        scheduler = self._build(source, batch_size=1)
        scheduler.register_token(addr(1), priority=Priority.HIGH)
        scheduler.register_token(addr(2), priority=Priority.LOW)

        tick = asyncio.create_task(scheduler.check_once())
        while not source.calls:
            await asyncio.sleep(0)
        scheduler.unregister_token(addr(2), "paused")
        source.gate.set()
        summary = await tick

        self.assertEqual(source.calls, [addr(1)])
        self.assertEqual(summary["succeeded"], 1)
        self.assertEqual(summary["discarded"], 1)
        self.assertEqual([p["assetId"] for p in self._of_type(EventType.PRICE_UPDATED)], [addr(1)])

    async def test_force_check_skips_asset_already_in_flight(self) -> None:
        source = FakePriceSource({addr(1): 2.0})
        source.gate = asyncio.Event()
        scheduler = self._build(source)
        scheduler.register_token(addr(1))

        first = asyncio.create_task(scheduler.force_check(addr(1)))
        while not source.calls:
            await asyncio.sleep(0)
        self.assertFalse(await scheduler.force_check(addr(1)))
        source.gate.set()
        self.assertTrue(await first)
        self.assertEqual(source.calls, [addr(1)])
        self.assertFalse(await scheduler.force_check(addr(2)))

    async def test_interval_stretches_to_rate_budget(self) -> None:
        scheduler = self._build(FakePriceSource(), price_check_seconds=1.0, price_rate_limit=(60, 60.0))
        for n in range(1, 11):
            scheduler.register_token(addr(n))
        self.assertEqual(scheduler.current_interval(), 10.0)

        self.settings.update(price_rate_limit=(600, 60.0))
        self.assertEqual(scheduler.current_interval(), 1.0)
        self.settings.update(price_check_seconds=4.0)
        self.assertEqual(scheduler.current_interval(), 4.0)

    async def test_start_and_stop_loop(self) -> None:
        source = FakePriceSource({addr(1): 1.0})
        scheduler = self._build(source, price_check_seconds=30.0)
        scheduler.register_token(addr(1))
        scheduler.start()
        self.assertTrue(scheduler.running)
        while not source.calls:
            await asyncio.sleep(0)
        await scheduler.stop()
        self.assertFalse(scheduler.running)
        self.assertEqual(source.calls, [addr(1)])


if __name__ == "__main__":
    unittest.main()
