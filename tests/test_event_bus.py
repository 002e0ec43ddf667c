from __future__ import annotations

import unittest

from trading.events import EVENT_SCHEMA_VERSION, Event, EventBus, EventType


class EventBusTests(unittest.TestCase):
    def test_delivers_in_subscription_order(self) -> None:
        bus = EventBus()
        seen: list[str] = []
        bus.subscribe(EventType.PRICE_UPDATED, lambda e: seen.append("first"))
        bus.subscribe(EventType.PRICE_UPDATED, lambda e: seen.append("second"))
        bus.subscribe(EventType.PRICE_STALE, lambda e: seen.append("other_type"))

        bus.publish(EventType.PRICE_UPDATED, {"assetId": "0xabc", "price": 1.0})

        self.assertEqual(seen, ["first", "second"])

    def test_failing_handler_does_not_block_the_rest(self) -> None:
        bus = EventBus()
        seen: list[float] = []

        def broken(_event: Event) -> None:
            raise RuntimeError("boom")

        bus.subscribe("price:updated", broken)
        bus.subscribe("price:updated", lambda e: seen.append(e.payload["price"]))

        with self.assertLogs("trading.events", level="ERROR") as logs:
            bus.publish("price:updated", {"price": 2.5})

        self.assertEqual(seen, [2.5])
        self.assertIn("EVENT_HANDLER_FAILED", logs.output[0])

    def test_unsubscribe_removes_exactly_that_registration(self) -> None:
        bus = EventBus()
        calls: list[int] = []

        def handler(_event: Event) -> None:
            calls.append(1)

        first = bus.subscribe(EventType.POSITION_CLOSED, handler)
        bus.subscribe(EventType.POSITION_CLOSED, handler)
        first()
        first()  # second call is a no-op
        bus.publish(EventType.POSITION_CLOSED, {"assetId": "0x1", "reason": "done"})

        self.assertEqual(calls, [1])
        self.assertEqual(bus.subscriber_count(EventType.POSITION_CLOSED), 1)

    def test_no_replay_for_late_subscribers(self) -> None:
        bus = EventBus()
        bus.publish(EventType.MONITOR_STARTED, {"assetId": "0x1", "interval": 5})
        seen: list[Event] = []
        bus.subscribe(EventType.MONITOR_STARTED, seen.append)
        self.assertEqual(seen, [])

    def test_event_is_immutable(self) -> None:
        bus = EventBus()
        source = {"assetId": "0x1"}
        event = bus.publish(EventType.POSITION_PAUSED, source)
        source["assetId"] = "changed"

        self.assertEqual(event.payload["assetId"], "0x1")
        with self.assertRaises(TypeError):
            event.payload["assetId"] = "0x2"  # type: ignore[index]
        self.assertEqual(event.to_dict()["schema_version"], EVENT_SCHEMA_VERSION)
        self.assertEqual(event.to_dict()["type"], "position:paused")

    def test_unknown_event_type_is_rejected(self) -> None:
        bus = EventBus()
        with self.assertRaises(ValueError):
            bus.publish("price:exploded", {})

    def test_counts_by_type_and_namespace(self) -> None:
        bus = EventBus()
        bus.publish(EventType.PRICE_UPDATED, {})
        bus.publish(EventType.PRICE_STALE, {})
        bus.publish(EventType.PRICE_STALE, {})
        counts = bus.counts()
        self.assertEqual(counts["price:stale"], 2)
        self.assertEqual(counts["price:*"], 3)

    def test_subscribe_all_sees_every_type(self) -> None:
        bus = EventBus()
        seen: list[str] = []
        unsubscribe = bus.subscribe_all(lambda e: seen.append(e.type.value))
        bus.publish(EventType.PRICE_UPDATED, {})
        bus.publish(EventType.CONFIG_UPDATED, {})
        unsubscribe()
        bus.publish(EventType.PRICE_UPDATED, {})
        self.assertEqual(seen, ["price:updated", "config:updated"])


class EventBusAsyncTests(unittest.IsolatedAsyncioTestCase):
    async def test_apublish_awaits_handlers_in_order(self) -> None:
        bus = EventBus()
        seen: list[str] = []

        async def slow(_event: Event) -> None:
            seen.append("slow:start")
            seen.append("slow:end")

        bus.subscribe(EventType.PRICE_UPDATED, slow)
        bus.subscribe(EventType.PRICE_UPDATED, lambda e: seen.append("sync"))

        await bus.apublish(EventType.PRICE_UPDATED, {"assetId": "0x1", "price": 1.0})

        self.assertEqual(seen, ["slow:start", "slow:end", "sync"])

    async def test_apublish_isolates_async_failures(self) -> None:
        bus = EventBus()
        seen: list[str] = []

        async def broken(_event: Event) -> None:
            raise RuntimeError("nope")

        bus.subscribe(EventType.PRICE_STALE, broken)
        bus.subscribe(EventType.PRICE_STALE, lambda e: seen.append("after"))

        with self.assertLogs("trading.events", level="ERROR"):
            await bus.apublish(EventType.PRICE_STALE, {"assetId": "0x1", "attempts": 1})
        self.assertEqual(seen, ["after"])

    async def test_publish_schedules_coroutine_handlers(self) -> None:
        bus = EventBus()
        seen: list[str] = []

        async def handler(event: Event) -> None:
            seen.append(event.payload["assetId"])

        bus.subscribe(EventType.POSITION_CREATED, handler)
        bus.publish(EventType.POSITION_CREATED, {"assetId": "0x9"})
        self.assertEqual(seen, [])
        await bus.drain()
        self.assertEqual(seen, ["0x9"])


if __name__ == "__main__":
    unittest.main()
