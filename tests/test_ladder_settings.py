from __future__ import annotations

import unittest

import config
from trading.events import EventBus, EventType
from trading.ladder import LadderError, LadderKind, Stage, parse_ladder, validate_ladder, validate_ladders
from trading.settings import EngineSettings, SettingsError, SettingsProvider


class ConfigPatchMixin:
    def patch_cfg(self, **kwargs):
        if not hasattr(self, "_cfg_old"):
            self._cfg_old = {}
        for key, value in kwargs.items():
            if key not in self._cfg_old:
                self._cfg_old[key] = getattr(config, key)
            setattr(config, key, value)

    def tearDown(self):
        old = getattr(self, "_cfg_old", {})
        for key, value in old.items():
            setattr(config, key, value)


def tp(stage_id: str, multiple: float, percent: float, enabled: bool = True) -> Stage:
    return Stage(stage_id, stage_id.upper(), multiple, percent, enabled, LadderKind.TAKE_PROFIT)


def sl(stage_id: str, multiple: float, percent: float, enabled: bool = True) -> Stage:
    return Stage(stage_id, stage_id.upper(), multiple, percent, enabled, LadderKind.STOP_LOSS)


class LadderParsingTests(unittest.TestCase):
    def test_parses_rungs_in_order(self) -> None:
        stages = parse_ladder("tp1:2:50, tp2:5:50,tp3:10:100:off", LadderKind.TAKE_PROFIT)
        self.assertEqual([s.id for s in stages], ["tp1", "tp2", "tp3"])
        self.assertEqual(stages[1].multiple, 5.0)
        self.assertEqual(stages[0].name, "TP1")
        self.assertFalse(stages[2].enabled)
        self.assertTrue(stages[2].full_exit)

    def test_empty_ladder_is_allowed(self) -> None:
        self.assertEqual(parse_ladder("", LadderKind.STOP_LOSS), ())

    def test_malformed_rung_is_rejected(self) -> None:
        with self.assertRaises(LadderError):
            parse_ladder("tp1:2", LadderKind.TAKE_PROFIT)
        with self.assertRaises(LadderError):
            parse_ladder("tp1:two:50", LadderKind.TAKE_PROFIT)

    def test_crossing_direction_depends_on_kind(self) -> None:
        self.assertTrue(tp("tp1", 2.0, 50).crossed(2.0))
        self.assertFalse(tp("tp1", 2.0, 50).crossed(1.99))
        self.assertTrue(sl("sl1", 0.8, 100).crossed(0.79))
        self.assertFalse(sl("sl1", 0.8, 100).crossed(0.81))


class LadderValidationTests(unittest.TestCase):
    def test_take_profit_must_increase_strictly(self) -> None:
        validate_ladder([tp("tp1", 2, 50), tp("tp2", 5, 50)], LadderKind.TAKE_PROFIT)
        with self.assertRaises(LadderError):
            validate_ladder([tp("tp1", 2, 50), tp("tp2", 2, 50)], LadderKind.TAKE_PROFIT)
        with self.assertRaises(LadderError):
            validate_ladder([tp("tp1", 1.0, 50)], LadderKind.TAKE_PROFIT)

    def test_stop_loss_must_decrease_strictly_below_one(self) -> None:
        validate_ladder([sl("sl1", 0.8, 50), sl("sl2", 0.5, 100)], LadderKind.STOP_LOSS)
        with self.assertRaises(LadderError):
            validate_ladder([sl("sl1", 0.5, 50), sl("sl2", 0.8, 100)], LadderKind.STOP_LOSS)
        with self.assertRaises(LadderError):
            validate_ladder([sl("sl1", 1.0, 50)], LadderKind.STOP_LOSS)

    def test_sell_percent_bounds(self) -> None:
        with self.assertRaises(LadderError):
            validate_ladder([tp("tp1", 2, 0)], LadderKind.TAKE_PROFIT)
        with self.assertRaises(LadderError):
            validate_ladder([tp("tp1", 2, 100.5)], LadderKind.TAKE_PROFIT)

    def test_disabled_stages_do_not_break_ordering(self) -> None:
        validate_ladder([tp("tp1", 2, 50), tp("tp2", 1.5, 50, enabled=False), tp("tp3", 3, 100)], LadderKind.TAKE_PROFIT)

    def test_ids_must_be_unique_across_ladders(self) -> None:
        with self.assertRaises(LadderError):
            validate_ladders([tp("x", 2, 50)], [sl("x", 0.5, 100)])

    def test_stage_kind_must_match_ladder(self) -> None:
        with self.assertRaises(LadderError):
            validate_ladder([sl("sl1", 0.5, 100)], LadderKind.TAKE_PROFIT)


class EngineSettingsTests(ConfigPatchMixin, unittest.TestCase):
    def test_from_config_reads_ladders_and_rate_limit(self) -> None:
        self.patch_cfg(
            TAKE_PROFIT_LADDER="tp1:2:50,tp2:5:100",
            STOP_LOSS_LADDER="sl1:0.8:100",
            PRICE_CHECK_SECONDS=3.0,
            PRICE_BATCH_SIZE=4,
            BUY_DELAY_SECONDS=1.5,
            HTTP_SOURCE_RATE_LIMITS={"dex_price": (120, 60.0)},
        )
        settings = EngineSettings.from_config()
        self.assertEqual([s.id for s in settings.active_stages()], ["tp1", "tp2", "sl1"])
        self.assertEqual(settings.price_check_seconds, 3.0)
        self.assertEqual(settings.batch_size, 4)
        self.assertEqual(settings.buy_delay_seconds, 1.5)
        self.assertEqual(settings.price_rate_limit, (120, 60.0))
        self.assertEqual(settings.quote_asset, config.WETH_ADDRESS)

    def test_from_config_rejects_bad_ladder(self) -> None:
        self.patch_cfg(TAKE_PROFIT_LADDER="tp1:5:50,tp2:2:50")
        with self.assertRaises(SettingsError):
            EngineSettings.from_config()

    def test_scalar_validation(self) -> None:
        with self.assertRaises(SettingsError):
            EngineSettings(batch_size=0).validate()
        with self.assertRaises(SettingsError):
            EngineSettings(buy_amount=0).validate()
        with self.assertRaises(SettingsError):
            EngineSettings(price_rate_limit=(0, 60.0)).validate()
        with self.assertRaises(SettingsError):
            EngineSettings(buy_delay_seconds=-1.0).validate()


class SettingsProviderTests(unittest.TestCase):
    def test_valid_update_swaps_snapshot_and_notifies(self) -> None:
        bus = EventBus()
        published: list[dict] = []
        bus.subscribe(EventType.CONFIG_UPDATED, lambda e: published.append(dict(e.payload)))
        provider = SettingsProvider(EngineSettings(take_profit=(tp("tp1", 2, 50),)), bus)
        before = provider.current()
        calls: list[tuple[EngineSettings, EngineSettings]] = []
        provider.subscribe(lambda old, new: calls.append((old, new)))

        after = provider.update(price_check_seconds=9.0, batch_size=2)

        self.assertIs(provider.current(), after)
        self.assertEqual(before.price_check_seconds, 5.0)
        self.assertEqual(calls, [(before, after)])
        self.assertEqual(published, [{"fields": ["batch_size", "price_check_seconds"]}])

    def test_rejected_update_keeps_previous_snapshot(self) -> None:
        provider = SettingsProvider(EngineSettings(take_profit=(tp("tp1", 2, 50),)))
        before = provider.current()
        calls: list[object] = []
        provider.subscribe(lambda old, new: calls.append(new))

        with self.assertRaises(SettingsError):
            provider.update(take_profit=(tp("tp1", 3, 50), tp("tp2", 2, 50)))
        with self.assertRaises(SettingsError):
            provider.update(no_such_field=1)

        self.assertIs(provider.current(), before)
        self.assertEqual(calls, [])

    def test_failing_listener_does_not_undo_update(self) -> None:
        provider = SettingsProvider(EngineSettings())
        seen: list[float] = []

        def broken(_old, _new):
            raise RuntimeError("listener down")

        provider.subscribe(broken)
        provider.subscribe(lambda old, new: seen.append(new.price_check_seconds))

        with self.assertLogs("trading.settings", level="ERROR"):
            provider.update(price_check_seconds=7.0)

        self.assertEqual(provider.current().price_check_seconds, 7.0)
        self.assertEqual(seen, [7.0])

    def test_unsubscribed_listener_is_not_called(self) -> None:
        provider = SettingsProvider(EngineSettings())
        calls: list[object] = []
        unsubscribe = provider.subscribe(lambda old, new: calls.append(new))
        unsubscribe()
        provider.update(batch_size=3)
        self.assertEqual(calls, [])


if __name__ == "__main__":
    unittest.main()
