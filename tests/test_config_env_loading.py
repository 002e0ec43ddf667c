from __future__ import annotations

import os
import subprocess
import sys
import tempfile
import unittest
from pathlib import Path


class ConfigEnvLoadingTests(unittest.TestCase):
    def _run_import(self, bot_env_file: str) -> subprocess.CompletedProcess[str]:
        root = Path(__file__).resolve().parents[1]
        env = os.environ.copy()
        env["BOT_ENV_FILE"] = bot_env_file
        return subprocess.run(
            [sys.executable, "-c", "import config; print('ok')"],
            cwd=str(root),
            env=env,
            capture_output=True,
            text=True,
        )

    def test_missing_bot_env_file_fails_fast(self) -> None:
        missing_path = "data/__definitely_missing_env_for_test__.env"
        result = self._run_import(missing_path)
        self.assertNotEqual(result.returncode, 0)
        details = (result.stdout + "\n" + result.stderr).lower()
        self.assertIn("bot_env_file", details)
        self.assertIn("does not exist", details)

    def test_existing_bot_env_file_is_applied(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            env_path = Path(tmpdir) / "bot.env"
            env_path.write_text("UNITTEST_BOT_ENV_FLAG=loaded\n", encoding="utf-8")
            root = Path(__file__).resolve().parents[1]
            env = os.environ.copy()
            env["BOT_ENV_FILE"] = str(env_path)
            result = subprocess.run(
                [
                    sys.executable,
                    "-c",
                    "import os, config; print(os.getenv('UNITTEST_BOT_ENV_FLAG', ''))",
                ],
                cwd=str(root),
                env=env,
                capture_output=True,
                text=True,
            )
        self.assertEqual(result.returncode, 0, msg=result.stderr)
        self.assertEqual(result.stdout.strip(), "loaded")

    def _run_with_env_lines(self, lines: list[str], expr: str) -> subprocess.CompletedProcess[str]:
        with tempfile.TemporaryDirectory() as tmpdir:
            env_path = Path(tmpdir) / "bot.env"
            env_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
            root = Path(__file__).resolve().parents[1]
            env = os.environ.copy()
            for key in ("TAKE_PROFIT_LADDER", "STOP_LOSS_LADDER"):
                env.pop(key, None)
            env["BOT_ENV_FILE"] = str(env_path)
            return subprocess.run(
                [sys.executable, "-c", f"import config; print({expr})"],
                cwd=str(root),
                env=env,
                capture_output=True,
                text=True,
            )

    def test_numbered_ladder_keys_are_loaded_from_env(self) -> None:
        result = self._run_with_env_lines(
            [
                "TP1_MULTIPLE=3",
                "TP1_SELL_PERCENT=40",
                "TP2_ENABLED=false",
                "SL1_MULTIPLE=0.7",
            ],
            "config.TAKE_PROFIT_LADDER + '|' + config.STOP_LOSS_LADDER",
        )
        self.assertEqual(result.returncode, 0, msg=result.stderr)
        self.assertEqual(
            result.stdout.strip(),
            "tp1:3:40,tp2:5:50:off,tp3:10:50,tp4:20:100|sl1:0.7:100",
        )

    def test_explicit_ladder_string_wins_over_numbered_keys(self) -> None:
        result = self._run_with_env_lines(
            ["TAKE_PROFIT_LADDER=a:2:25,b:4:100", "TP1_MULTIPLE=9"],
            "config.TAKE_PROFIT_LADDER",
        )
        self.assertEqual(result.returncode, 0, msg=result.stderr)
        self.assertEqual(result.stdout.strip(), "a:2:25,b:4:100")

    def test_lifecycle_keys_are_loaded_from_env(self) -> None:
        result = self._run_with_env_lines(
            [
                "PRICE_CHECK_SECONDS=7",
                "PRICE_BATCH_SIZE=3",
                "ENTRY_PRICE_ATTEMPTS=4",
                "HTTP_SOURCE_RATE_LIMITS=dex_price:60/30",
            ],
            (
                "f\"{config.PRICE_CHECK_SECONDS}|{config.PRICE_BATCH_SIZE}|"
                "{config.ENTRY_PRICE_ATTEMPTS}|{config.HTTP_SOURCE_RATE_LIMITS['dex_price']}\""
            ),
        )
        self.assertEqual(result.returncode, 0, msg=result.stderr)
        self.assertEqual(result.stdout.strip(), "7.0|3|4|(60, 30.0)")

    def test_reload_rereads_edited_env_file(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir:
            env_path = Path(tmpdir) / "bot.env"
            env_path.write_text("BUY_DELAY_SECONDS=2\n", encoding="utf-8")
            root = Path(__file__).resolve().parents[1]
            env = os.environ.copy()
            env.pop("BUY_DELAY_SECONDS", None)
            env["BOT_ENV_FILE"] = str(env_path)
            script = (
                "import pathlib, config\n"
                f"pathlib.Path({str(env_path)!r}).write_text('BUY_DELAY_SECONDS=7\\n', encoding='utf-8')\n"
                "config.reload_env_files()\n"
                "print(config.BUY_DELAY_SECONDS, config.read_lifecycle_values()['BUY_DELAY_SECONDS'])\n"
            )
            result = subprocess.run(
                [sys.executable, "-c", script],
                cwd=str(root),
                env=env,
                capture_output=True,
                text=True,
            )
        self.assertEqual(result.returncode, 0, msg=result.stderr)
        self.assertEqual(result.stdout.strip(), "2.0 7.0")


if __name__ == "__main__":
    unittest.main()
