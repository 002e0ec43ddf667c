"""Entry point for the Base ladder bot."""

import asyncio
import html
import logging
import os
import signal
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler
from typing import Any

import config
from telegram import Update
from telegram.ext import Application, CommandHandler, ContextTypes

from config import APP_LOG_FILE, LOG_DIR, LOG_LEVEL, TELEGRAM_BOT_TOKEN
from monitor.discovery import DexBoostsDiscovery
from monitor.event_log import EventLogWriter
from monitor.notifier import TelegramNotifier
from trading.events import EventBus, EventType
from trading.paper import PaperBook
from trading.position_engine import PositionEngine, position_state
from trading.position_store import PositionStore
from trading.price_scheduler import PriceScheduler
from trading.price_source import DexScreenerPriceSource
from trading.settings import EngineSettings, SettingsError, SettingsProvider
from utils.http_client import ResilientHttpClient
from utils.state_file import StateWriteError


def configure_logging() -> None:
    os.makedirs(LOG_DIR, exist_ok=True)
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    file_handler = RotatingFileHandler(APP_LOG_FILE, maxBytes=1_000_000, backupCount=5, encoding="utf-8")
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    root = logging.getLogger()
    root.setLevel(getattr(logging, LOG_LEVEL.upper(), logging.INFO))
    root.handlers.clear()
    root.addHandler(file_handler)
    root.addHandler(console_handler)

    # Avoid leaking bot token in verbose transport logs.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("telegram").setLevel(logging.INFO)


logger = logging.getLogger(__name__)

# Per-tick events stay on the bus and in counters, not in the JSONL file.
EVENT_LOG_SKIP_TYPES = {
    EventType.PRICE_UPDATED.value,
    EventType.POSITION_UPDATED.value,
    EventType.PRICE_BATCH_COMPLETED.value,
}


@dataclass
class Runtime:
    bus: EventBus
    settings: SettingsProvider
    store: PositionStore
    http: ResilientHttpClient
    price_source: DexScreenerPriceSource
    scheduler: PriceScheduler
    engine: PositionEngine
    discovery: DexBoostsDiscovery
    event_log: EventLogWriter
    mode: str
    discovery_task: asyncio.Task | None = None


def build_runtime() -> Runtime:
    bus = EventBus()
    settings = SettingsProvider(EngineSettings.from_config(), bus)
    event_log = EventLogWriter(config.EVENT_LOG_FILE, run_tag=config.RUN_TAG, skip_types=EVENT_LOG_SKIP_TYPES)
    event_log.attach(bus)

    store = PositionStore(
        config.POSITIONS_STATE_FILE,
        lock_timeout_seconds=config.STATE_FILE_LOCK_TIMEOUT_SECONDS,
        lock_poll_seconds=config.STATE_FILE_LOCK_RETRY_SECONDS,
    )
    store.load()

    http = ResilientHttpClient(timeout_seconds=config.DEX_TIMEOUT)
    price_source = DexScreenerPriceSource(http)
    if config.AUTO_TRADE_PAPER:
        book = PaperBook(price_source, settings.current().quote_asset, config.PAPER_START_BALANCE_ETH)
        venue: Any = book
        wallet: Any = book
        mode = "paper"
    else:
        # Imported lazily so paper mode never needs an RPC endpoint.
        from trading.live_executor import LiveExecutor
        from trading.venue import LiveSwapVenue, LiveWallet

        executor = LiveExecutor()
        venue = LiveSwapVenue(executor)
        wallet = LiveWallet(executor)
        mode = "live"

    scheduler = PriceScheduler(bus, price_source, settings)
    engine = PositionEngine(store, scheduler, bus, venue, wallet, price_source, settings)
    return Runtime(
        bus=bus,
        settings=settings,
        store=store,
        http=http,
        price_source=price_source,
        scheduler=scheduler,
        engine=engine,
        discovery=DexBoostsDiscovery(http),
        event_log=event_log,
        mode=mode,
    )


async def discovery_loop(runtime: Runtime) -> None:
    while True:
        try:
            candidates = await runtime.discovery.fetch_candidates()
            accepted: list[str] = []
            if config.AUTO_TRADE_ENABLED:
                accepted = await runtime.engine.process_candidates(candidates)
            logger.info(
                "Discovery cycle candidates=%s accepted=%s pending_buys=%s monitored=%s auto_trade=%s",
                len(candidates),
                len(accepted),
                len(runtime.engine.scheduled_buys()),
                runtime.scheduler.stats()["registered"],
                config.AUTO_TRADE_ENABLED,
            )
        except Exception:
            logger.exception("Discovery loop error")
        await asyncio.sleep(runtime.settings.current().discovery_interval_seconds)


async def start_runtime(runtime: Runtime) -> None:
    await runtime.engine.start()
    runtime.scheduler.start()
    runtime.discovery_task = asyncio.create_task(discovery_loop(runtime), name="discovery")
    logger.info(
        "Runtime started mode=%s positions=%s ladder=%s",
        runtime.mode,
        len(runtime.store.list_all()),
        ",".join(s.id for s in runtime.settings.current().active_stages()),
    )


async def stop_runtime(runtime: Runtime) -> None:
    task, runtime.discovery_task = runtime.discovery_task, None
    if task:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
    await runtime.scheduler.stop()
    await runtime.engine.stop()
    runtime.scheduler.close()
    try:
        runtime.store.flush()
    except StateWriteError:
        logger.critical("Final state flush failed; last mutations may not be durable")
    await runtime.http.close()
    runtime.event_log.detach()
    logger.info("Runtime stopped")


def reload_settings(runtime: Runtime) -> tuple[bool, str]:
    """Re-read env files and swap in a new settings snapshot.

    On a parse or validation error the config module and the active
    snapshot are left as they were.
    """
    previous = {key: getattr(config, key) for key in config.LIFECYCLE_KEYS}
    try:
        config.reload_env_files()
        values = config.read_lifecycle_values()
        for key, value in values.items():
            setattr(config, key, value)
        applied = runtime.settings.apply(EngineSettings.from_config())
    except (SettingsError, ValueError, OSError) as exc:
        for key, value in previous.items():
            setattr(config, key, value)
        logger.warning("CONFIG_RELOAD_REJECTED err=%s", exc)
        return False, str(exc)
    changed = sorted(key for key, value in values.items() if previous[key] != value)
    logger.info(
        "CONFIG_RELOADED keys=%s ladder=%s",
        ",".join(changed) or "-",
        ",".join(s.id for s in applied.active_stages()),
    )
    return True, ",".join(changed) or "no changes"


def format_status(runtime: Runtime) -> str:
    stats = runtime.scheduler.stats()
    positions = runtime.store.list_all()
    by_state: dict[str, int] = {}
    for position in positions:
        state = position_state(position).value
        by_state[state] = by_state.get(state, 0) + 1
    states = ", ".join(f"{k}={v}" for k, v in sorted(by_state.items())) or "none"
    return (
        f"<b>Mode:</b> {runtime.mode}\n"
        f"<b>Positions:</b> {states}\n"
        f"<b>Monitored:</b> {stats['registered']} (interval {stats['interval']:.1f}s)\n"
        f"<b>Last tick:</b> {stats['lastTick'] or '-'}"
    )


def format_positions(runtime: Runtime) -> str:
    rows = []
    for position in runtime.store.list_all():
        if position.closed:
            continue
        sold = ",".join(k for k, v in sorted(position.stage_completion.items()) if v) or "-"
        rows.append(
            f"<code>{position.symbol or position.asset_id[:10]}</code> "
            f"{position_state(position).value} x{position.multiple:.2f} "
            f"(max x{position.highest_multiple:.2f}) sold={sold}"
        )
    return "\n".join(rows) or "No open positions"


async def status_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    runtime: Runtime | None = context.application.bot_data.get("runtime")
    if runtime is None or update.effective_message is None:
        return
    await update.effective_message.reply_text(format_status(runtime), parse_mode="HTML")


async def positions_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    runtime: Runtime | None = context.application.bot_data.get("runtime")
    if runtime is None or update.effective_message is None:
        return
    await update.effective_message.reply_text(format_positions(runtime), parse_mode="HTML")


async def reload_command(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    runtime: Runtime | None = context.application.bot_data.get("runtime")
    if runtime is None or update.effective_message is None:
        return
    owner = int(config.PERSONAL_TELEGRAM_ID or 0)
    if owner > 0 and (update.effective_user is None or update.effective_user.id != owner):
        logger.warning("CONFIG_RELOAD_DENIED user=%s", getattr(update.effective_user, "id", None))
        return
    ok, detail = reload_settings(runtime)
    if ok:
        text = f"<b>Settings reloaded:</b> {html.escape(detail)}"
    else:
        text = f"<b>Reload rejected, previous settings kept:</b>\n<code>{html.escape(detail)}</code>"
    await update.effective_message.reply_text(text, parse_mode="HTML")


async def post_init(application: Application) -> None:
    runtime = build_runtime()
    notifier = TelegramNotifier(application.bot)
    notifier.attach(runtime.bus)
    application.bot_data["runtime"] = runtime
    application.bot_data["notifier"] = notifier
    await start_runtime(runtime)


async def post_shutdown(application: Application) -> None:
    notifier: TelegramNotifier | None = application.bot_data.get("notifier")
    if notifier:
        notifier.detach()
    runtime: Runtime | None = application.bot_data.get("runtime")
    if runtime:
        await stop_runtime(runtime)


async def run_headless() -> None:
    runtime = build_runtime()
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except (NotImplementedError, RuntimeError):
            # Windows: KeyboardInterrupt still reaches asyncio.run.
            pass
    if hasattr(signal, "SIGHUP"):
        try:
            loop.add_signal_handler(signal.SIGHUP, reload_settings, runtime)
        except (NotImplementedError, RuntimeError):
            pass
    await start_runtime(runtime)
    try:
        await stop.wait()
    finally:
        await stop_runtime(runtime)


def main() -> None:
    configure_logging()
    if not TELEGRAM_BOT_TOKEN:
        logger.info("TELEGRAM_BOT_TOKEN is not set; running without Telegram")
        try:
            asyncio.run(run_headless())
        except KeyboardInterrupt:
            pass
        return

    app = Application.builder().token(TELEGRAM_BOT_TOKEN).post_init(post_init).post_shutdown(post_shutdown).build()
    app.add_handler(CommandHandler("status", status_command))
    app.add_handler(CommandHandler("positions", positions_command))
    app.add_handler(CommandHandler("reload", reload_command))
    app.run_polling()


if __name__ == "__main__":
    main()
