"""Stable record shape for the operator event log."""

from __future__ import annotations

import hashlib
from datetime import datetime, timezone
from typing import Any, Mapping

LOG_SCHEMA_VERSION = "2026-10-18.v1"
SCHEMA_LIFECYCLE_EVENT = "lifecycle_event.v1"

_REASON_CODE_BY_TYPE: dict[str, str] = {
    "price:updated": "PRICE_UPDATED",
    "price:stale": "PRICE_STALE",
    "price:batch_completed": "PRICE_BATCH",
    "position:created": "POSITION_CREATED",
    "position:entry_set": "POSITION_ENTRY_SET",
    "position:updated": "POSITION_UPDATED",
    "position:paused": "POSITION_PAUSED",
    "position:resumed": "POSITION_RESUMED",
    "position:closed": "POSITION_CLOSED",
    "position:activation_failed": "POSITION_ACTIVATION_FAILED",
    "takeprofit:triggered": "EXIT_STAGE_SOLD",
    "monitor:started": "MONITOR_STARTED",
    "monitor:stopped": "MONITOR_STOPPED",
    "monitor:priority_changed": "MONITOR_PRIORITY_CHANGED",
    "trade:buy_confirmed": "EXEC_BUY",
    "trade:buy_failed": "EXEC_BUY_FAIL",
    "trade:sell_confirmed": "EXEC_SELL",
    "trade:sell_failed": "EXEC_SELL_FAIL",
    "trade:balance_failed": "EXEC_BALANCE_FAIL",
    "config:updated": "CONFIG_UPDATED",
}

REASON_CODE_TAXONOMY: dict[str, dict[str, str]] = {
    "PRICE_STALE": {"severity": "WARN", "category": "price", "title": "Price lookup returned nothing"},
    "MONITOR_PRIORITY_CHANGED": {"severity": "WARN", "category": "monitor", "title": "Polling priority changed"},
    "POSITION_PAUSED": {"severity": "WARN", "category": "position", "title": "Position paused on zero balance"},
    "POSITION_ACTIVATION_FAILED": {"severity": "CRITICAL", "category": "position", "title": "No entry price after retries"},
    "EXIT_STAGE_SOLD": {"severity": "INFO", "category": "exit", "title": "Ladder stage sold"},
    "EXIT_STOP_LOSS": {"severity": "WARN", "category": "exit", "title": "Stop-loss stage sold"},
    "EXEC_BUY_FAIL": {"severity": "ERROR", "category": "execute", "title": "Buy failed"},
    "EXEC_SELL_FAIL": {"severity": "ERROR", "category": "execute", "title": "Sell failed"},
    "EXEC_BALANCE_FAIL": {"severity": "WARN", "category": "execute", "title": "Balance read failed"},
    "POSITION_CLOSED": {"severity": "INFO", "category": "position", "title": "Position completed"},
}


def reason_code_for_event(event_type: str, payload: Mapping[str, Any] | None = None) -> str:
    payload = payload or {}
    if event_type == "takeprofit:triggered" and payload.get("kind") == "stop_loss":
        return "EXIT_STOP_LOSS"
    code = _REASON_CODE_BY_TYPE.get(str(event_type or ""))
    if code:
        return code
    return str(event_type or "unknown").upper().replace(":", "_")


def reason_code_meta(code: str) -> dict[str, str]:
    if code in REASON_CODE_TAXONOMY:
        return dict(REASON_CODE_TAXONOMY[code])
    category = code.split("_", 1)[0].lower() if code else "unknown"
    return {"severity": "INFO", "category": category, "title": code.replace("_", " ").title()}


def _iso_from_ts(ts: float) -> str:
    return datetime.fromtimestamp(float(ts), tz=timezone.utc).isoformat()


def _event_id(event_type: str, payload: Mapping[str, Any], ts: float, run_tag: str) -> str:
    seed = "|".join([run_tag, event_type, str(payload.get("assetId", "")), str(payload.get("stageId", "")), f"{ts:.6f}"])
    return "evt_" + hashlib.sha1(seed.encode("utf-8", errors="ignore")).hexdigest()[:20]


def lifecycle_event_record(
    event_type: str,
    payload: Mapping[str, Any],
    *,
    timestamp: float,
    event_schema_version: int,
    run_tag: str = "",
) -> dict[str, Any]:
    """One JSON-ready row: the event plus schema stamps and reason-code metadata."""
    code = reason_code_for_event(event_type, payload)
    meta = reason_code_meta(code)
    record: dict[str, Any] = {
        "schema_version": LOG_SCHEMA_VERSION,
        "schema_name": SCHEMA_LIFECYCLE_EVENT,
        "event_schema_version": int(event_schema_version),
        "event_id": _event_id(event_type, payload, timestamp, run_tag),
        "event_type": event_type,
        "ts": float(timestamp),
        "timestamp": _iso_from_ts(timestamp),
        "asset_id": str(payload.get("assetId", "") or ""),
        "reason_code": code,
        "reason_severity": meta["severity"],
        "reason_category": meta["category"],
        "payload": dict(payload),
    }
    if run_tag:
        record["run_tag"] = run_tag
    return record
