"""Append-only JSONL sink for every bus event (operator-facing log)."""

from __future__ import annotations

import json
import logging
import os
from typing import Callable

from trading.events import EVENT_SCHEMA_VERSION, Event, EventBus
from utils.log_contracts import lifecycle_event_record

logger = logging.getLogger(__name__)

_SEVERITY_LEVEL = {
    "WARN": logging.WARNING,
    "ERROR": logging.ERROR,
    "CRITICAL": logging.CRITICAL,
}


class EventLogWriter:
    def __init__(self, path: str, *, run_tag: str = "", skip_types: set[str] | None = None) -> None:
        self.path = path
        self.run_tag = run_tag
        # High-volume types can be kept out of the file; they still count on the bus.
        self.skip_types = set(skip_types or ())
        self._unsubscribe: Callable[[], None] | None = None
        os.makedirs(os.path.dirname(self.path) or ".", exist_ok=True)

    def attach(self, bus: EventBus) -> None:
        if self._unsubscribe is None:
            self._unsubscribe = bus.subscribe_all(self.write)

    def detach(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def write(self, event: Event) -> None:
        record = lifecycle_event_record(
            event.type.value,
            event.payload,
            timestamp=event.timestamp,
            event_schema_version=EVENT_SCHEMA_VERSION,
            run_tag=self.run_tag,
        )
        level = _SEVERITY_LEVEL.get(record["reason_severity"])
        if level is not None:
            logger.log(level, "EVENT %s code=%s payload=%s", record["event_type"], record["reason_code"], record["payload"])
        if event.type.value in self.skip_types:
            return
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(json.dumps(record, ensure_ascii=False, default=str) + "\n")
