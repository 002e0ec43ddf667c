"""Durable record of positions and their stage-completion flags.

The whole state is one JSON document `{"seen": {...}, "positions": {...}}`
that is rewritten after every mutation (write-through). A failed write keeps
the in-memory mutation and raises `StateWriteError`; callers retry `flush()`,
never the logical operation.
"""

from __future__ import annotations

import copy
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable

from utils.addressing import normalize_address
from utils.state_file import StateFileLockError, StateWriteError, read_json_document, write_json_atomic_locked

logger = logging.getLogger(__name__)

HISTORY_LIMIT = 100


class UnknownPositionError(KeyError):
    pass


class PositionExistsError(ValueError):
    pass


@dataclass
class PricePoint:
    timestamp: float
    price: float
    multiple: float


@dataclass
class Position:
    asset_id: str
    symbol: str
    entry_price: float | None
    entry_size: float
    current_price: float = 0.0
    highest_price: float = 0.0
    highest_multiple: float = 0.0
    stage_completion: dict[str, bool] = field(default_factory=dict)
    paused: bool = False
    paused_at: float | None = None
    price_history: deque = field(default_factory=lambda: deque(maxlen=HISTORY_LIMIT))
    created_at: float = field(default_factory=time.time)
    last_updated: float = field(default_factory=time.time)
    closed_at: float | None = None
    close_reason: str = ""

    @property
    def multiple(self) -> float:
        if not self.entry_price:
            return 0.0
        return self.current_price / self.entry_price

    @property
    def percent_change(self) -> float:
        if not self.entry_price:
            return 0.0
        return (self.multiple - 1.0) * 100.0

    @property
    def closed(self) -> bool:
        return self.closed_at is not None

    def is_stage_sold(self, stage_id: str) -> bool:
        return bool(self.stage_completion.get(stage_id, False))

    def to_dict(self) -> dict[str, Any]:
        return {
            "assetId": self.asset_id,
            "symbol": self.symbol,
            "entryPrice": self.entry_price,
            "entrySize": self.entry_size,
            "currentPrice": self.current_price,
            "highestPrice": self.highest_price,
            "highestMultiple": self.highest_multiple,
            "stageCompletion": dict(self.stage_completion),
            "paused": self.paused,
            "pausedAt": self.paused_at,
            "priceHistory": [
                {"timestamp": p.timestamp, "price": p.price, "multiple": p.multiple} for p in self.price_history
            ],
            "createdAt": self.created_at,
            "lastUpdated": self.last_updated,
            "closedAt": self.closed_at,
            "closeReason": self.close_reason,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "Position":
        entry = raw.get("entryPrice")
        history = deque(maxlen=HISTORY_LIMIT)
        for row in raw.get("priceHistory", []) or []:
            try:
                history.append(
                    PricePoint(
                        timestamp=float(row["timestamp"]),
                        price=float(row["price"]),
                        multiple=float(row.get("multiple", 0.0)),
                    )
                )
            except (KeyError, TypeError, ValueError):
                continue
        paused = bool(raw.get("paused", False))
        closed_at = raw.get("closedAt")
        return cls(
            asset_id=normalize_address(raw.get("assetId")),
            symbol=str(raw.get("symbol", "") or ""),
            entry_price=float(entry) if entry is not None else None,
            entry_size=float(raw.get("entrySize", 0.0) or 0.0),
            current_price=float(raw.get("currentPrice", 0.0) or 0.0),
            highest_price=float(raw.get("highestPrice", 0.0) or 0.0),
            highest_multiple=float(raw.get("highestMultiple", 0.0) or 0.0),
            stage_completion={str(k): bool(v) for k, v in (raw.get("stageCompletion") or {}).items()},
            paused=paused,
            paused_at=float(raw["pausedAt"]) if paused and raw.get("pausedAt") is not None else None,
            price_history=history,
            created_at=float(raw.get("createdAt", 0.0) or 0.0),
            last_updated=float(raw.get("lastUpdated", 0.0) or 0.0),
            closed_at=float(closed_at) if closed_at is not None else None,
            close_reason=str(raw.get("closeReason", "") or ""),
        )


def _empty_document() -> dict[str, Any]:
    return {"seen": {}, "positions": {}}


class PositionStore:
    def __init__(
        self,
        path: str | None,
        *,
        lock_timeout_seconds: float = 2.0,
        lock_poll_seconds: float = 0.05,
        clock: Callable[[], float] = time.time,
    ) -> None:
        # path=None keeps everything in memory (no durability).
        self.path = path
        self._lock_timeout = lock_timeout_seconds
        self._lock_poll = lock_poll_seconds
        self._clock = clock
        self._positions: dict[str, Position] = {}
        self._seen: dict[str, bool] = {}
        self.pending_flush = False

    def load(self) -> None:
        if not self.path:
            return
        document = read_json_document(
            self.path,
            _empty_document,
            timeout_seconds=self._lock_timeout,
            poll_seconds=self._lock_poll,
        )
        if not isinstance(document, dict):
            document = _empty_document()
        self._seen = {normalize_address(k): bool(v) for k, v in (document.get("seen") or {}).items()}
        self._positions = {}
        for key, raw in (document.get("positions") or {}).items():
            if not isinstance(raw, dict):
                continue
            raw.setdefault("assetId", key)
            try:
                position = Position.from_dict(raw)
            except (TypeError, ValueError) as exc:
                logger.warning("STATE_POSITION_SKIPPED asset=%s err=%s", key, exc)
                continue
            if position.asset_id:
                self._positions[position.asset_id] = position
        logger.info("STATE_LOADED path=%s positions=%s seen=%s", self.path, len(self._positions), len(self._seen))

    def flush(self) -> None:
        """Rewrite the whole document. Raises StateWriteError; memory is kept."""
        if not self.path:
            self.pending_flush = False
            return
        document = {
            "seen": dict(self._seen),
            "positions": {key: pos.to_dict() for key, pos in self._positions.items()},
        }
        try:
            write_json_atomic_locked(
                self.path,
                document,
                timeout_seconds=self._lock_timeout,
                poll_seconds=self._lock_poll,
            )
        except (OSError, StateFileLockError, TypeError, ValueError) as exc:
            self.pending_flush = True
            logger.error("STATE_WRITE_FAILED path=%s err=%s", self.path, exc)
            raise StateWriteError(self.path, exc) from exc
        self.pending_flush = False

    def _require(self, asset_id: str) -> Position:
        key = normalize_address(asset_id)
        position = self._positions.get(key)
        if position is None:
            raise UnknownPositionError(key)
        return position

    def create(self, asset_id: str, symbol: str, entry_price: float | None, size: float) -> Position:
        key = normalize_address(asset_id)
        existing = self._positions.get(key)
        if existing is not None and not existing.closed:
            raise PositionExistsError(f"position already open for {key}")
        now = self._clock()
        position = Position(
            asset_id=key,
            symbol=str(symbol or ""),
            entry_price=None,
            entry_size=float(size),
            created_at=now,
            last_updated=now,
        )
        if entry_price is not None and entry_price > 0:
            self._start_activation(position, float(entry_price), now)
        self._positions[key] = position
        self.flush()
        return copy.deepcopy(position)

    def get(self, asset_id: str) -> Position | None:
        position = self._positions.get(normalize_address(asset_id))
        return copy.deepcopy(position) if position is not None else None

    @staticmethod
    def _start_activation(position: Position, price: float, now: float) -> None:
        position.entry_price = price
        position.current_price = price
        position.highest_price = price
        position.highest_multiple = 1.0
        position.last_updated = now

    def set_entry_price(self, asset_id: str, price: float) -> bool:
        """Set the entry once per activation. Returns False if already known."""
        position = self._require(asset_id)
        if position.entry_price is not None:
            return False
        if not price > 0:
            raise ValueError(f"entry price must be positive (got {price})")
        self._start_activation(position, float(price), self._clock())
        self.flush()
        return True

    def update_price(self, asset_id: str, price: float) -> Position | None:
        key = normalize_address(asset_id)
        position = self._positions.get(key)
        if position is None:
            logger.debug("STATE_PRICE_SKIP asset=%s reason=unknown_position", key)
            return None
        if not position.entry_price:
            logger.info("STATE_PRICE_SKIP asset=%s reason=no_entry_price", key)
            return None
        now = self._clock()
        price = float(price)
        multiple = price / position.entry_price
        position.current_price = price
        position.price_history.append(PricePoint(timestamp=now, price=price, multiple=multiple))
        if price > position.highest_price:
            position.highest_price = price
            position.highest_multiple = multiple
        position.last_updated = now
        self.flush()
        return copy.deepcopy(position)

    def mark_stage_sold(self, asset_id: str, stage_id: str) -> bool:
        """Flip a stage to sold. Returns False if it already was."""
        position = self._require(asset_id)
        if position.stage_completion.get(stage_id):
            return False
        position.stage_completion[stage_id] = True
        position.last_updated = self._clock()
        self.flush()
        return True

    def pause(self, asset_id: str) -> bool:
        position = self._require(asset_id)
        if position.paused:
            return False
        now = self._clock()
        position.paused = True
        position.paused_at = now
        position.last_updated = now
        self.flush()
        return True

    def reactivate(self, asset_id: str, new_entry_price: float) -> Position:
        """Start a fresh lifecycle on the same identity at `new_entry_price`."""
        if not new_entry_price > 0:
            raise ValueError(f"reactivation price must be positive (got {new_entry_price})")
        position = self._require(asset_id)
        now = self._clock()
        position.stage_completion = {}
        position.price_history = deque(maxlen=HISTORY_LIMIT)
        position.paused = False
        position.paused_at = None
        position.closed_at = None
        position.close_reason = ""
        self._start_activation(position, float(new_entry_price), now)
        self.flush()
        return copy.deepcopy(position)

    def close(self, asset_id: str, reason: str) -> bool:
        position = self._require(asset_id)
        if position.closed:
            return False
        now = self._clock()
        position.closed_at = now
        position.close_reason = str(reason or "")
        position.last_updated = now
        self.flush()
        return True

    def list_all(self) -> list[Position]:
        return [copy.deepcopy(p) for p in self._positions.values()]

    def list_active(self) -> list[Position]:
        return [copy.deepcopy(p) for p in self._positions.values() if not p.paused and not p.closed]

    def list_paused(self) -> list[Position]:
        return [copy.deepcopy(p) for p in self._positions.values() if p.paused and not p.closed]

    def mark_seen(self, asset_id: str) -> None:
        key = normalize_address(asset_id)
        if self._seen.get(key):
            return
        self._seen[key] = True
        self.flush()

    def is_seen(self, asset_id: str) -> bool:
        return bool(self._seen.get(normalize_address(asset_id), False))
