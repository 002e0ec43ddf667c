"""Take-profit / stop-loss ladders and their validation."""

from __future__ import annotations

import math
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Sequence


class LadderKind(str, Enum):
    TAKE_PROFIT = "take_profit"
    STOP_LOSS = "stop_loss"


class LadderError(ValueError):
    """Ladder configuration rejected; nothing from it was applied."""


@dataclass(frozen=True)
class Stage:
    id: str
    name: str
    multiple: float
    sell_percent: float
    enabled: bool = True
    kind: LadderKind = LadderKind.TAKE_PROFIT

    def crossed(self, multiple: float) -> bool:
        if self.kind == LadderKind.STOP_LOSS:
            return multiple <= self.multiple
        return multiple >= self.multiple

    @property
    def full_exit(self) -> bool:
        return self.sell_percent >= 100.0

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "multiple": self.multiple,
            "sellPercent": self.sell_percent,
            "enabled": self.enabled,
            "kind": self.kind.value,
        }


def parse_ladder(raw: str, kind: LadderKind) -> tuple[Stage, ...]:
    """Parse `id:multiple:percent[:off]` comma separated rungs.

    `tp1:2:50,tp2:5:100` -> two enabled take-profit stages. Order is kept.
    """
    stages: list[Stage] = []
    for chunk in str(raw or "").split(","):
        item = chunk.strip()
        if not item:
            continue
        parts = [p.strip() for p in item.split(":")]
        if len(parts) not in (3, 4):
            raise LadderError(f"ladder rung '{item}' must look like id:multiple:percent[:off]")
        stage_id, multiple_raw, percent_raw = parts[:3]
        enabled = len(parts) == 3 or parts[3].lower() not in ("off", "false", "0", "disabled")
        try:
            multiple = float(multiple_raw)
            percent = float(percent_raw)
        except ValueError as exc:
            raise LadderError(f"ladder rung '{item}' has a non-numeric value") from exc
        stages.append(
            Stage(
                id=stage_id,
                name=stage_id.upper(),
                multiple=multiple,
                sell_percent=percent,
                enabled=enabled,
                kind=kind,
            )
        )
    return tuple(stages)


def _check_stage(stage: Stage, kind: LadderKind) -> None:
    if not str(stage.id or "").strip():
        raise LadderError("stage id must be non-empty")
    if not str(stage.name or "").strip():
        raise LadderError(f"stage {stage.id}: name must be non-empty")
    if stage.kind != kind:
        raise LadderError(f"stage {stage.id}: expected {kind.value} stage, got {stage.kind.value}")
    if not math.isfinite(stage.multiple) or not math.isfinite(stage.sell_percent):
        raise LadderError(f"stage {stage.id}: values must be finite")
    if not 0.0 < stage.sell_percent <= 100.0:
        raise LadderError(f"stage {stage.id}: sell percent {stage.sell_percent} outside (0, 100]")
    if not stage.enabled:
        return
    if kind == LadderKind.TAKE_PROFIT and stage.multiple <= 1.0:
        raise LadderError(f"stage {stage.id}: take-profit multiple {stage.multiple} must be > 1")
    if kind == LadderKind.STOP_LOSS and not 0.0 < stage.multiple < 1.0:
        raise LadderError(f"stage {stage.id}: stop-loss multiple {stage.multiple} must be in (0, 1)")


def validate_ladder(stages: Sequence[Stage], kind: LadderKind) -> None:
    """Enabled multiples must move strictly away from 1 in ladder order."""
    previous: Stage | None = None
    for stage in stages:
        _check_stage(stage, kind)
        if not stage.enabled:
            continue
        if previous is not None:
            if kind == LadderKind.TAKE_PROFIT and stage.multiple <= previous.multiple:
                raise LadderError(
                    f"take-profit ladder must be strictly increasing: {previous.id}={previous.multiple} "
                    f"then {stage.id}={stage.multiple}"
                )
            if kind == LadderKind.STOP_LOSS and stage.multiple >= previous.multiple:
                raise LadderError(
                    f"stop-loss ladder must be strictly decreasing: {previous.id}={previous.multiple} "
                    f"then {stage.id}={stage.multiple}"
                )
        previous = stage


def validate_ladders(take_profit: Sequence[Stage], stop_loss: Sequence[Stage]) -> None:
    validate_ladder(take_profit, LadderKind.TAKE_PROFIT)
    validate_ladder(stop_loss, LadderKind.STOP_LOSS)
    seen: set[str] = set()
    for stage in list(take_profit) + list(stop_loss):
        if stage.id in seen:
            raise LadderError(f"duplicate stage id '{stage.id}'")
        seen.add(stage.id)


def enabled_stages(*ladders: Iterable[Stage]) -> list[Stage]:
    return [stage for ladder in ladders for stage in ladder if stage.enabled]
