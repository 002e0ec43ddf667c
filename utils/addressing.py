"""Asset identifier helpers."""

from __future__ import annotations

import re

_EVM_ADDRESS_RE = re.compile(r"^0x[0-9a-f]{40}$")


def normalize_address(value: str | None) -> str:
    """Normalize on-chain address keys for internal maps/dedup."""
    return str(value or "").strip().lower()


def is_evm_address(value: str | None) -> bool:
    return bool(_EVM_ADDRESS_RE.match(normalize_address(value)))
