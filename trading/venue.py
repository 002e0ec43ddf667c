"""Swap venue and wallet contracts the position engine talks to."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from utils.addressing import normalize_address

if TYPE_CHECKING:
    from trading.live_executor import LiveExecutor

logger = logging.getLogger(__name__)

ZERO_BALANCE = "zero_balance"


class WalletError(RuntimeError):
    """Balance could not be read; treated as transient by callers."""


@dataclass(frozen=True)
class TokenBalance:
    amount_raw: int
    decimals: int = 18

    @property
    def amount(self) -> float:
        return self.amount_raw / (10**self.decimals)

    @property
    def is_zero(self) -> bool:
        return self.amount_raw <= 0


@dataclass(frozen=True)
class SwapResult:
    ok: bool
    signature: str = ""
    amount_in: int = 0
    amount_out: int = 0
    price: float | None = None
    error: str = ""

    @property
    def zero_balance(self) -> bool:
        return not self.ok and self.error == ZERO_BALANCE


class SwapVenue(Protocol):
    async def swap(self, input_asset: str, output_asset: str, amount_raw: int) -> SwapResult: ...


class WalletAccessor(Protocol):
    async def get_balance(self, asset_id: str) -> TokenBalance: ...


class LiveSwapVenue:
    """Runs the blocking web3 executor off the event loop."""

    def __init__(self, executor: "LiveExecutor") -> None:
        self._executor = executor

    async def swap(self, input_asset: str, output_asset: str, amount_raw: int) -> SwapResult:
        try:
            return await asyncio.to_thread(self._executor.swap, input_asset, output_asset, int(amount_raw))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning(
                "LIVE_SWAP_FAILED in=%s out=%s amount_raw=%s err=%s",
                normalize_address(input_asset),
                normalize_address(output_asset),
                amount_raw,
                exc,
            )
            return SwapResult(ok=False, amount_in=int(amount_raw), error=str(exc) or exc.__class__.__name__)


class LiveWallet:
    def __init__(self, executor: "LiveExecutor") -> None:
        self._executor = executor

    async def get_balance(self, asset_id: str) -> TokenBalance:
        try:
            amount_raw, decimals = await asyncio.to_thread(self._executor.token_balance, asset_id)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            raise WalletError(f"balance read failed token={normalize_address(asset_id)} err={exc}") from exc
        return TokenBalance(amount_raw=int(amount_raw), decimals=int(decimals))
