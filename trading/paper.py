"""Simulated wallet + venue used when AUTO_TRADE_PAPER is on."""

from __future__ import annotations

import logging
import uuid
from typing import Any

import config
from trading.price_source import PriceSource
from trading.venue import ZERO_BALANCE, SwapResult, TokenBalance
from utils.addressing import normalize_address

logger = logging.getLogger(__name__)

TOKEN_DECIMALS = 18
QUOTE_DECIMALS = 18


class PaperBook:
    """In-memory balances filled at the price source's current USD price."""

    def __init__(self, price_source: PriceSource, quote_asset: str, start_quote: float = 0.0) -> None:
        self._price_source = price_source
        self.quote_asset = normalize_address(quote_asset)
        self._balances: dict[str, int] = {}
        self.credit(self.quote_asset, int(start_quote * 10**QUOTE_DECIMALS))
        self.fills: list[dict[str, Any]] = []

    def credit(self, asset_id: str, amount_raw: int) -> None:
        key = normalize_address(asset_id)
        self._balances[key] = self._balances.get(key, 0) + max(0, int(amount_raw))

    def drain(self, asset_id: str) -> int:
        """Zero an asset balance as if it was moved out of the wallet."""
        return self._balances.pop(normalize_address(asset_id), 0)

    async def get_balance(self, asset_id: str) -> TokenBalance:
        key = normalize_address(asset_id)
        decimals = QUOTE_DECIMALS if key == self.quote_asset else TOKEN_DECIMALS
        return TokenBalance(amount_raw=self._balances.get(key, 0), decimals=decimals)

    async def _quote_price_usd(self) -> float:
        resolver = getattr(self._price_source, "quote_price_usd", None)
        if resolver is not None:
            return float(await resolver())
        return float(config.WETH_PRICE_FALLBACK_USD)

    async def swap(self, input_asset: str, output_asset: str, amount_raw: int) -> SwapResult:
        src = normalize_address(input_asset)
        dst = normalize_address(output_asset)
        amount_raw = int(amount_raw)
        if (src == self.quote_asset) == (dst == self.quote_asset):
            return SwapResult(ok=False, amount_in=amount_raw, error="unsupported_route")
        available = self._balances.get(src, 0)
        if src != self.quote_asset and (available <= 0 or amount_raw <= 0):
            return SwapResult(ok=False, amount_in=amount_raw, error=ZERO_BALANCE)
        if amount_raw <= 0:
            return SwapResult(ok=False, error="amount_in_zero")
        if amount_raw > available:
            if src == self.quote_asset:
                return SwapResult(ok=False, amount_in=amount_raw, error="insufficient_quote_balance")
            amount_raw = available

        token = dst if src == self.quote_asset else src
        token_usd = await self._price_source.get_price(token)
        if not token_usd:
            return SwapResult(ok=False, amount_in=amount_raw, error="no_price")
        quote_usd = await self._quote_price_usd()
        token_in_quote = token_usd / quote_usd

        if src == self.quote_asset:
            tokens = (amount_raw / 10**QUOTE_DECIMALS) / token_in_quote
            amount_out = int(tokens * 10**TOKEN_DECIMALS)
        else:
            quote = (amount_raw / 10**TOKEN_DECIMALS) * token_in_quote
            amount_out = int(quote * 10**QUOTE_DECIMALS)
        self._balances[src] = available - amount_raw
        self.credit(dst, amount_out)

        signature = f"paper-{uuid.uuid4().hex}"
        self.fills.append({"signature": signature, "in": src, "out": dst, "amountIn": amount_raw, "amountOut": amount_out})
        logger.info(
            "PAPER_SWAP in=%s out=%s amount_in=%s amount_out=%s price_quote=%.12f",
            src,
            dst,
            amount_raw,
            amount_out,
            token_in_quote,
        )
        return SwapResult(
            ok=True,
            signature=signature,
            amount_in=amount_raw,
            amount_out=amount_out,
            price=token_in_quote,
        )
