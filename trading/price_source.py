"""DexScreener spot price lookups."""

from __future__ import annotations

import logging
from typing import Any, Protocol

import config
from utils.addressing import normalize_address
from utils.http_client import ResilientHttpClient

logger = logging.getLogger(__name__)


class PriceSource(Protocol):
    async def get_price(self, asset_id: str) -> float | None: ...


def best_pair_price(payload: Any, chain_id: str) -> float | None:
    """USD price of the most liquid pair on `chain_id`, or None."""
    if not isinstance(payload, dict):
        return None
    best_liq = -1.0
    best_price = 0.0
    for pair in payload.get("pairs") or []:
        if not isinstance(pair, dict):
            continue
        if str(pair.get("chainId", "")).lower() != str(chain_id).lower():
            continue
        try:
            liq = float((pair.get("liquidity") or {}).get("usd") or 0)
            price = float(pair.get("priceUsd") or 0)
        except (TypeError, ValueError):
            continue
        if price <= 0:
            continue
        if liq > best_liq:
            best_liq = liq
            best_price = price
    return best_price if best_price > 0 else None


class DexScreenerPriceSource:
    def __init__(self, http: ResilientHttpClient | None = None, *, source: str | None = None) -> None:
        self._http = http or ResilientHttpClient(timeout_seconds=config.DEX_TIMEOUT)
        self._owns_http = http is None
        self.source = source or config.PRICE_SOURCE_NAME
        self._last_quote_price_usd = 0.0

    async def get_price(self, asset_id: str) -> float | None:
        token_address = normalize_address(asset_id)
        if not token_address:
            return None
        result = await self._http.get_json(
            f"{config.DEXSCREENER_API}/tokens/{token_address}",
            source=self.source,
        )
        if not result.ok:
            logger.debug("PRICE_LOOKUP_FAILED token=%s err=%s", token_address, result.error)
            return None
        return best_pair_price(result.data, config.CHAIN_ID)

    async def quote_price_usd(self) -> float:
        """USD price of the quote coin; last good value, then the configured fallback."""
        if config.WETH_ADDRESS:
            fetched = await self.get_price(config.WETH_ADDRESS)
            if fetched:
                self._last_quote_price_usd = fetched
                return fetched
        if self._last_quote_price_usd > 0:
            return self._last_quote_price_usd
        return float(config.WETH_PRICE_FALLBACK_USD)

    def stats(self) -> dict[str, dict[str, int | float]]:
        return self._http.snapshot_stats()

    async def close(self) -> None:
        if self._owns_http:
            await self._http.close()
