"""Candidate discovery from the DexScreener token-boosts feed."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import config
from utils.addressing import is_evm_address, normalize_address
from utils.http_client import ResilientHttpClient

logger = logging.getLogger(__name__)

# DexScreener accepts up to 30 comma-separated addresses per /tokens call.
_TOKENS_PER_LOOKUP = 30


@dataclass(frozen=True)
class DiscoveredAsset:
    id: str
    symbol: str
    score: float


class DexBoostsDiscovery:
    def __init__(self, http: ResilientHttpClient | None = None) -> None:
        self._http = http or ResilientHttpClient(timeout_seconds=config.DEX_TIMEOUT)
        self._owns_http = http is None

    async def fetch_candidates(self) -> list[DiscoveredAsset]:
        result = await self._http.get_json(config.DEX_BOOSTS_API, source="dex_boosts", max_attempts=1)
        if not result.ok or not isinstance(result.data, list):
            if not result.ok:
                logger.warning("DISCOVERY_FETCH_FAILED err=%s", result.error)
            return []

        scores: dict[str, float] = {}
        for row in result.data:
            if not isinstance(row, dict):
                continue
            if str(row.get("chainId", "")).lower() != str(config.CHAIN_ID).lower():
                continue
            addr = normalize_address(row.get("tokenAddress"))
            if not is_evm_address(addr):
                continue
            try:
                amount = float(row.get("totalAmount") or row.get("amount") or 0)
            except (TypeError, ValueError):
                amount = 0.0
            scores[addr] = max(scores.get(addr, 0.0), amount)
            if len(scores) >= config.DEX_BOOSTS_MAX_TOKENS:
                break
        if not scores:
            return []

        symbols = await self._resolve_symbols(list(scores))
        candidates = [DiscoveredAsset(id=addr, symbol=symbols.get(addr, ""), score=score) for addr, score in scores.items()]
        logger.info("DISCOVERY candidates=%s", len(candidates))
        return candidates

    async def _resolve_symbols(self, addresses: list[str]) -> dict[str, str]:
        out: dict[str, str] = {}
        for offset in range(0, len(addresses), _TOKENS_PER_LOOKUP):
            chunk = addresses[offset : offset + _TOKENS_PER_LOOKUP]
            result = await self._http.get_json(
                f"{config.DEXSCREENER_API}/tokens/{','.join(chunk)}",
                source="dex_boosts",
            )
            if not result.ok or not isinstance(result.data, dict):
                continue
            for pair in result.data.get("pairs") or []:
                out.update(self._symbol_from_pair(pair))
        return out

    @staticmethod
    def _symbol_from_pair(pair: Any) -> dict[str, str]:
        if not isinstance(pair, dict):
            return {}
        base = pair.get("baseToken") or {}
        addr = normalize_address(base.get("address"))
        symbol = str(base.get("symbol") or "").strip()
        return {addr: symbol} if addr and symbol else {}

    async def close(self) -> None:
        if self._owns_http:
            await self._http.close()
