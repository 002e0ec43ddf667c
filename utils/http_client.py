"""Shared aiohttp client with retry/backoff, rate windows and 429 cooldowns."""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections import deque
from dataclasses import dataclass
from typing import Any

import aiohttp

import config

logger = logging.getLogger(__name__)

UNLIMITED_CALLS = 1_000_000


@dataclass
class HttpResult:
    ok: bool
    status: int
    data: Any | None
    error: str = ""


@dataclass
class HttpSourceStats:
    ok: int = 0
    fail: int = 0
    rate_limited: int = 0
    limiter_waits: int = 0
    cooldown_waits: int = 0
    retries: int = 0
    latency_total_ms: float = 0.0
    latency_max_ms: float = 0.0
    latency_count: int = 0

    def record_latency(self, started: float) -> None:
        elapsed_ms = max(0.0, (time.perf_counter() - started) * 1000.0)
        self.latency_total_ms += elapsed_ms
        self.latency_count += 1
        self.latency_max_ms = max(self.latency_max_ms, elapsed_ms)


def source_key(source: str | None) -> str:
    return str(source or "default").strip().lower() or "default"


def rate_limit_for(source: str | None) -> tuple[int, float]:
    """Configured (max_calls, window_seconds) for a source; unlimited if unset."""
    raw = getattr(config, "HTTP_SOURCE_RATE_LIMITS", {}) or {}
    limit_data = raw.get(source_key(source))
    if isinstance(limit_data, tuple) and len(limit_data) == 2:
        try:
            return max(1, int(limit_data[0])), max(1.0, float(limit_data[1]))
        except (TypeError, ValueError):
            pass
    return (UNLIMITED_CALLS, 1.0)


class ResilientHttpClient:
    def __init__(
        self,
        timeout_seconds: float,
        headers: dict[str, str] | None = None,
        source_limits: dict[str, int] | None = None,
    ) -> None:
        self._timeout = aiohttp.ClientTimeout(total=max(1.0, float(timeout_seconds)))
        self._headers = dict(headers or {})
        self._source_limits = dict(source_limits or {})
        self._session: aiohttp.ClientSession | None = None
        self._semaphores: dict[str, asyncio.Semaphore] = {}
        self._stats: dict[str, HttpSourceStats] = {}
        self._rate_windows: dict[str, deque[float]] = {}
        self._rate_locks: dict[str, asyncio.Lock] = {}
        self._cooldown_until: dict[str, float] = {}

    async def close(self) -> None:
        session = self._session
        self._session = None
        if session is not None and not session.closed:
            await session.close()

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(limit=max(1, int(config.HTTP_CONNECTOR_LIMIT)))
            self._session = aiohttp.ClientSession(timeout=self._timeout, connector=connector)
        return self._session

    def _get_semaphore(self, key: str) -> asyncio.Semaphore:
        sem = self._semaphores.get(key)
        if sem is None:
            limit = max(1, int(self._source_limits.get(key, config.HTTP_DEFAULT_CONCURRENCY)))
            sem = asyncio.Semaphore(limit)
            self._semaphores[key] = sem
        return sem

    def _stats_row(self, key: str) -> HttpSourceStats:
        return self._stats.setdefault(key, HttpSourceStats())

    @staticmethod
    def _cooldown_seconds(key: str) -> float:
        per_source = getattr(config, "HTTP_SOURCE_429_COOLDOWNS", {}) or {}
        if key in per_source:
            return max(0.0, float(per_source[key]))
        return max(0.0, float(config.HTTP_429_COOLDOWN_SECONDS))

    async def _wait_rate_slot(self, key: str, stats: HttpSourceStats, url: str) -> None:
        max_calls, window_seconds = rate_limit_for(key)
        if max_calls >= UNLIMITED_CALLS:
            return
        lock = self._rate_locks.setdefault(key, asyncio.Lock())
        while True:
            async with lock:
                now = time.monotonic()
                window = self._rate_windows.setdefault(key, deque())
                cutoff = now - window_seconds
                while window and window[0] <= cutoff:
                    window.popleft()
                if len(window) < max_calls:
                    window.append(now)
                    return
                wait_for = max(0.01, (window[0] + window_seconds) - now)
            stats.limiter_waits += 1
            logger.debug("HTTP_RATE_WAIT source=%s wait=%.2fs max_calls=%s url=%s", key, wait_for, max_calls, url)
            await asyncio.sleep(wait_for)

    async def _wait_cooldown(self, key: str, stats: HttpSourceStats, url: str) -> None:
        while True:
            remaining = float(self._cooldown_until.get(key, 0.0)) - time.monotonic()
            if remaining <= 0:
                return
            stats.cooldown_waits += 1
            logger.debug("HTTP_COOLDOWN_WAIT source=%s wait=%.2fs url=%s", key, remaining, url)
            await asyncio.sleep(max(0.01, remaining))

    def _apply_cooldown(self, key: str, response: aiohttp.ClientResponse) -> None:
        try:
            retry_after = max(0.0, float((response.headers or {}).get("Retry-After", "") or 0.0))
        except ValueError:
            retry_after = 0.0
        cooldown = max(self._cooldown_seconds(key), retry_after)
        if cooldown <= 0:
            return
        until = time.monotonic() + cooldown
        self._cooldown_until[key] = max(float(self._cooldown_until.get(key, 0.0)), until)

    def snapshot_stats(self, reset: bool = False) -> dict[str, dict[str, int | float]]:
        out: dict[str, dict[str, int | float]] = {}
        now = time.monotonic()
        for key in set(self._stats) | set(self._cooldown_until):
            row = self._stats_row(key)
            total = row.ok + row.fail
            cooldown_remaining = max(0.0, float(self._cooldown_until.get(key, 0.0)) - now)
            out[key] = {
                "ok": row.ok,
                "fail": row.fail,
                "total": total,
                "rate_limited": row.rate_limited,
                "limiter_waits": row.limiter_waits,
                "cooldown_waits": row.cooldown_waits,
                "cooldown_remaining_sec": round(cooldown_remaining, 2),
                "retries": row.retries,
                "error_percent": round(row.fail / total * 100.0, 2) if total else 0.0,
                "latency_avg_ms": round(row.latency_total_ms / row.latency_count, 2) if row.latency_count else 0.0,
                "latency_max_ms": round(row.latency_max_ms, 2),
            }
        if reset:
            self._stats = {}
        return out

    @staticmethod
    def _compute_delay(attempt: int, status: int) -> float:
        base = max(0.05, float(config.HTTP_BACKOFF_BASE_SECONDS))
        cap = max(base, float(config.HTTP_BACKOFF_MAX_SECONDS))
        delay = min(cap, base * (2 ** max(0, attempt - 1)))
        if status == 429:
            delay = min(cap, delay + max(0.0, float(config.HTTP_RATE_LIMIT_DELAY_SECONDS)))
        return max(0.01, delay + random.uniform(0.0, max(0.0, float(config.HTTP_JITTER_SECONDS))))

    async def get_json(
        self,
        url: str,
        *,
        source: str = "default",
        params: dict[str, Any] | None = None,
        headers: dict[str, str] | None = None,
        max_attempts: int | None = None,
    ) -> HttpResult:
        attempts = max(1, int(max_attempts or config.HTTP_RETRY_ATTEMPTS))
        req_headers = {**self._headers, **(headers or {})}
        key = source_key(source)
        sem = self._get_semaphore(key)
        stats = self._stats_row(key)

        for attempt in range(1, attempts + 1):
            status = 0
            last = attempt >= attempts
            await self._wait_cooldown(key, stats, url)
            await self._wait_rate_slot(key, stats, url)
            async with sem:
                started = time.perf_counter()
                try:
                    session = await self._get_session()
                    async with session.get(url, params=params, headers=req_headers) as response:
                        stats.record_latency(started)
                        status = int(response.status or 0)
                        if status == 200:
                            payload = await response.json(content_type=None)
                            stats.ok += 1
                            return HttpResult(ok=True, status=status, data=payload)
                        if status == 429:
                            stats.rate_limited += 1
                            self._apply_cooldown(key, response)
                        retryable = status == 429 or 500 <= status <= 599
                        if not retryable or last:
                            stats.fail += 1
                            return HttpResult(ok=False, status=status, data=None, error=f"http_status_{status}")
                except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
                    stats.record_latency(started)
                    if last:
                        stats.fail += 1
                        return HttpResult(ok=False, status=status, data=None, error=f"http_error:{exc}")

            stats.retries += 1
            delay = self._compute_delay(attempt=attempt, status=status)
            logger.debug(
                "HTTP_RETRY source=%s attempt=%s/%s status=%s delay=%.2fs url=%s",
                key,
                attempt,
                attempts,
                status,
                delay,
                url,
            )
            await asyncio.sleep(delay)

        return HttpResult(ok=False, status=0, data=None, error="http_exhausted")
