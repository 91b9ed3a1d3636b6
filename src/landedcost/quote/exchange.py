"""Local-currency-per-USD exchange rate with an explicit TTL.

Source order on refresh: live fetch, then the configured rate, then
``FALLBACK_LOCAL_PER_USD``. The rate only feeds internal-tax tier selection,
so a stale or fallback value degrades the estimate instead of blocking it.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Literal, Optional, Protocol

import httpx

logger = logging.getLogger(__name__)

FALLBACK_LOCAL_PER_USD = 1000.0
DEFAULT_TTL_SECONDS = 600

RateSource = Literal["live", "env", "fallback"]


@dataclass(frozen=True)
class ExchangeRateSnapshot:
    local_per_usd: float
    source: RateSource
    fetched_at: float


class ExchangeRateSupplier(Protocol):
    def get(self) -> ExchangeRateSnapshot:
        ...


class HttpRateFetcher:
    """Reads the ``venta`` (sell) quote from a dolarapi-style JSON endpoint."""

    def __init__(self, url: str, timeout: float = 10.0, client: httpx.Client | None = None):
        self.url = url
        self.timeout = timeout
        self._client = client

    def __call__(self) -> float:
        if self._client is not None:
            response = self._client.get(self.url, timeout=self.timeout)
        else:
            response = httpx.get(self.url, timeout=self.timeout)
        response.raise_for_status()
        payload = response.json()
        value = float(payload["venta"])
        if value <= 0:
            raise ValueError(f"non-positive exchange rate {value}")
        return value


class ExchangeRateCache:
    def __init__(
        self,
        fetcher: Optional[Callable[[], float]] = None,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        configured_rate: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.fetcher = fetcher
        self.ttl_seconds = max(1, int(ttl_seconds))
        self.configured_rate = configured_rate if configured_rate and configured_rate > 0 else None
        self._clock = clock
        self._lock = threading.Lock()
        self._snapshot: Optional[ExchangeRateSnapshot] = None

    def get(self) -> ExchangeRateSnapshot:
        with self._lock:
            snapshot = self._snapshot
            if snapshot is not None and self._clock() - snapshot.fetched_at < self.ttl_seconds:
                return snapshot
            return self._refresh_locked()

    def refresh(self) -> ExchangeRateSnapshot:
        with self._lock:
            return self._refresh_locked()

    def snapshot(self) -> Optional[ExchangeRateSnapshot]:
        with self._lock:
            return self._snapshot

    def _refresh_locked(self) -> ExchangeRateSnapshot:
        now = self._clock()
        if self.fetcher is not None:
            try:
                self._snapshot = ExchangeRateSnapshot(self.fetcher(), "live", now)
                return self._snapshot
            except (httpx.HTTPError, KeyError, TypeError, ValueError) as exc:
                logger.warning("Exchange rate fetch failed, using fallback: %s", exc)
        if self.configured_rate is not None:
            self._snapshot = ExchangeRateSnapshot(self.configured_rate, "env", now)
        else:
            self._snapshot = ExchangeRateSnapshot(FALLBACK_LOCAL_PER_USD, "fallback", now)
        return self._snapshot
