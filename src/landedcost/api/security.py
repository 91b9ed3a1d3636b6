"""API-key check and per-route request limiting for the HTTP surface."""

from __future__ import annotations

import os
import threading
import time
from collections import deque
from typing import Callable, Deque, Dict, FrozenSet, Optional, Tuple

from fastapi import Header, HTTPException, Request

DEV_KEY = "dev-key"


def configured_api_keys() -> FrozenSet[str]:
    """Keys from ``LC_API_KEYS`` (comma separated); the dev key when none are set."""

    raw = os.getenv("LC_API_KEYS") or ""
    keys = frozenset(part.strip() for part in raw.split(",") if part.strip())
    return keys or frozenset({DEV_KEY})


class RateLimitExceeded(Exception):
    def __init__(self, route: str, limit: int, retry_after: int):
        super().__init__(f"{route}: more than {limit} requests per minute")
        self.route = route
        self.limit = limit
        self.retry_after = retry_after


class RateLimiter:
    """Sliding one-minute window per (api key, route)."""

    def __init__(self, rate_per_minute: int = 60, clock: Callable[[], float] = time.monotonic) -> None:
        self.rate_per_minute = max(1, int(rate_per_minute))
        self._clock = clock
        self._lock = threading.Lock()
        self._hits: Dict[Tuple[str, str], Deque[float]] = {}

    def reset(self) -> None:
        with self._lock:
            self._hits.clear()

    def check(self, api_key: str, route: str) -> None:
        now = self._clock()
        with self._lock:
            hits = self._hits.setdefault((api_key, route), deque())
            while hits and now - hits[0] >= 60.0:
                hits.popleft()
            if len(hits) >= self.rate_per_minute:
                retry_after = max(1, int(60.0 - (now - hits[0])) + 1)
                raise RateLimitExceeded(route, self.rate_per_minute, retry_after)
            hits.append(now)


rate_limiter = RateLimiter(rate_per_minute=int(os.getenv("LC_RATE_LIMIT_PER_MINUTE", "60")))


def set_rate_limit(limit: int) -> None:
    """Swap in a fresh limiter with a new per-minute budget."""

    global rate_limiter
    rate_limiter = RateLimiter(rate_per_minute=limit)


def require_api_key(request: Request, x_api_key: Optional[str] = Header(None)) -> str:
    if not x_api_key:
        raise HTTPException(status_code=401, detail={"message": "Missing API key"})
    if x_api_key not in configured_api_keys():
        raise HTTPException(status_code=401, detail={"message": "Invalid API key"})
    try:
        rate_limiter.check(x_api_key, request.url.path)
    except RateLimitExceeded as exc:
        raise HTTPException(
            status_code=429,
            detail={
                "message": "Rate limit exceeded",
                "limit_per_minute": exc.limit,
                "route": exc.route,
            },
            headers={"Retry-After": str(exc.retry_after)},
        ) from exc
    return x_api_key
