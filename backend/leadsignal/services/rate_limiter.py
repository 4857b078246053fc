"""
Request Rate Limiter
====================

Per-client fixed-window rate limiting for the public ingestion endpoints.

WHY THIS FILE EXISTS
--------------------
POST /v1/events and PUT /v1/leads are unauthenticated and called from
browsers. Without a limit:
- A single client could flood the document store
- Every accepted event fans out to three vendors, multiplying the load
- Bots could fill the leads collection with junk

HOW
---
Fixed window counters held in process memory:
- Key format: "{identifier}:{limit}:{window_seconds}"
- First hit opens a window ending at now + window_seconds
- Hits past `limit` within the window are refused
- Expired windows are dropped by `sweep()`, run periodically by the app

The state is per process. Behind several workers each one counts separately,
so the effective limit is `limit * workers`.

RELATED FILES
-------------
- leadsignal/main.py: Starts the periodic sweep task
- leadsignal/routers/events.py, leadsignal/routers/leads.py: Call `check()`
"""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float  # epoch seconds when the window closes

    def retry_after(self, now: Optional[float] = None) -> int:
        """Whole seconds until the window resets (at least 1)."""
        now = time.time() if now is None else now
        return max(1, int(self.reset_at - now + 0.999))


@dataclass
class _Window:
    count: int
    reset_at: float


class InMemoryRateLimiter:
    """
    Thread-safe fixed-window limiter.

    USAGE:
        limiter = InMemoryRateLimiter()
        result = limiter.check(client_ip, limit=60, window_seconds=60)
        if not result.allowed:
            ...  # 429 with Retry-After: result.retry_after()
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._windows: Dict[str, _Window] = {}
        self._lock = threading.Lock()

    def check(self, identifier: str, limit: int, window_seconds: int) -> RateLimitResult:
        """Count one hit for `identifier` and report whether it is allowed."""
        key = f"{identifier}:{limit}:{window_seconds}"
        now = self._clock()

        with self._lock:
            window = self._windows.get(key)
            if window is None or now > window.reset_at:
                window = _Window(count=0, reset_at=now + window_seconds)
                self._windows[key] = window
            window.count += 1
            count = window.count
            reset_at = window.reset_at

        allowed = count <= limit
        if not allowed:
            logger.info(
                "[RATE_LIMIT] Request refused",
                extra={"limit": limit, "window_seconds": window_seconds, "count": count},
            )

        return RateLimitResult(
            allowed=allowed,
            limit=limit,
            remaining=max(0, limit - count),
            reset_at=reset_at,
        )

    def sweep(self) -> int:
        """Drop expired windows. Returns how many were removed."""
        now = self._clock()
        with self._lock:
            expired = [key for key, window in self._windows.items() if now > window.reset_at]
            for key in expired:
                del self._windows[key]
        if expired:
            logger.debug(f"[RATE_LIMIT] Swept {len(expired)} expired window(s)")
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._windows)
