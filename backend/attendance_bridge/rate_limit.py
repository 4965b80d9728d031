import time
from collections import deque
from threading import Lock
from typing import Deque, Dict

from fastapi import Request
from starlette.responses import JSONResponse, Response


class SlidingWindowLimiter:
    def __init__(self, window_seconds: int, max_requests: int) -> None:
        self.window_seconds = window_seconds
        self.max_requests = max_requests
        self._hits: Dict[str, Deque[float]] = {}
        self._lock = Lock()
        self._last_sweep: float | None = None

    def allow(self, key: str, now: float | None = None) -> tuple[bool, int]:
        """Record a hit for ``key``; returns (allowed, seconds until the next slot frees up)."""
        current = time.time() if now is None else now
        cutoff = current - self.window_seconds

        with self._lock:
            self._sweep(current, cutoff)

            hits = self._hits.get(key)
            if hits is not None:
                while hits and hits[0] <= cutoff:
                    hits.popleft()
                if not hits:
                    del self._hits[key]
                    hits = None

            if hits is not None and self.max_requests > 0 and len(hits) >= self.max_requests:
                wait = int(self.window_seconds - (current - hits[0])) + 1
                return False, max(wait, 1)

            if hits is None:
                hits = self._hits[key] = deque()
            hits.append(current)
            return True, 0

    def tracked_keys(self) -> int:
        with self._lock:
            return len(self._hits)

    def _sweep(self, current: float, cutoff: float) -> None:
        # Keys are client supplied (X-Forwarded-For); forget idle ones once per window.
        if self._last_sweep is not None and current - self._last_sweep < self.window_seconds:
            return
        self._last_sweep = current
        stale = [key for key, hits in self._hits.items() if not hits or hits[-1] <= cutoff]
        for key in stale:
            del self._hits[key]


def client_key(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


def build_rate_limit_middleware(window_seconds: int, max_requests: int, path_prefix: str = "/api"):
    limiter = SlidingWindowLimiter(window_seconds=window_seconds, max_requests=max_requests)

    async def rate_limit_middleware(request: Request, call_next) -> Response:
        # CORS preflights never count against the caller
        if request.method == "OPTIONS" or not request.url.path.startswith(path_prefix):
            return await call_next(request)

        allowed, retry_after = limiter.allow(client_key(request))
        if not allowed:
            return JSONResponse(
                status_code=429,
                content={"success": False, "records": [], "count": 0, "error": "Rate limit exceeded"},
                headers={"Retry-After": str(retry_after)},
            )

        return await call_next(request)

    return rate_limit_middleware
