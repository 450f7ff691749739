"""
Per-client request throttling.

Each limiter keeps the timestamps of recent accepted requests per client
and admits a new one only while fewer than ``rpm`` fall inside the
trailing window. Clients idle for a whole window are swept out. The API
holds one limiter for /v1/verify and one for /v1/checkpoints.
"""

import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict, Optional


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int
    retry_after: Optional[float] = None

    def headers(self) -> Dict[str, str]:
        out = {"X-RateLimit-Remaining": str(self.remaining)}
        if self.retry_after is not None:
            # whole seconds, rounded up so a client retrying on time is admitted
            out["Retry-After"] = str(int(self.retry_after) + 1)
        return out


class RateLimiter:

    def __init__(self, rpm: int, window_seconds: int = 60, clock: Callable[[], float] = time.time):
        self.limit = max(1, rpm)
        self.window = window_seconds
        self._clock = clock
        self._accepted: Dict[str, Deque[float]] = {}
        self._lock = threading.Lock()
        self._next_sweep = clock() + window_seconds

    def check(self, client_id: str) -> RateLimitResult:
        """Record the request if admitted; a rejected request is not counted."""
        now = self._clock()
        with self._lock:
            if now >= self._next_sweep:
                self._sweep(now)
            stamps = self._accepted.setdefault(client_id, deque())
            horizon = now - self.window
            while stamps and stamps[0] < horizon:
                stamps.popleft()
            if len(stamps) >= self.limit:
                return RateLimitResult(False, 0, max(0.0, stamps[0] + self.window - now))
            stamps.append(now)
            return RateLimitResult(True, self.limit - len(stamps))

    def _sweep(self, now: float) -> int:
        horizon = now - self.window
        idle = [cid for cid, stamps in self._accepted.items() if not stamps or stamps[-1] < horizon]
        for cid in idle:
            del self._accepted[cid]
        self._next_sweep = now + self.window
        return len(idle)

    def cleanup_expired(self) -> int:
        """Forget clients with no request inside the window; returns how many."""
        with self._lock:
            return self._sweep(self._clock())

    def allow(self, client_id: str) -> bool:
        return self.check(client_id).allowed

    def __len__(self) -> int:
        with self._lock:
            return len(self._accepted)

    def reset(self, client_id: Optional[str] = None) -> None:
        with self._lock:
            if client_id is None:
                self._accepted.clear()
            else:
                self._accepted.pop(client_id, None)
