from __future__ import annotations

import time
from dataclasses import dataclass
from threading import Lock
from typing import Dict, Optional, Tuple


@dataclass(frozen=True, slots=True)
class RateLimitDecision:
    allowed: bool
    retry_after_seconds: int = 0


class TokenBucketRateLimiter:
    """Per-identity token bucket.

    rpm is the sustained request rate; burst is the bucket capacity.
    Mutating calls may spend more than one token (see check(cost=...)).

    Security notes:
    - Memory-only and per process. Multi-worker deployments need a limiter
      in front of the service.
    - Identities are truncated to bound memory use per bucket key.
    """

    def __init__(self, *, rpm: int = 120, burst: Optional[int] = None, max_key_len: int = 128):
        self.rpm = max(1, int(rpm))
        self.capacity = int(burst) if burst else max(2, self.rpm)
        self._per_sec = self.rpm / 60.0
        self._max_key_len = max_key_len
        # identity -> (tokens, last refill)
        self._buckets: Dict[str, Tuple[float, float]] = {}
        self._lock = Lock()

    def check(self, identity: str, cost: float = 1.0) -> RateLimitDecision:
        """Consume cost tokens for identity if available."""

        identity = (identity or "anonymous")[: self._max_key_len]
        cost = min(float(cost), float(self.capacity))

        now = time.monotonic()
        with self._lock:
            tokens, last = self._buckets.get(identity, (float(self.capacity), now))
            tokens = min(float(self.capacity), tokens + max(0.0, now - last) * self._per_sec)

            if tokens >= cost:
                self._buckets[identity] = (tokens - cost, now)
                return RateLimitDecision(allowed=True)

            self._buckets[identity] = (tokens, now)
            wait = (cost - tokens) / self._per_sec
            return RateLimitDecision(allowed=False, retry_after_seconds=int(max(1.0, wait)))

    def reset(self, identity: Optional[str] = None) -> None:
        with self._lock:
            if identity is None:
                self._buckets.clear()
            else:
                self._buckets.pop(identity[: self._max_key_len], None)
