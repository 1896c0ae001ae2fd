"""
Per-client token buckets for the two POST routes that cost us money or
fan out: invite creation (sends email) and Stripe webhook ingestion.

State is in process memory, so limits are per worker. The limiter is only
enabled in production; development and tests are never throttled.
"""

import math
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional, Tuple

from portal.core.config import Settings, settings

INVITE_PATH = "/api/team/invite"
WEBHOOK_PATH = "/api/webhooks/stripe"


@dataclass(frozen=True)
class RoutePolicy:
    name: str
    capacity: int
    refill_per_sec: float


@dataclass
class RateLimitConfig:
    enabled: bool = False
    policies: Dict[Tuple[str, str], RoutePolicy] = field(default_factory=dict)
    max_buckets: int = 10_000

    def policy_for(self, method: str, path: str) -> Optional[RoutePolicy]:
        return self.policies.get((method.upper(), path.rstrip("/") or "/"))


@dataclass
class Decision:
    allowed: bool
    remaining: int
    retry_after: int = 0


class TokenBucket:
    def __init__(self, capacity: int, refill_rate_per_sec: float, time_fn: Callable[[], float] = time.monotonic):
        self.capacity = max(1, capacity)
        self.tokens = float(self.capacity)
        self.refill_rate = max(0.0, refill_rate_per_sec)
        self.time_fn = time_fn
        self.last_refill = self.time_fn()

    def _refill(self) -> None:
        now = self.time_fn()
        elapsed = now - self.last_refill
        if elapsed > 0:
            self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate)
            self.last_refill = now

    @property
    def is_full(self) -> bool:
        self._refill()
        return self.tokens >= self.capacity

    def seconds_until(self, cost: float = 1.0) -> int:
        missing = cost - self.tokens
        if missing <= 0:
            return 0
        if self.refill_rate == 0:
            return 3600
        return max(1, math.ceil(round(missing / self.refill_rate, 6)))

    def allow(self, cost: float = 1.0) -> bool:
        self._refill()
        if self.tokens >= cost:
            self.tokens -= cost
            return True
        return False


class InMemoryRateLimiter:
    def __init__(self, config: RateLimitConfig, time_fn: Callable[[], float] = time.monotonic):
        self.config = config
        self.time_fn = time_fn
        self.buckets: Dict[str, TokenBucket] = {}

    def check(self, client_key: str, policy: RoutePolicy) -> Decision:
        key = f"{policy.name}:{client_key}"
        bucket = self.buckets.get(key)
        if bucket is None:
            if len(self.buckets) >= self.config.max_buckets:
                self._evict_idle()
            bucket = self.buckets[key] = TokenBucket(policy.capacity, policy.refill_per_sec, time_fn=self.time_fn)

        if bucket.allow():
            return Decision(allowed=True, remaining=int(bucket.tokens))
        return Decision(allowed=False, remaining=0, retry_after=bucket.seconds_until())

    def _evict_idle(self) -> None:
        # A full bucket carries no state a fresh one wouldn't
        for key in [k for k, b in self.buckets.items() if b.is_full]:
            del self.buckets[key]


def build_rate_limit_config(settings_obj: Optional[Settings] = None) -> RateLimitConfig:
    cfg = settings_obj or settings
    invite = RoutePolicy(
        name="invite",
        capacity=max(1, cfg.RATE_LIMIT_INVITE_BURST),
        refill_per_sec=max(1, cfg.RATE_LIMIT_INVITES_PER_HOUR) / 3600.0,
    )
    webhook = RoutePolicy(
        name="webhook",
        capacity=max(1, cfg.RATE_LIMIT_BURST_DEFAULT),
        refill_per_sec=max(1, cfg.RATE_LIMIT_PER_MINUTE_DEFAULT) / 60.0,
    )
    return RateLimitConfig(
        enabled=cfg.RATE_LIMIT_ENABLED and cfg.is_production,
        policies={("POST", INVITE_PATH): invite, ("POST", WEBHOOK_PATH): webhook},
    )
