"""
airc_core.ratelimit
-------------------
Fixed-window rate limiting for identity operations.

Each check is one atomic increment-and-read on the store; the limit is
compared against the post-increment count, so concurrent callers can never
both observe the last free slot.

Default limits (see constants.RATE_LIMITS):
- rotation          1 / hour / handle
- revocation        1 / day  / handle
- registration      4 / hour / origin
- key_registration 10 / hour / handle
- message         100 / min  / handle
"""

from __future__ import annotations
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Optional

from .config import AIRCConfig
from .errors import RateLimitedError
from .logger import get_logger
from .storage import StorageProvider
from .utils import hash_origin, iso, parse_iso, utc_now

log = get_logger("AIRC.RateLimit")

_ORIGIN_KEYED = {"registration"}


@dataclass(frozen=True)
class RateLimitResult:
    operation: str
    limited: bool
    limit: int
    remaining: int
    reset_at: datetime
    retry_after: int
    headers: Dict[str, str] = field(default_factory=dict)

    def raise_if_limited(self) -> None:
        if self.limited:
            raise RateLimitedError(self.operation, self.retry_after, headers=self.headers)


class RateLimiter:
    def __init__(self, store: StorageProvider, config: AIRCConfig):
        self.store = store
        self.config = config

    def key_for(self, operation: str, handle: Optional[str], origin: Optional[str]) -> str:
        if operation in _ORIGIN_KEYED:
            ident = hash_origin(origin, self.config.origin_salt)
        else:
            ident = handle or "anonymous"
        return f"airc:{operation}:{ident}"

    def check(
        self,
        operation: str,
        handle: Optional[str] = None,
        origin: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> RateLimitResult:
        if operation not in self.config.rate_limits:
            raise ValueError(f"Unknown rate-limited operation: {operation}")
        limit, window = self.config.rate_limits[operation]
        now = now or utc_now()

        counter = self.store.hit_rate_counter(self.key_for(operation, handle, origin), window, iso(now))
        reset_at = parse_iso(counter.reset_at)
        limited = counter.count > limit
        remaining = max(0, limit - counter.count)
        retry_after = max(1, math.ceil((reset_at - now).total_seconds())) if limited else 0

        headers = {
            "X-RateLimit-Limit": str(limit),
            "X-RateLimit-Remaining": str(remaining),
            "X-RateLimit-Reset": str(int(reset_at.timestamp())),
            "X-RateLimit-Operation": operation,
        }
        if limited:
            log.warning(f"[RATE] limited operation={operation} handle={handle} retry_after={retry_after}")
        return RateLimitResult(operation, limited, limit, remaining, reset_at, retry_after, headers)
