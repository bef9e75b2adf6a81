"""Fixed-window rate limiting on the remote cache tier."""

from dataclasses import dataclass
from typing import Optional

from .cache import CacheKeys
from .errors import CacheUnavailable
from .logging_utils import get_logger
from .remote import RemoteStore

logger = get_logger("scoreboard.rate_limit")


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    remaining: int

    def to_dict(self) -> dict:
        return {"allowed": self.allowed, "remaining": self.remaining}


class RateLimiter:
    """One counter per key per window; the window resets when the counter key expires.

    Fails open: with no remote tier, or when it errors, every request is allowed.
    """

    def __init__(self, remote: Optional[RemoteStore], window_seconds: int = 60):
        self.remote = remote
        self.window_seconds = window_seconds

    def check(self, key: str, limit: int) -> RateLimitResult:
        if self.remote is None:
            return RateLimitResult(allowed=True, remaining=limit)

        counter_key = CacheKeys.rate_limit(key)
        try:
            raw = self.remote.get(counter_key)
            if raw is None:
                count = self.remote.incr(counter_key, self.window_seconds)
                return RateLimitResult(allowed=True, remaining=max(0, limit - count))

            # read then increment: concurrent callers at limit-1 can each be
            # admitted, so a window may overshoot by the number of racers
            current = int(raw)
            if current >= limit:
                logger.info("rate_limit_exceeded", extra={"key": counter_key, "limit": limit})
                return RateLimitResult(allowed=False, remaining=0)

            count = self.remote.incr(counter_key, self.window_seconds)
            return RateLimitResult(allowed=True, remaining=max(0, limit - count))
        except (CacheUnavailable, ValueError) as exc:
            logger.warning("rate_limit_check_failed", extra={"key": counter_key, "error": str(exc)})
            return RateLimitResult(allowed=True, remaining=limit)
