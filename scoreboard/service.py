"""
Composition root for the scoreboard core.

One ScoreboardService is built at process start and handed to whatever
needs it. It owns the tiered cache, rate limiter, ledger, ranking engine
and invalidation coordinator, and exposes the read/write operations the
HTTP layer calls.
"""

import time
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from . import models
from .cache import CacheKeys, TieredCache
from .config import Settings
from .errors import StorageError, ValidationError
from .init_db import init_db
from .invalidation import InvalidationCoordinator
from .ledger import DeviceStats, HistoryPage, ScoreLedger, SubmitResult
from .logging_utils import get_logger
from .migrations import run_migrations
from .ranking import TIME_RANGES, RankingEngine, RankingItem
from .rate_limit import RateLimiter, RateLimitResult
from .remote import RedisStore, RemoteStore
from .validation import validate_device_id

logger = get_logger("scoreboard.service")

_RANKING_KEYS = {
    "all": CacheKeys.RANKING_GLOBAL,
    "weekly": CacheKeys.RANKING_WEEKLY,
}


class ScoreboardService:
    def __init__(
        self,
        settings: Settings,
        engine: Engine,
        remote: Optional[RemoteStore] = None,
        *,
        clock: Callable[[], float] = time.time,
        now: Callable[[], datetime] = models.utcnow,
    ):
        self.settings = settings
        self.engine = engine
        self.remote = remote
        self.cache: TieredCache = TieredCache(
            remote,
            default_ttl=settings.cache_default_ttl,
            hot_ttl=settings.cache_hot_ttl,
            max_entries=settings.cache_max_entries,
            sweep_interval=settings.cache_sweep_interval,
            compress=settings.cache_compression,
            compression_threshold=settings.cache_compression_threshold,
            memory_only_ok=settings.cache_memory_only_ok,
            clock=clock,
        )
        self.rate_limiter = RateLimiter(remote, window_seconds=settings.rate_limit_window)
        self.ledger = ScoreLedger(engine, max_score=settings.max_score, replace_on_tie=settings.replace_on_tie)
        self.ranking = RankingEngine(engine, tz=settings.week_timezone, clock=now)
        self.invalidation = InvalidationCoordinator(self.cache)

    @classmethod
    def from_settings(cls, settings: Settings) -> "ScoreboardService":
        engine = init_db(settings.database_url)
        try:
            run_migrations(engine)
        except SQLAlchemyError as e:
            logger.warning("migrations_failed", extra={"error": str(e)})
        remote = RedisStore.from_url(settings.redis_url, timeout=settings.cache_timeout) if settings.redis_url else None
        if remote is None:
            logger.warning("redis_not_configured")
        return cls(settings, engine, remote)

    # -- writes --------------------------------------------------------------

    def submit_score(self, device_id: str, score: int) -> SubmitResult:
        result = self.ledger.submit(device_id, score)
        if result.is_new_best:
            # before returning, so the caller's next read is fresh
            self.invalidation.on_score_written(device_id)
        return result

    # -- reads ---------------------------------------------------------------

    def fetch_ranking(self, time_range: str = "all", limit: int = 10) -> Tuple[List[RankingItem], bool]:
        """Ranking plus whether it was served from cache.

        The cache always holds the full top ``ranking_max_limit`` list; callers
        get a prefix of it.
        """
        if time_range not in TIME_RANGES:
            raise ValidationError("time range must be 'all' or 'weekly'", code="INVALID_RANKING_TYPE")
        max_limit = self.settings.ranking_max_limit
        if not isinstance(limit, int) or limit < 1 or limit > max_limit:
            raise ValidationError(f"limit must be between 1 and {max_limit}", code="INVALID_LIMIT")

        key = _RANKING_KEYS[time_range]
        cached = self.cache.get(key)
        if cached is not None:
            return [RankingItem.from_dict(d) for d in cached[:limit]], True

        items = self.ranking.get_ranking(time_range, max_limit)
        self.cache.set(key, [item.to_dict() for item in items], self.settings.ranking_ttl)
        logger.debug("ranking_cached", extra={"time_range": time_range, "count": len(items)})
        return items[:limit], False

    def get_ranking(self, time_range: str = "all", limit: int = 10) -> List[RankingItem]:
        items, _ = self.fetch_ranking(time_range, limit)
        return items

    def get_device_stats(self, device_id: str) -> Optional[DeviceStats]:
        validate_device_id(device_id)
        key = CacheKeys.device_stats(device_id)
        cached = self.cache.get(key)
        if cached is not None:
            return DeviceStats.from_dict(cached)

        stats = self.ledger.get_device_stats(device_id)
        if stats is not None:
            self.cache.set(key, stats.to_dict(), self.settings.stats_ttl)
        return stats

    def get_device_rank(self, device_id: str) -> Optional[int]:
        validate_device_id(device_id)
        key = CacheKeys.device_rank(device_id)
        cached = self.cache.get(key)
        if cached is not None:
            return int(cached)

        rank = self.ranking.get_device_rank(device_id)
        if rank is not None:
            self.cache.set(key, rank, self.settings.rank_ttl)
        return rank

    def get_history(self, device_id: str, limit: int = 20, offset: int = 0) -> Tuple[HistoryPage, bool]:
        validate_device_id(device_id)
        if limit < 1 or limit > 100:
            raise ValidationError("limit must be between 1 and 100", code="INVALID_LIMIT")
        if offset < 0:
            raise ValidationError("offset must not be negative", code="INVALID_OFFSET")

        key = CacheKeys.history(device_id, limit, offset)
        cached = self.cache.get(key)
        if cached is not None:
            return HistoryPage.from_dict(cached), True

        page = self.ledger.get_history(device_id, limit, offset)
        if page.total:
            self.cache.set(key, page.to_dict(), self.settings.history_ttl)
        return page, False

    def check_rate_limit(self, key: str, limit: int) -> RateLimitResult:
        return self.rate_limiter.check(key, limit)

    # -- lifecycle -----------------------------------------------------------

    def warm_rankings(self) -> int:
        """Precompute both ranking views into the cache, return how many were warmed"""
        warmed = 0
        for time_range in TIME_RANGES:
            try:
                self.fetch_ranking(time_range, self.settings.ranking_max_limit)
                warmed += 1
            except StorageError as e:
                logger.warning("cache_warm_failed", extra={"time_range": time_range, "error": str(e)})
        return warmed

    def health(self) -> Dict[str, Any]:
        db_status, db_error = "connected", None
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            db_status, db_error = "disconnected", str(e)
            logger.error("health_db_failed", extra={"error": db_error})

        cache_stats = self.cache.get_stats()
        return {
            "status": "ok" if db_status == "connected" else "degraded",
            "database": {"status": db_status, "error": db_error},
            "cache": {
                "available": cache_stats["mode"] != "unavailable",
                "mode": cache_stats["mode"],
                "connected": cache_stats["remote_connected"],
            },
        }

    def close(self) -> None:
        self.cache.close()
        if self.remote is not None:
            self.remote.close()
        self.engine.dispose()
        logger.info("service_closed")
