from .cache import CacheKeys, TieredCache
from .logging_utils import get_logger

logger = get_logger("scoreboard.invalidation")


class InvalidationCoordinator:
    """Clears every cached view a score write can change.

    Any write drops both ranking lists, since one new best can move either
    top-N. Runs inline with the write so the next read sees fresh data.
    """

    def __init__(self, cache: TieredCache):
        self.cache = cache

    def on_score_written(self, device_id: str) -> None:
        self.cache.delete(CacheKeys.device_stats(device_id))
        self.cache.delete(CacheKeys.device_rank(device_id))
        # a new best shifts the rank of every device below it
        self.cache.delete_pattern(CacheKeys.RANK_PATTERN)
        self.cache.delete_pattern(CacheKeys.history_pattern(device_id))
        self.clear_rankings()
        logger.debug("cache_invalidated", extra={"device_id": device_id})

    def clear_rankings(self) -> None:
        self.cache.delete(CacheKeys.RANKING_GLOBAL)
        self.cache.delete(CacheKeys.RANKING_WEEKLY)
