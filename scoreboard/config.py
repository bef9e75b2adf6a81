"""
Runtime configuration for the scoreboard service.
Every value comes from an environment variable with a working default.
"""

import os
from dataclasses import dataclass
from typing import Mapping, Optional


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    return raw.strip().lower() not in ("0", "false", "no", "off")


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


@dataclass(frozen=True)
class Settings:
    database_url: str = "sqlite:///./scoreboard.db"
    redis_url: Optional[str] = None

    # tiered cache
    cache_memory_only_ok: bool = True
    cache_default_ttl: int = 3600
    cache_hot_ttl: int = 60
    cache_max_entries: int = 1000
    cache_sweep_interval: float = 60.0
    cache_compression: bool = True
    cache_compression_threshold: int = 1024
    cache_timeout: float = 0.5

    # per-view TTLs
    ranking_ttl: int = 300
    stats_ttl: int = 3600
    rank_ttl: int = 600
    history_ttl: int = 600

    # rate limiting
    rate_limit_window: int = 60
    rate_limit_submit: int = 100
    rate_limit_read: int = 100
    rate_limit_ip: int = 100

    # scoring
    max_score: int = 999999
    replace_on_tie: bool = True
    week_timezone: str = "UTC"
    ranking_max_limit: int = 100

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if env is None else env
        return cls(
            database_url=env.get("DATABASE_URL") or cls.database_url,
            redis_url=env.get("REDIS_URL") or None,
            cache_memory_only_ok=_env_bool(env, "CACHE_MEMORY_ONLY_OK", cls.cache_memory_only_ok),
            cache_default_ttl=_env_int(env, "CACHE_DEFAULT_TTL", cls.cache_default_ttl),
            cache_hot_ttl=_env_int(env, "CACHE_HOT_TTL", cls.cache_hot_ttl),
            cache_max_entries=_env_int(env, "CACHE_MAX_ENTRIES", cls.cache_max_entries),
            cache_sweep_interval=_env_float(env, "CACHE_SWEEP_INTERVAL", cls.cache_sweep_interval),
            cache_compression=_env_bool(env, "CACHE_COMPRESSION", cls.cache_compression),
            cache_compression_threshold=_env_int(env, "CACHE_COMPRESSION_THRESHOLD", cls.cache_compression_threshold),
            cache_timeout=_env_float(env, "CACHE_TIMEOUT", cls.cache_timeout),
            ranking_ttl=_env_int(env, "RANKING_TTL", cls.ranking_ttl),
            stats_ttl=_env_int(env, "STATS_TTL", cls.stats_ttl),
            rank_ttl=_env_int(env, "RANK_TTL", cls.rank_ttl),
            history_ttl=_env_int(env, "HISTORY_TTL", cls.history_ttl),
            rate_limit_window=_env_int(env, "RATE_LIMIT_WINDOW", cls.rate_limit_window),
            rate_limit_submit=_env_int(env, "RATE_LIMIT_SUBMIT", cls.rate_limit_submit),
            rate_limit_read=_env_int(env, "RATE_LIMIT_READ", cls.rate_limit_read),
            rate_limit_ip=_env_int(env, "RATE_LIMIT_IP", cls.rate_limit_ip),
            max_score=_env_int(env, "MAX_SCORE", cls.max_score),
            replace_on_tie=_env_bool(env, "REPLACE_ON_TIE", cls.replace_on_tie),
            week_timezone=env.get("WEEK_TIMEZONE") or cls.week_timezone,
        )
