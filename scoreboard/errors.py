"""Error taxonomy shared by the ledger, ranking and HTTP layer."""

from typing import Any, Optional


class ScoreboardError(Exception):
    code = "INTERNAL_SERVER_ERROR"
    status = 500

    def __init__(self, message: str, code: Optional[str] = None, details: Any = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        self.details = details


class ValidationError(ScoreboardError):
    """Malformed device identifier or out-of-range score."""
    code = "INVALID_REQUEST_DATA"
    status = 400


class NotFoundError(ScoreboardError):
    code = "DEVICE_NOT_FOUND"
    status = 404


class StorageError(ScoreboardError):
    """A persistent-store operation failed. Never retried inside the core."""
    code = "DATABASE_ERROR"
    status = 500


class CacheUnavailable(ScoreboardError):
    # internal only: the cache and rate limiter swallow it and degrade
    code = "CACHE_UNAVAILABLE"
    status = 503
