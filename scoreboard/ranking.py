"""
Leaderboard computation straight from the store. Nothing here touches the
cache; ranks are positions in the sorted result and are never stored.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional
from zoneinfo import ZoneInfo

from sqlalchemy import and_, func, or_, select as sa_select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from . import models
from .errors import StorageError, ValidationError
from .logging_utils import get_logger

logger = get_logger("scoreboard.ranking")

TIME_RANGES = ("all", "weekly")


@dataclass(frozen=True)
class RankingItem:
    device_id: str
    score: int
    rank: int
    timestamp: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "deviceId": self.device_id,
            "score": self.score,
            "rank": self.rank,
            "timestamp": self.timestamp.isoformat() if self.timestamp else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RankingItem":
        ts = data.get("timestamp")
        return cls(
            device_id=data["deviceId"],
            score=int(data["score"]),
            rank=int(data["rank"]),
            timestamp=datetime.fromisoformat(ts) if ts else None,
        )


def week_start(now: datetime, tz: str = "UTC") -> datetime:
    """Monday 00:00:00 of the week containing ``now`` in zone ``tz``, as naive UTC.

    A naive ``now`` is taken to be UTC.
    """
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    local = now.astimezone(ZoneInfo(tz))
    monday = (local - timedelta(days=local.weekday())).replace(hour=0, minute=0, second=0, microsecond=0)
    # rebuild from the calendar date so a DST shift inside the week is ignored
    monday = datetime(monday.year, monday.month, monday.day, tzinfo=ZoneInfo(tz))
    return monday.astimezone(timezone.utc).replace(tzinfo=None)


class RankingEngine:
    def __init__(self, engine: Engine, tz: str = "UTC", clock: Callable[[], datetime] = models.utcnow):
        self.engine = engine
        self.tz = tz
        self.clock = clock

    def get_ranking(self, time_range: str = "all", limit: int = 10) -> List[RankingItem]:
        if time_range not in TIME_RANGES:
            raise ValidationError("time range must be 'all' or 'weekly'", code="INVALID_RANKING_TYPE")
        if limit < 1:
            raise ValidationError("limit must be positive", code="INVALID_LIMIT")
        try:
            with Session(self.engine) as session:
                if time_range == "weekly":
                    return self._weekly(session, limit)
                return self._all_time(session, limit)
        except SQLAlchemyError as exc:
            logger.error("ranking_failed", extra={"time_range": time_range, "error": str(exc)})
            raise StorageError(f"failed to compute {time_range} ranking") from exc

    def _all_time(self, session: Session, limit: int) -> List[RankingItem]:
        table = models.DeviceBestScore
        rows = session.execute(
            sa_select(table.device_id, table.best_score, table.updated_at)
            .order_by(table.best_score.desc(), table.created_at.asc())
            .limit(limit)
        ).all()
        return [
            RankingItem(device_id=device_id, score=int(score), rank=idx, timestamp=updated_at)
            for idx, (device_id, score, updated_at) in enumerate(rows, start=1)
        ]

    def _weekly(self, session: Session, limit: int) -> List[RankingItem]:
        table = models.ScoreRecord
        start = self.window_start()
        best = func.max(table.score).label("best")
        first_at = func.min(table.created_at).label("first_at")
        rows = session.execute(
            sa_select(table.device_id, best, first_at)
            .where(table.created_at >= start)
            .group_by(table.device_id)
            .order_by(best.desc(), first_at.asc())
            .limit(limit)
        ).all()
        return [
            RankingItem(device_id=device_id, score=int(score), rank=idx, timestamp=_as_datetime(first))
            for idx, (device_id, score, first) in enumerate(rows, start=1)
        ]

    def window_start(self) -> datetime:
        return week_start(self.clock(), self.tz)

    def get_device_rank(self, device_id: str) -> Optional[int]:
        """1-based all-time rank of a device, None if it has never submitted."""
        table = models.DeviceBestScore
        try:
            with Session(self.engine) as session:
                me = session.get(table, device_id)
                if me is None:
                    return None
                ahead = session.execute(
                    sa_select(func.count())
                    .select_from(table)
                    .where(or_(
                        table.best_score > me.best_score,
                        and_(table.best_score == me.best_score, table.created_at < me.created_at),
                    ))
                ).scalar() or 0
        except SQLAlchemyError as exc:
            logger.error("device_rank_failed", extra={"device_id": device_id, "error": str(exc)})
            raise StorageError("failed to compute device rank") from exc
        return int(ahead) + 1


def _as_datetime(value) -> Optional[datetime]:
    # SQLite hands back aggregate datetimes as strings
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))
