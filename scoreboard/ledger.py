"""
Score ledger: the only writer of DeviceBestScore and ScoreRecord.

For every device there is exactly one DeviceBestScore row once it has
submitted, holding the maximum score ever seen, and at most one
ScoreRecord row, holding that same score. The best score is only ever
raised through a conditional UPDATE, so concurrent submissions for one
device can never lower it.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, desc, func, select as sa_select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlmodel import Session

from . import models
from .errors import StorageError
from .logging_utils import get_logger
from .validation import validate_device_id, validate_score

logger = get_logger("scoreboard.ledger")


def _parse_dt(value) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


@dataclass(frozen=True)
class DeviceStats:
    device_id: str
    best_score: int
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_row(cls, row: models.DeviceBestScore) -> "DeviceStats":
        return cls(row.device_id, row.best_score, row.created_at, row.updated_at)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "deviceId": self.device_id,
            "bestScore": self.best_score,
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeviceStats":
        return cls(
            device_id=data["deviceId"],
            best_score=int(data["bestScore"]),
            created_at=_parse_dt(data["createdAt"]),
            updated_at=_parse_dt(data["updatedAt"]),
        )


@dataclass(frozen=True)
class SubmitResult:
    record_id: str
    device_id: str
    score: int
    best_score: int
    is_new_best: bool
    submitted_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recordId": self.record_id,
            "isNewBest": self.is_new_best,
            "bestScore": self.best_score,
        }


@dataclass(frozen=True)
class HistoryPage:
    records: List[Dict[str, Any]] = field(default_factory=list)
    total: int = 0
    has_more: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"records": list(self.records), "total": self.total, "hasMore": self.has_more}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HistoryPage":
        return cls(records=list(data["records"]), total=int(data["total"]), has_more=bool(data["hasMore"]))


class ScoreLedger:
    def __init__(self, engine: Engine, max_score: int = 999999, replace_on_tie: bool = True):
        self.engine = engine
        self.max_score = max_score
        self.replace_on_tie = replace_on_tie

    def submit(self, device_id: str, score: int) -> SubmitResult:
        """Record a score, keeping only the device's best.

        A score equal to the current best counts as a new best (and refreshes
        the record's timestamp) when ``replace_on_tie`` is set.
        """
        validate_device_id(device_id)
        validate_score(score, self.max_score)

        now = models.utcnow()
        with Session(self.engine) as session:
            try:
                improved = self._create_stats(session, device_id, score, now)
                if not improved:
                    improved = self._raise_best(session, device_id, score, now)

                record_id = ""
                if improved:
                    # replace happens inside the same transaction as the raise
                    session.execute(
                        delete(models.ScoreRecord).where(models.ScoreRecord.device_id == device_id)
                    )
                    record = models.ScoreRecord(device_id=device_id, score=score, created_at=now)
                    session.add(record)
                    session.flush()
                    record_id = str(record.id)
                session.commit()

                best = session.execute(
                    sa_select(models.DeviceBestScore.best_score)
                    .where(models.DeviceBestScore.device_id == device_id)
                ).scalar_one()
            except SQLAlchemyError as exc:
                session.rollback()
                logger.error(
                    "score_submit_failed",
                    extra={"device_id": device_id, "score": score, "error": str(exc)},
                    exc_info=True,
                )
                raise StorageError("failed to record score") from exc

        logger.info(
            "score_submitted",
            extra={"device_id": device_id, "score": score, "best_score": best, "is_new_best": improved},
        )
        return SubmitResult(
            record_id=record_id,
            device_id=device_id,
            score=score,
            best_score=int(best),
            is_new_best=improved,
            submitted_at=now,
        )

    def _create_stats(self, session: Session, device_id: str, score: int, now: datetime) -> bool:
        """Insert the first DeviceBestScore row. False if the device already has one."""
        if session.get(models.DeviceBestScore, device_id) is not None:
            return False
        session.add(models.DeviceBestScore(
            device_id=device_id, best_score=score, created_at=now, updated_at=now,
        ))
        try:
            session.flush()
        except IntegrityError:
            # lost a creation race to a concurrent submission for this device
            session.rollback()
            return False
        return True

    def _raise_best(self, session: Session, device_id: str, score: int, now: datetime) -> bool:
        """Compare-and-set: raise best_score only if the new score beats it."""
        column = models.DeviceBestScore.best_score
        condition = column <= score if self.replace_on_tie else column < score
        result = session.execute(
            update(models.DeviceBestScore)
            .where(models.DeviceBestScore.device_id == device_id)
            .where(condition)
            .values(best_score=score, updated_at=now)
        )
        return result.rowcount == 1

    def get_device_stats(self, device_id: str) -> Optional[DeviceStats]:
        """None means the device has never submitted."""
        validate_device_id(device_id)
        try:
            with Session(self.engine) as session:
                row = session.get(models.DeviceBestScore, device_id)
                return DeviceStats.from_row(row) if row else None
        except SQLAlchemyError as exc:
            logger.error("device_stats_failed", extra={"device_id": device_id, "error": str(exc)})
            raise StorageError("failed to load device stats") from exc

    def get_history(self, device_id: str, limit: int = 20, offset: int = 0) -> HistoryPage:
        """Live score records for a device, newest first."""
        validate_device_id(device_id)
        try:
            with Session(self.engine) as session:
                total = session.execute(
                    sa_select(func.count(models.ScoreRecord.id))
                    .where(models.ScoreRecord.device_id == device_id)
                ).scalar() or 0
                rows = session.execute(
                    sa_select(models.ScoreRecord.id, models.ScoreRecord.score, models.ScoreRecord.created_at)
                    .where(models.ScoreRecord.device_id == device_id)
                    .order_by(desc(models.ScoreRecord.created_at))
                    .offset(offset)
                    .limit(limit)
                ).all()
        except SQLAlchemyError as exc:
            logger.error("history_failed", extra={"device_id": device_id, "error": str(exc)})
            raise StorageError("failed to load score history") from exc

        records = [
            {"id": str(rid), "score": int(score), "createdAt": created_at.isoformat()}
            for rid, score, created_at in rows
        ]
        return HistoryPage(records=records, total=int(total), has_more=offset + limit < total)
