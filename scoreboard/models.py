from typing import Optional
from sqlalchemy import DateTime
from sqlmodel import SQLModel, Field
from datetime import datetime, timezone


def utcnow() -> datetime:
    # naive UTC keeps comparisons identical across SQLite and server databases
    return datetime.now(timezone.utc).replace(tzinfo=None)


def utc_column(**kwargs):
    """Field for a naive-UTC timestamp column.

    The column type is pinned to plain ``DateTime`` so newer SQLModel
    releases do not swap in their timezone-aware type, which rejects naive
    values on insert.
    """
    return Field(default_factory=utcnow, sa_type=DateTime(timezone=False), **kwargs)


class DeviceBestScore(SQLModel, table=True):
    __tablename__ = "device_best_score"

    device_id: str = Field(primary_key=True, max_length=32)
    best_score: int = Field(default=0, ge=0)
    created_at: datetime = utc_column()
    updated_at: datetime = utc_column()


class ScoreRecord(SQLModel, table=True):
    # indexes on device_id and created_at come from migrations.py
    __tablename__ = "score_record"

    id: Optional[int] = Field(default=None, primary_key=True)
    device_id: str = Field(max_length=32)
    score: int = Field(ge=0)
    created_at: datetime = utc_column()
