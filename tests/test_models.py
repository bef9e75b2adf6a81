from sqlalchemy import DateTime
from sqlmodel import Session, select

from scoreboard import models
from scoreboard.ledger import ScoreLedger
from scoreboard.migrations import Migration, run_migrations

A = "a" * 32


def test_timestamp_columns_are_plain_naive_datetime():
    columns = (
        models.DeviceBestScore.__table__.c.created_at,
        models.DeviceBestScore.__table__.c.updated_at,
        models.ScoreRecord.__table__.c.created_at,
        Migration.__table__.c.applied_at,
    )
    for column in columns:
        assert type(column.type) is DateTime
        assert column.type.timezone is False


def test_naive_utc_timestamps_round_trip(engine):
    result = ScoreLedger(engine).submit(A, 10)
    assert result.submitted_at.tzinfo is None

    with Session(engine) as session:
        best = session.get(models.DeviceBestScore, A)
        assert best.created_at == result.submitted_at
        assert best.updated_at.tzinfo is None
        record = session.get(models.ScoreRecord, int(result.record_id))
        assert record.created_at == result.submitted_at


def test_migration_records_applied_at(engine):
    run_migrations(engine)
    with Session(engine) as session:
        rows = session.exec(select(Migration)).all()
    assert rows
    assert all(row.applied_at.tzinfo is None for row in rows)
