"""
Database migrations for the scoreboard service.
Creates the indexes the ranking and ledger queries rely on.
"""

from sqlmodel import SQLModel, Field, text, Session, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from typing import List, Optional
from datetime import datetime
import os

from .logging_utils import get_logger, setup_logging
from .models import utc_column, utcnow

logger = get_logger("scoreboard.migrations")


class Migration(SQLModel, table=True):
    """Track applied migrations"""
    __tablename__ = "schema_migration"

    id: Optional[int] = Field(default=None, primary_key=True)
    name: str = Field(index=True, unique=True)
    applied_at: datetime = utc_column()


MIGRATIONS = [
    (
        "001_ranking_indexes",
        """
        -- all-time ranking: ORDER BY best_score DESC, created_at ASC
        CREATE INDEX IF NOT EXISTS idx_best_score_rank ON device_best_score(best_score, created_at);

        -- weekly ranking window and per-device record replacement
        CREATE INDEX IF NOT EXISTS idx_record_created_at ON score_record(created_at);
        CREATE INDEX IF NOT EXISTS idx_record_device ON score_record(device_id)
        """,
    ),
    (
        "002_weekly_group_index",
        """
        CREATE INDEX IF NOT EXISTS idx_record_created_device_score ON score_record(created_at, device_id, score)
        """,
    ),
]


def ensure_migration_table(engine: Engine):
    """Ensure the migration tracking table exists"""
    Migration.metadata.create_all(engine, tables=[Migration.__table__])


def has_migration_been_applied(engine: Engine, migration_name: str) -> bool:
    """Check if a migration has already been applied"""
    ensure_migration_table(engine)

    with Session(engine) as session:
        result = session.exec(
            select(Migration).where(Migration.name == migration_name)
        ).first()
        return result is not None


def _statements(migration_sql: str) -> List[str]:
    """Split a migration script on ';', dropping '--' comment lines and empty statements."""
    statements = []
    for chunk in migration_sql.split(';'):
        body = "\n".join(ln for ln in chunk.splitlines() if not ln.strip().startswith('--')).strip()
        if body:
            statements.append(body)
    return statements


def apply_migration(engine: Engine, migration_name: str, migration_sql: str) -> bool:
    """Apply a migration and record it. Returns False if it was already applied."""
    if has_migration_been_applied(engine, migration_name):
        logger.debug("migration_skipped", extra={"event": migration_name})
        return False

    with Session(engine) as session:
        try:
            for statement in _statements(migration_sql):
                session.execute(text(statement))
            session.add(Migration(name=migration_name, applied_at=utcnow()))
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error("migration_failed", extra={"event": migration_name, "error": str(e)})
            raise

    logger.info("migration_applied", extra={"event": migration_name})
    return True


def run_migrations(engine: Engine) -> int:
    """Run all pending migrations, return how many were applied"""
    applied = sum(1 for name, sql in MIGRATIONS if apply_migration(engine, name, sql))
    logger.info("migrations_complete", extra={"count": applied})
    return applied


if __name__ == "__main__":
    from .init_db import init_db

    setup_logging()
    run_migrations(init_db(os.getenv("DATABASE_URL", "sqlite:///./scoreboard.db")))
