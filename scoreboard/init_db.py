import os

from sqlalchemy.engine import Engine
from sqlmodel import create_engine, SQLModel
from . import models  # noqa: F401  registers the tables on SQLModel.metadata
from .logging_utils import get_logger

logger = get_logger("scoreboard.init_db")


def create_db_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        # SQLite waits up to `timeout` seconds for a competing writer
        return create_engine(url, echo=False, connect_args={"check_same_thread": False, "timeout": 15})
    return create_engine(
        url,
        echo=False,
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
        pool_recycle=1800,
    )


def init_db(url: str = "sqlite:///./scoreboard.db") -> Engine:
    engine = create_db_engine(url)
    SQLModel.metadata.create_all(engine)
    logger.info("db_initialized", extra={"url": url.split("@")[-1]})
    return engine


if __name__ == '__main__':
    init_db(os.getenv("DATABASE_URL", "sqlite:///./scoreboard.db"))
