"""Engine and session factory"""
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from app.core.config import settings
from app.models.base import Base


def _engine_options(url: str) -> dict:
    if url.startswith("sqlite"):
        # Worker threads open their own sessions
        return {"connect_args": {"check_same_thread": False}}
    return {
        "pool_pre_ping": True,
        "pool_recycle": 3600,
        "pool_size": settings.WEBHOOK_WORKER_CONCURRENCY + 2,
    }


engine = create_engine(settings.DATABASE_URL, **_engine_options(settings.DATABASE_URL))

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


@contextmanager
def session_scope(factory=SessionLocal) -> Iterator[Session]:
    """One session per unit of work; always closed, never committed implicitly"""
    db = factory()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """Create any missing tables"""
    Base.metadata.create_all(bind=engine)
