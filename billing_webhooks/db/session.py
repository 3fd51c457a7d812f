"""Database engine and session factory

Webhook attempts run in the threadpool, each with a session of its own from
``SessionLocal``; request handlers get theirs through ``get_db``.
"""
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from billing_webhooks.core.config import settings
from billing_webhooks.models.base import Base


def _engine_options(url: str) -> dict:
    if url.startswith("sqlite"):
        # Sessions are opened on threadpool workers, not the creating thread
        return {"connect_args": {"check_same_thread": False}}
    return {"pool_pre_ping": True, "pool_recycle": 3600}


engine = create_engine(settings.DATABASE_URL, **_engine_options(settings.DATABASE_URL))

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    """Dependency for FastAPI endpoints"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """Create any missing tables; Alembic owns schema changes"""
    Base.metadata.create_all(bind=engine)
