from __future__ import annotations
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase
from lifecycle_engine.config import get_settings


class Base(DeclarativeBase):
    pass


def _dsn() -> str:
    return get_settings().database_url


def _connect_args(url: str) -> dict:
    # worker threads share the engine
    return {"check_same_thread": False} if url.startswith("sqlite") else {}


engine = create_engine(_dsn(), pool_pre_ping=True, connect_args=_connect_args(_dsn()))
SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def override_engine(e: Engine):  # test helper
    global engine, SessionLocal
    engine = e
    SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


def init_db(bind: Engine | None = None) -> None:
    """Create all tables (schema migrations are managed outside this package)."""
    from lifecycle_engine.models import tables  # noqa: F401  registers the mappers

    Base.metadata.create_all(bind=bind or engine)
