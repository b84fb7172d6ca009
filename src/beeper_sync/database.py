from contextlib import contextmanager
from typing import Any, Generator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from beeper_sync.config import settings

engine: Engine | None = None
SessionLocal: sessionmaker | None = None


def _normalize_url(url: str) -> str:
    if url.startswith("postgresql://") and "psycopg" not in url:
        return url.replace("postgresql://", "postgresql+psycopg://", 1)
    return url


def init_engine(url: str | None = None, **engine_kwargs: Any) -> Engine:
    """Bind the module engine and session factory. Tests rebind to SQLite."""
    global engine, SessionLocal
    db_url = _normalize_url(url if url is not None else settings.DATABASE_URL or "")
    if not db_url:
        raise RuntimeError("DATABASE_URL is not set. Set it in .env or environment.")
    if db_url.startswith("postgresql") and not engine_kwargs:
        engine_kwargs = {"pool_size": 10, "max_overflow": 20}
    if engine is not None:
        engine.dispose()
    engine = create_engine(db_url, **engine_kwargs)
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, expire_on_commit=False)
    return engine


if settings.DATABASE_URL:
    init_engine()


@contextmanager
def db_session() -> Generator[Session, None, None]:
    if engine is None or SessionLocal is None:
        raise RuntimeError("DATABASE_URL is not set. Set it in .env or environment.")
    db = SessionLocal()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
