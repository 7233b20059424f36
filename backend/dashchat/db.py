from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from .config import settings


def _engine_options(url: str) -> dict:
    if url.startswith("sqlite"):
        # Streaming routes touch the database from the threadpool.
        return {"connect_args": {"check_same_thread": False}}
    return {"pool_size": 10, "max_overflow": 20, "pool_pre_ping": True, "pool_recycle": 1800}


engine = create_engine(settings.DATABASE_URL, echo=False, **_engine_options(settings.DATABASE_URL))
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
Base = declarative_base()


@contextmanager
def session_scope(factory: sessionmaker = SessionLocal) -> Iterator[Session]:
    """Session that commits on success, rolls back on error and always closes."""
    db: Session = factory()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def get_db() -> Iterator[Session]:
    with session_scope() as db:
        yield db


def get_session_factory() -> sessionmaker:
    """
    Hand out the session factory instead of a session.

    Streaming routes outlive the request-scoped session from get_db, so they open
    short-lived sessions of their own for each phase of the exchange.
    """
    return SessionLocal


def ping_db() -> bool:
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except SQLAlchemyError:
        return False
