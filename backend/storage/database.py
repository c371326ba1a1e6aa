"""
Database engine and session factory for the signal history and portfolio ledger.

The URL comes from settings (DATABASE_URL), defaulting to signaldesk.db in the
app data directory. SQLite files run in WAL mode so the scheduler CLI and the
API can share one database.
"""
import logging
import os
from typing import Any, Dict, Generator, Tuple

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from config.settings import get_settings

logger = logging.getLogger(__name__)

DATABASE_URL = get_settings().database_url


def _engine_options(url: str) -> Dict[str, Any]:
    if url.startswith("sqlite"):
        # Sessions are handed between the request thread and the event loop
        return {"connect_args": {"check_same_thread": False}, "pool_pre_ping": True}
    return {
        "pool_size": 5,
        "max_overflow": 10,
        "pool_recycle": 1800,
        "pool_pre_ping": True,
    }


def _enable_sqlite_wal(target: Engine) -> None:
    @event.listens_for(target, "connect")
    def _on_connect(dbapi_conn, _connection_record):
        cursor = dbapi_conn.cursor()
        cursor.execute("PRAGMA journal_mode=WAL")
        cursor.execute("PRAGMA synchronous=NORMAL")
        cursor.execute("PRAGMA busy_timeout=5000")
        cursor.close()


engine = create_engine(
    DATABASE_URL,
    echo=os.getenv("SQL_ECHO", "false").lower() == "true",
    **_engine_options(DATABASE_URL),
)
if DATABASE_URL.startswith("sqlite"):
    _enable_sqlite_wal(engine)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db() -> Generator[Session, None, None]:
    """FastAPI dependency yielding one session per request."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db() -> None:
    """Create the portfolio, trade, signal and snapshot tables if missing."""
    from storage import models  # noqa: F401
    Base.metadata.create_all(bind=engine)


def check_integrity() -> Tuple[bool, str]:
    """Run PRAGMA integrity_check on SQLite databases; other backends report ok."""
    if not DATABASE_URL.startswith("sqlite"):
        return True, "not sqlite"
    try:
        with engine.connect() as conn:
            result = str(conn.execute(text("PRAGMA integrity_check")).scalar())
    except SQLAlchemyError as exc:
        logger.critical("Database integrity check error: %s", exc)
        return False, str(exc)
    if result.strip().lower() != "ok":
        logger.critical("Database integrity check FAILED: %s", result)
        return False, result
    logger.info("Database integrity check passed")
    return True, result
