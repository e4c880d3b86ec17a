"""SQLite database setup and sessions."""
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool
from pathlib import Path
from typing import Generator, Optional
import logging

logger = logging.getLogger(__name__)

DB_FILENAME = "request_manager.db"

# Global engine and session factory
engine = None
SessionLocal = None


def sqlite_url(data_dir: str) -> str:
    """URL of the database file in ``data_dir`` (created and checked for write access)."""
    data_path = Path(data_dir)
    data_path.mkdir(parents=True, exist_ok=True)
    probe = data_path / ".write_test"
    try:
        probe.touch()
        probe.unlink()
    except OSError as e:
        logger.error(f"Data directory {data_dir} is not writable: {e}")
        raise PermissionError(f"Cannot write to {data_dir}: {e}") from e
    return f"sqlite:///{data_path / DB_FILENAME}"


def init_db(data_dir: str = "/data", database_url: Optional[str] = None) -> None:
    """(Re)create the engine and the tables.

    ``database_url`` wins over ``data_dir``; ``sqlite://`` gives an in-memory
    database shared by every session of this engine.
    """
    global engine, SessionLocal

    url = database_url or sqlite_url(data_dir)
    logger.info(f"Initializing database at: {url}")

    engine = create_engine(
        url,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False,
    )
    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    from request_manager.db.models import Base
    Base.metadata.create_all(bind=engine)
    logger.info("Database initialized successfully")


def get_db() -> Generator[Session, None, None]:
    """FastAPI dependency: one session per request."""
    if SessionLocal is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_db_sync() -> Session:
    """Session for background continuations and tests; the caller closes it."""
    if SessionLocal is None:
        raise RuntimeError("Database not initialized. Call init_db() first.")
    return SessionLocal()
