"""Database connection and session management."""
from datetime import datetime, timezone
from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from typing import Generator

from sitelift.config import get_settings

settings = get_settings()


def _connect_args(url: str) -> dict:
    # SQLite is used for local runs and tests; PostgreSQL gets a hard
    # per-statement timeout so a stuck query cannot stall an optimizer cycle.
    if url.startswith("sqlite"):
        return {"check_same_thread": False}
    if url.startswith("postgresql"):
        return {"options": f"-c statement_timeout={settings.database_statement_timeout_ms}"}
    return {}


# Create database engine
engine = create_engine(
    settings.database_url,
    connect_args=_connect_args(settings.database_url),
    pool_pre_ping=True,
    echo=settings.debug
)

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for models
Base = declarative_base()


def utcnow() -> datetime:
    """Naive UTC timestamp, the format every DateTime column stores."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def get_db() -> Generator[Session, None, None]:
    """
    Dependency to get database session.

    Usage:
        @app.get("/experiments/{restaurant_id}")
        def list_experiments(db: Session = Depends(get_db)):
            return ExperimentStore(db).list_experiments(restaurant_id)
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
