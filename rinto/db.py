from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from typing import Generator
import os

# DATABASE_URL defaults to a local SQLite file at ./data.db.
# Override via the DATABASE_URL environment variable for staging/production.
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./data.db")

# Upper bound (seconds) for waiting on the storage layer: SQLite busy timeout / pool checkout timeout.
DB_TIMEOUT_SECONDS = float(os.getenv("DB_TIMEOUT_SECONDS", "10"))

# Build the SQLAlchemy engine with backend-specific settings.
# - SQLite (dev/local): allow cross-thread access and bound the wait on the file lock.
# - Server DBs (e.g., Postgres): safe pooling with a bounded checkout wait.
if DATABASE_URL.startswith("sqlite"):
    engine = create_engine(
        DATABASE_URL,
        connect_args={"check_same_thread": False, "timeout": DB_TIMEOUT_SECONDS},
    )
else:
    engine = create_engine(
        DATABASE_URL,
        pool_pre_ping=True,
        pool_recycle=280,
        pool_size=10,
        max_overflow=20,
        pool_timeout=DB_TIMEOUT_SECONDS,
    )

# Session factory: one session per request; autocommit and autoflush disabled for explicit transaction control
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for ORM models declared via SQLAlchemy's declarative API
Base = declarative_base()


def is_sqlite(db) -> bool:
    """True when the session is bound to SQLite (no row locks, no range constraints)."""
    return db.get_bind().dialect.name == "sqlite"


def get_db() -> Generator:
    """
    FastAPI dependency.

    Yields a database session for the lifetime of the request and guarantees it
    is closed afterwards, even if an exception is raised.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
