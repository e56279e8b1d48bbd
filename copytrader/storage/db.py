"""
Database engine and session management.

PostgreSQL in production; SQLite is accepted for local runs and tests.
Includes connection-pool observability via SQLAlchemy pool events.
"""
import os
import time
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import Pool, StaticPool

from copytrader.monitoring.logger import get_logger

logger = get_logger(__name__)
_pool_logger = get_logger("db.pool")

# Base class for ORM models
Base = declarative_base()

_SUPPORTED_PREFIXES = ("postgresql", "sqlite")
_SQLITE_MEMORY_URLS = ("sqlite://", "sqlite:///:memory:")


class Database:
    """Database engine and session manager."""

    def __init__(self, database_url: str):
        """
        Args:
            database_url: postgresql:// or sqlite:// connection string
        """
        if not database_url.startswith(_SUPPORTED_PREFIXES):
            raise ValueError(
                f"Unsupported database URL: {database_url[:30]}... "
                "Set DATABASE_URL to a postgresql:// (or sqlite:// for local use) connection string."
            )
        self.database_url = database_url

        if database_url in _SQLITE_MEMORY_URLS:
            # One shared connection so the in-memory database survives across sessions and threads
            self.engine = create_engine(
                database_url,
                echo=False,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        elif database_url.startswith("sqlite"):
            self.engine = create_engine(
                database_url,
                echo=False,
                connect_args={"check_same_thread": False, "timeout": 30},
            )
        else:
            self.engine = create_engine(
                database_url,
                echo=False,
                pool_pre_ping=True,
                pool_size=10,
                max_overflow=20,
                pool_recycle=3600,
                pool_timeout=30,
            )
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine, expire_on_commit=False)
        _register_pool_events(self.engine.pool)

    def create_all(self) -> None:
        """Create all tables."""
        Base.metadata.create_all(bind=self.engine)

    def drop_all(self) -> None:
        """Drop all tables (use with caution!)."""
        Base.metadata.drop_all(bind=self.engine)

    @contextmanager
    def get_session(self) -> Generator[Session, None, None]:
        """
        Context manager for database sessions. Commits on success, rolls back on error.

        Example:
            with db.get_session() as session:
                session.add(obj)
        """
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


# Global database instance (initialized on first use)
_db_instance: Database | None = None


def get_db() -> Database:
    """Get or create the global database instance from DATABASE_URL."""
    global _db_instance
    if _db_instance is None:
        # Models must be registered on Base.metadata before create_all
        import copytrader.storage.repository  # noqa: F401

        database_url = os.getenv("DATABASE_URL")
        if not database_url:
            raise ValueError("DATABASE_URL is not set")
        logger.info("DATABASE_CONNECTION_INIT", backend=database_url.split(":", 1)[0])
        _db_instance = Database(database_url)
        _db_instance.create_all()
    return _db_instance


def init_db(database_url: str) -> Database:
    """Initialize the global database with a specific URL and create tables."""
    global _db_instance
    import copytrader.storage.repository  # noqa: F401

    _db_instance = Database(database_url)
    _db_instance.create_all()
    return _db_instance


def _register_pool_events(pool: Pool) -> None:
    """Log POOL_CHECKOUT / POOL_CHECKIN (with held_ms) / POOL_INVALIDATE."""

    @event.listens_for(pool, "checkout")
    def _on_checkout(dbapi_connection, connection_record, connection_proxy):
        connection_record.info["checkout_time"] = time.monotonic()
        _pool_logger.debug("POOL_CHECKOUT")

    @event.listens_for(pool, "checkin")
    def _on_checkin(dbapi_connection, connection_record):
        checkout_time = connection_record.info.pop("checkout_time", None)
        held_ms = round((time.monotonic() - checkout_time) * 1000, 1) if checkout_time is not None else None
        _pool_logger.debug("POOL_CHECKIN", held_ms=held_ms)

    @event.listens_for(pool, "invalidate")
    def _on_invalidate(dbapi_connection, connection_record, exception):
        _pool_logger.warning("POOL_INVALIDATE", error=str(exception) if exception else None)

