"""
Database engine and session management.

PostgreSQL in production; SQLite for local runs and tests.
"""
from contextlib import contextmanager
from typing import Generator
import os

from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, declarative_base, sessionmaker

from exit_reconciler.monitoring.logger import get_logger

logger = get_logger(__name__)

DEFAULT_DATABASE_URL = "sqlite:///./data/trading.db"

# Base class for ORM models
Base = declarative_base()


class Database:
    """Engine plus a session factory for one database URL."""

    def __init__(self, database_url: str):
        """
        Args:
            database_url: postgresql:// or sqlite:// connection string
        """
        if not database_url.startswith(("postgresql", "sqlite")):
            raise ValueError(
                f"Unsupported database URL: {database_url[:30]}... "
                "Use a postgresql:// or sqlite:// connection string."
            )

        self.database_url = database_url
        self.is_sqlite = database_url.startswith("sqlite")

        if self.is_sqlite:
            _ensure_sqlite_dir(database_url)
            # The monitor's pass tasks and the CLI share one file
            self.engine = create_engine(
                database_url,
                connect_args={"check_same_thread": False, "timeout": 15},
            )
            event.listen(self.engine, "connect", _sqlite_pragmas)
        else:
            self.engine = create_engine(
                database_url,
                pool_pre_ping=True,
                pool_size=2,
                max_overflow=3,
                pool_recycle=1800,
            )

        self.SessionLocal = sessionmaker(
            autocommit=False, autoflush=False, expire_on_commit=False, bind=self.engine
        )

    def create_all(self) -> None:
        """Create missing tables. Production schema changes are applied out of band."""
        import exit_reconciler.storage.repository  # noqa: F401  (registers ORM models)

        Base.metadata.create_all(bind=self.engine)

    @contextmanager
    def get_session(self) -> Generator[Session, None, None]:
        """
        One unit of work: commit on clean exit, roll back on any exception.

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

    def dispose(self) -> None:
        self.engine.dispose()


def _ensure_sqlite_dir(database_url: str) -> None:
    path = database_url.split("///", 1)[-1]
    if not path or path == ":memory:":
        return
    directory = os.path.dirname(path)
    if directory:
        os.makedirs(directory, exist_ok=True)


def _sqlite_pragmas(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=15000")
    cursor.close()


_db_instance: Database | None = None


def get_db() -> Database:
    """Process-wide database, created from DATABASE_URL on first use."""
    global _db_instance
    if _db_instance is None:
        database_url = os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL)
        logger.info("DATABASE_CONNECTION_INIT", dialect=database_url.split(":", 1)[0])
        _db_instance = Database(database_url)
        _db_instance.create_all()
    return _db_instance


def init_db(database_url: str, create_tables: bool = True) -> Database:
    """
    Replace the process-wide database.

    Args:
        database_url: Connection string
        create_tables: Run create_all() (skip when the schema is managed elsewhere)
    """
    global _db_instance
    _db_instance = Database(database_url)
    if create_tables:
        _db_instance.create_all()
    logger.info("DATABASE_CONNECTION_INIT", dialect=database_url.split(":", 1)[0], create_tables=create_tables)
    return _db_instance
