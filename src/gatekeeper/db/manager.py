"""Engine and session handling for the admission tables."""

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from sqlalchemy import Engine, create_engine, event, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from gatekeeper.db.base import Base

logger = logging.getLogger(__name__)

SUPPORTED_DIALECTS = {"sqlite", "postgresql"}


def _sqlite_file(database_url: str) -> Path | None:
    """File behind a SQLite URL, or None for in-memory and other databases."""
    if not database_url.startswith("sqlite:///"):
        return None
    path = database_url[len("sqlite:///"):]
    if not path or path == ":memory:":
        return None
    return Path(path)


class DatabaseManager:
    """
    Owns the SQLAlchemy engine behind ``SqlStore``.

    Sessions are opened from worker threads, one per store operation, so
    SQLite connections are shared across threads and configured for
    concurrent writers: WAL journal plus a busy timeout, so that a
    second writer waits for the lock instead of failing at once.
    """

    def __init__(
        self,
        database_url: str = "sqlite:///data/gatekeeper.db",
        echo: bool = False,
        busy_timeout_seconds: float = 5.0,
    ) -> None:
        """
        Args:
            database_url: SQLAlchemy database URL (SQLite or PostgreSQL)
            echo: Log every SQL statement
            busy_timeout_seconds: How long a SQLite writer waits on a lock
        """
        self._database_url = database_url
        self._echo = echo
        self._busy_timeout = busy_timeout_seconds
        self._engine: Engine | None = None
        self._sessions: sessionmaker[Session] | None = None

    @property
    def is_sqlite(self) -> bool:
        return self._database_url.startswith("sqlite")

    @property
    def engine(self) -> Engine:
        """Engine, built on first use."""
        if self._engine is None:
            self._engine = self._build_engine()
        return self._engine

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    def _build_engine(self) -> Engine:
        db_file = _sqlite_file(self._database_url)
        if db_file is not None:
            db_file.parent.mkdir(parents=True, exist_ok=True)

        connect_args: dict = {}
        if self.is_sqlite:
            connect_args = {"check_same_thread": False, "timeout": self._busy_timeout}

        engine = create_engine(
            self._database_url,
            echo=self._echo,
            pool_pre_ping=True,
            connect_args=connect_args,
        )
        if engine.dialect.name not in SUPPORTED_DIALECTS:
            engine.dispose()
            raise ValueError(
                f"Unsupported database dialect '{engine.dialect.name}'. "
                f"Supported: {sorted(SUPPORTED_DIALECTS)}"
            )

        if self.is_sqlite:
            busy_ms = int(self._busy_timeout * 1000)

            @event.listens_for(engine, "connect")
            def _on_connect(dbapi_connection, connection_record) -> None:  # type: ignore
                cursor = dbapi_connection.cursor()
                cursor.execute("PRAGMA journal_mode=WAL")
                cursor.execute("PRAGMA synchronous=NORMAL")
                cursor.execute(f"PRAGMA busy_timeout={busy_ms}")
                cursor.close()

            logger.info(f"SQLite engine ready (WAL, busy timeout {busy_ms} ms)")
        else:
            logger.info(f"Database engine ready ({engine.dialect.name})")

        return engine

    @contextmanager
    def get_session(self) -> Generator[Session, None, None]:
        """
        Session committed on exit and rolled back if the block raises.

        Usage:
            with db_manager.get_session() as session:
                session.execute(stmt)
        """
        if self._sessions is None:
            self._sessions = sessionmaker(bind=self.engine, autoflush=False, expire_on_commit=False)

        session = self._sessions()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def init_db(self) -> None:
        """Create the quota, window and block tables if missing."""
        Base.metadata.create_all(bind=self.engine)
        logger.info(f"Admission tables verified on {self.dialect}")

    def health_check(self) -> bool:
        """True when a trivial query succeeds."""
        try:
            with self.engine.connect() as conn:
                conn.execute(text("SELECT 1"))
        except SQLAlchemyError as e:
            logger.error(f"Database health check failed: {e}")
            return False
        return True

    def close(self) -> None:
        """Dispose of the engine; the next use builds a new one."""
        if self._engine is None:
            return
        self._engine.dispose()
        self._engine = None
        self._sessions = None
        logger.info("Database engine disposed")
