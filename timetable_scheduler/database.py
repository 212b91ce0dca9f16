from __future__ import annotations

import contextlib
import logging
from pathlib import Path
from typing import Iterator, Optional

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, declarative_base, sessionmaker

logger = logging.getLogger(__name__)

Base = declarative_base()


class Database:
    """
    Owns the SQLAlchemy engine and session factory.

    Constructed explicitly (one per app or test) and opened/closed by its
    owner; nothing here is process-global.
    """

    def __init__(self, url: str) -> None:
        self.url = url
        self._engine: Optional[Engine] = None
        self._sessionmaker: Optional[sessionmaker] = None

    @property
    def is_sqlite(self) -> bool:
        return make_url(self.url).get_backend_name() == "sqlite"

    @property
    def is_open(self) -> bool:
        return self._engine is not None

    @property
    def dialect(self) -> str:
        return make_url(self.url).get_backend_name()

    @property
    def engine(self) -> Engine:
        if self._engine is None:
            raise RuntimeError("Database is not open. Call open() first.")
        return self._engine

    def open(self) -> "Database":
        if self._engine is not None:
            return self

        connect_args = {}
        if self.is_sqlite:
            connect_args["check_same_thread"] = False
            database = make_url(self.url).database
            if database and database != ":memory:":
                Path(database).parent.mkdir(parents=True, exist_ok=True)

        engine = create_engine(self.url, connect_args=connect_args)
        if self.is_sqlite:
            event.listen(engine, "connect", _configure_sqlite)

        # Register the mapped tables before creating them.
        from . import models  # noqa: F401

        try:
            Base.metadata.create_all(bind=engine)
        except Exception:
            engine.dispose()
            raise

        self._engine = engine
        self._sessionmaker = sessionmaker(autocommit=False, autoflush=False, bind=engine)
        logger.info("Database ready url=%s", engine.url.render_as_string(hide_password=True))
        return self

    def close(self) -> None:
        if self._engine is None:
            return
        try:
            self.flush()
        finally:
            self._engine.dispose()
            self._engine = None
            self._sessionmaker = None
            logger.info("Database connection closed")

    def new_session(self) -> Session:
        if self._sessionmaker is None:
            raise RuntimeError("Database is not open. Call open() first.")
        return self._sessionmaker()

    @contextlib.contextmanager
    def session(self) -> Iterator[Session]:
        db = self.new_session()
        try:
            yield db
        finally:
            db.close()

    def flush(self) -> None:
        """Write pending WAL pages into the main database file (SQLite only)."""
        if self._engine is None or not self.is_sqlite:
            return
        with self._engine.connect() as conn:
            conn.execute(text("PRAGMA wal_checkpoint(PASSIVE)"))

    def ping(self) -> bool:
        if self._engine is None:
            return False
        try:
            with self._engine.connect() as conn:
                conn.execute(text("SELECT 1"))
            return True
        except Exception:
            logger.warning("Database ping failed", exc_info=True)
            return False


def _configure_sqlite(dbapi_conn, connection_record) -> None:
    cur = dbapi_conn.cursor()
    try:
        # Required for ON DELETE CASCADE on tasks.user_id.
        cur.execute("PRAGMA foreign_keys=ON")
        with contextlib.suppress(Exception):
            cur.execute("PRAGMA journal_mode=WAL")
    finally:
        cur.close()
