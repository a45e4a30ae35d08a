"""SQLite store base class with WAL setup and context-manager support.

Subclasses provide a schema in ``_SCHEMA`` and their own queries::

    class ItemStore(SQLiteStore):
        _SCHEMA = '''
            CREATE TABLE IF NOT EXISTS items (
                key   TEXT PRIMARY KEY,
                value BLOB NOT NULL
            );
        '''

    with ItemStore(data_dir / "items.db") as store:
        ...

Connections are shared across threads; writes go through ``_write_lock``.
"""

from __future__ import annotations

import sqlite3
import threading
from pathlib import Path

import structlog

logger = structlog.get_logger()


class SQLiteStore:
    """Base class for SQLite-backed stores.

    ``db_path=None`` opens an in-memory database.
    """

    _SCHEMA: str = ""

    def __init__(self, db_path: Path | str | None = None) -> None:
        path = str(db_path) if db_path else ":memory:"
        if db_path:
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        self._db_path = path
        self._conn = sqlite3.connect(path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._write_lock = threading.Lock()

        self._conn.execute("PRAGMA journal_mode=WAL")
        if self._SCHEMA:
            self._conn.executescript(self._SCHEMA)
            self._conn.commit()

        logger.info(f"{type(self).__name__.lower()}_opened", db=path)

    @property
    def db_path(self) -> str:
        return self._db_path

    def __enter__(self) -> SQLiteStore:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    def close(self) -> None:
        """Close the database connection."""
        self._conn.close()
