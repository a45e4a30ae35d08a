"""Local cache of confirmed mutable items.

Keeps a queryable copy of every item this node successfully put, keyed by
infohash.  Stored at ``<data_dir>/mutable_data.db``.

Usage::

    store = MutableDataStore(data_dir)
    store.put(StoredItem.create(public_key, salt, value, sequence, signature))
    item = store.read(infohash)
    store.close()
"""

from __future__ import annotations

import sqlite3
import time
from dataclasses import dataclass
from pathlib import Path

import structlog

from mutabledht.db import SQLiteStore
from mutabledht.hashing import info_hash

logger = structlog.get_logger()

DB_FILENAME = "mutable_data.db"


@dataclass(frozen=True)
class StoredItem:
    """One cached mutable item."""

    infohash: str
    public_key: bytes
    salt: str
    value: bytes
    sequence: int
    signature: bytes = b""
    updated_at: float = 0.0

    @classmethod
    def create(
        cls,
        public_key: bytes,
        salt: str,
        value: bytes,
        sequence: int,
        signature: bytes = b"",
    ) -> StoredItem:
        return cls(
            infohash=info_hash(public_key, salt),
            public_key=public_key,
            salt=salt,
            value=value,
            sequence=sequence,
            signature=signature,
            updated_at=time.time(),
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "infohash": self.infohash,
            "public_key": self.public_key.hex(),
            "salt": self.salt,
            "sequence": self.sequence,
            "value": self.value.decode("utf-8", errors="replace"),
            "signature": self.signature.hex(),
        }


class MutableDataStore(SQLiteStore):
    """SQLite-backed CRUD store for mutable items.

    ``add`` fails on an existing infohash and ``update`` on a missing one;
    ``put`` upserts.
    """

    _SCHEMA = """
        CREATE TABLE IF NOT EXISTS mutable_data (
            infohash   TEXT PRIMARY KEY,
            public_key BLOB NOT NULL,
            salt       TEXT NOT NULL,
            value      BLOB NOT NULL,
            sequence   INTEGER NOT NULL,
            signature  BLOB NOT NULL DEFAULT x'',
            updated_at REAL NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_mutable_data_public_key
            ON mutable_data (public_key);
    """

    def __init__(self, data_dir: Path | str | None = None) -> None:
        super().__init__(Path(data_dir) / DB_FILENAME if data_dir else None)

    def add(self, item: StoredItem) -> bool:
        """Insert a new item.  Returns ``False`` if the infohash exists."""
        with self._write_lock:
            cur = self._conn.execute(
                """INSERT OR IGNORE INTO mutable_data
                   (infohash, public_key, salt, value, sequence, signature,
                    updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                _row(item),
            )
            self._conn.commit()
        return cur.rowcount == 1

    def update(self, item: StoredItem) -> bool:
        """Replace an existing item.  Returns ``False`` if it is missing."""
        with self._write_lock:
            cur = self._conn.execute(
                """UPDATE mutable_data
                   SET public_key = ?, salt = ?, value = ?, sequence = ?,
                       signature = ?, updated_at = ?
                   WHERE infohash = ?""",
                (*_row(item)[1:], item.infohash),
            )
            self._conn.commit()
        return cur.rowcount == 1

    def put(self, item: StoredItem) -> None:
        """Insert or replace *item*."""
        with self._write_lock:
            self._conn.execute(
                """INSERT OR REPLACE INTO mutable_data
                   (infohash, public_key, salt, value, sequence, signature,
                    updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                _row(item),
            )
            self._conn.commit()
        logger.debug("mutable_item_cached", salt=item.salt, sequence=item.sequence)

    def read(self, infohash: str) -> StoredItem | None:
        row = self._conn.execute(
            "SELECT * FROM mutable_data WHERE infohash = ?", (infohash,)
        ).fetchone()
        return _item(row) if row else None

    def erase(self, infohash: str) -> bool:
        with self._write_lock:
            cur = self._conn.execute(
                "DELETE FROM mutable_data WHERE infohash = ?", (infohash,)
            )
            self._conn.commit()
        return cur.rowcount == 1

    def list_all(self, public_key: bytes | None = None) -> list[StoredItem]:
        """All cached items, newest first, optionally for one owner."""
        if public_key is None:
            rows = self._conn.execute(
                "SELECT * FROM mutable_data ORDER BY updated_at DESC"
            ).fetchall()
        else:
            rows = self._conn.execute(
                """SELECT * FROM mutable_data WHERE public_key = ?
                   ORDER BY updated_at DESC""",
                (public_key,),
            ).fetchall()
        return [_item(r) for r in rows]

    def count(self) -> int:
        row = self._conn.execute("SELECT COUNT(*) FROM mutable_data").fetchone()
        return int(row[0]) if row else 0


def _row(item: StoredItem) -> tuple[object, ...]:
    return (
        item.infohash,
        item.public_key,
        item.salt,
        item.value,
        item.sequence,
        item.signature,
        item.updated_at or time.time(),
    )


def _item(row: sqlite3.Row) -> StoredItem:
    return StoredItem(
        infohash=row["infohash"],
        public_key=bytes(row["public_key"]),
        salt=row["salt"],
        value=bytes(row["value"]),
        sequence=row["sequence"],
        signature=bytes(row["signature"]),
        updated_at=row["updated_at"],
    )
