"""A bucketed, ordered key-value store kept in a SQLite file."""

from __future__ import annotations

import sqlite3
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

_MEMORY = ":memory:"


def _bucket_name(name: bytes | str) -> bytes:
    return name.encode() if isinstance(name, str) else bytes(name)


class KVBackend:
    """Key-value storage grouped in named buckets, with keys kept in byte order."""

    def __init__(self, path: str | Path) -> None:
        self._path = str(path)
        if self._path != _MEMORY:
            Path(self._path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(
            self._path, isolation_level=None, check_same_thread=False
        )
        self._lock = threading.RLock()
        self._depth = 0
        self._closed = False
        self._conn.execute("CREATE TABLE IF NOT EXISTS buckets (name BLOB PRIMARY KEY)")
        self._conn.execute(
            "CREATE TABLE IF NOT EXISTS entries ("
            "bucket BLOB NOT NULL, key BLOB NOT NULL, value BLOB NOT NULL, "
            "PRIMARY KEY (bucket, key))"
        )

    def __enter__(self) -> KVBackend:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def _ensure_open(self) -> None:
        if self._closed:
            raise RuntimeError("the key-value backend is closed")

    def _require_bucket(self, name: bytes) -> None:
        row = self._conn.execute("SELECT 1 FROM buckets WHERE name = ?", (name,)).fetchone()
        if row is None:
            raise KeyError(f"bucket {name!r} does not exist")

    def create_bucket(self, name: bytes | str) -> None:
        """Create a bucket if it does not exist yet."""
        with self._lock:
            self._ensure_open()
            self._conn.execute(
                "INSERT OR IGNORE INTO buckets (name) VALUES (?)", (_bucket_name(name),)
            )

    def has_bucket(self, name: bytes | str) -> bool:
        with self._lock:
            self._ensure_open()
            row = self._conn.execute(
                "SELECT 1 FROM buckets WHERE name = ?", (_bucket_name(name),)
            ).fetchone()
        return row is not None

    def get(self, bucket: bytes | str, key: bytes) -> bytes | None:
        """Return the value stored under key, or None."""
        name = _bucket_name(bucket)
        with self._lock:
            self._ensure_open()
            self._require_bucket(name)
            row = self._conn.execute(
                "SELECT value FROM entries WHERE bucket = ? AND key = ?", (name, bytes(key))
            ).fetchone()
        return None if row is None else bytes(row[0])

    def put(self, bucket: bytes | str, key: bytes, value: bytes) -> None:
        name = _bucket_name(bucket)
        with self._lock:
            self._ensure_open()
            self._require_bucket(name)
            self._conn.execute(
                "INSERT OR REPLACE INTO entries (bucket, key, value) VALUES (?, ?, ?)",
                (name, bytes(key), bytes(value)),
            )

    def delete(self, bucket: bytes | str, key: bytes) -> bool:
        """Delete a key; return whether anything was removed."""
        name = _bucket_name(bucket)
        with self._lock:
            self._ensure_open()
            self._require_bucket(name)
            cursor = self._conn.execute(
                "DELETE FROM entries WHERE bucket = ? AND key = ?", (name, bytes(key))
            )
        return cursor.rowcount > 0

    def items(self, bucket: bytes | str, prefix: bytes = b"") -> list[tuple[bytes, bytes]]:
        """Return the entries whose keys start with prefix, in byte order."""
        name = _bucket_name(bucket)
        prefix = bytes(prefix)
        result: list[tuple[bytes, bytes]] = []
        with self._lock:
            self._ensure_open()
            self._require_bucket(name)
            rows = self._conn.execute(
                "SELECT key, value FROM entries WHERE bucket = ? AND key >= ? ORDER BY key",
                (name, prefix),
            )
            for key, value in rows:
                key = bytes(key)
                if not key.startswith(prefix):
                    break
                result.append((key, bytes(value)))
        return result

    @contextmanager
    def transaction(self) -> Iterator[KVBackend]:
        """Group writes so that they are applied together or not at all."""
        with self._lock:
            self._ensure_open()
            depth = self._depth
            savepoint = f"sp_{depth}"
            if depth == 0:
                self._conn.execute("BEGIN IMMEDIATE")
            else:
                self._conn.execute(f"SAVEPOINT {savepoint}")
            self._depth += 1
            try:
                yield self
            except BaseException:
                self._depth -= 1
                if depth == 0:
                    self._conn.execute("ROLLBACK")
                else:
                    self._conn.execute(f"ROLLBACK TO {savepoint}")
                    self._conn.execute(f"RELEASE {savepoint}")
                raise
            else:
                self._depth -= 1
                if depth == 0:
                    self._conn.execute("COMMIT")
                else:
                    self._conn.execute(f"RELEASE {savepoint}")

    def close(self) -> None:
        with self._lock:
            if not self._closed:
                self._conn.close()
                self._closed = True