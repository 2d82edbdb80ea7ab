"""
Storage Backend Module

Document storage for loan records. Each table maps a record id to a JSON
document plus an integer version; ``compare_and_set`` replaces a document
only when the stored version still matches, which is what optimistic
concurrency in the repository relies on.

Backends: in-memory (tests, single process) and SQLite (persistence).
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union
from datetime import datetime, timezone
from dataclasses import dataclass
from pathlib import Path
from contextlib import contextmanager
import sqlite3
import json
import threading


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime


def _clone(document: Dict[str, Any]) -> Dict[str, Any]:
    # JSON round trip: detaches callers from stored state and normalizes types
    return json.loads(json.dumps(document, default=str))


def _matches(document: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    return all(key in document and document[key] == value for key, value in filters.items())


class StorageInterface(ABC):
    """Abstract document store"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert or overwrite a document; its version is taken from data['version']"""

    @abstractmethod
    def compare_and_set(self, table: str, record_id: str, data: Dict[str, Any],
                        expected_version: int) -> bool:
        """
        Overwrite a document only if its stored version equals expected_version

        Returns:
            True if written; False if the record is missing or its version moved
        """

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Document by id, or None"""

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """All documents in insertion order"""

    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        """Remove a document; False if it did not exist"""

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Documents whose top-level keys equal every filter value"""

    @abstractmethod
    def count(self, table: str) -> int:
        pass

    @abstractmethod
    def close(self) -> None:
        pass

    def exists(self, table: str, record_id: str) -> bool:
        return self.load(table, record_id) is not None

    def begin_transaction(self) -> None:
        pass

    def commit(self) -> None:
        pass

    def rollback(self) -> None:
        pass

    @contextmanager
    def atomic(self):
        """
        Group several writes so they all apply or none do

        The backend lock is held for the whole block, so other threads see
        either the state before it or the state after it.
        """
        self.begin_transaction()
        try:
            yield self
        except Exception:
            self.rollback()
            raise
        self.commit()


class InMemoryStorage(StorageInterface):
    """Dictionary-backed store for tests and single-process use"""

    def __init__(self):
        self._tables: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._lock = threading.RLock()
        self._before_transaction: Optional[Dict[str, Dict[str, Dict[str, Any]]]] = None

    def _table(self, table: str) -> Dict[str, Dict[str, Any]]:
        return self._tables.setdefault(table, {})

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._table(table)[record_id] = _clone(data)

    def compare_and_set(self, table: str, record_id: str, data: Dict[str, Any],
                        expected_version: int) -> bool:
        with self._lock:
            current = self._table(table).get(record_id)
            if current is None or current.get('version', 0) != expected_version:
                return False
            self._table(table)[record_id] = _clone(data)
            return True

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            document = self._table(table).get(record_id)
            return _clone(document) if document is not None else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        with self._lock:
            return [_clone(document) for document in self._table(table).values()]

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            return self._table(table).pop(record_id, None) is not None

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            return record_id in self._table(table)

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        with self._lock:
            return [
                _clone(document)
                for document in self._table(table).values()
                if _matches(document, filters)
            ]

    def count(self, table: str) -> int:
        with self._lock:
            return len(self._table(table))

    def begin_transaction(self) -> None:
        self._lock.acquire()
        self._before_transaction = _clone(self._tables)

    def commit(self) -> None:
        self._before_transaction = None
        self._lock.release()

    def rollback(self) -> None:
        if self._before_transaction is not None:
            self._tables = self._before_transaction
            self._before_transaction = None
        self._lock.release()

    def close(self) -> None:
        pass


class SQLiteStorage(StorageInterface):
    """
    SQLite document store

    One table per record type with columns (id, data, version, created_at,
    updated_at). The version column makes ``compare_and_set`` a single
    conditional UPDATE, so it also holds across processes sharing a file.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level='DEFERRED')
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._in_transaction = False
        self._known_tables = set()

        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()

    def _ensure_table(self, table: str) -> None:
        if table in self._known_tables:
            return
        self._connection.execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                id TEXT PRIMARY KEY,
                data TEXT NOT NULL,
                version INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        # Cache only once committed; a rolled-back transaction may drop the table
        if not self._in_transaction:
            self._connection.commit()
            self._known_tables.add(table)

    def _write_done(self) -> None:
        if not self._in_transaction:
            self._connection.commit()

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            self._connection.execute(f"""
                INSERT INTO {table} (id, data, version, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    data = excluded.data,
                    version = excluded.version,
                    updated_at = excluded.updated_at
            """, (record_id, json.dumps(data, default=str), data.get('version', 0), now, now))
            self._write_done()

    def compare_and_set(self, table: str, record_id: str, data: Dict[str, Any],
                        expected_version: int) -> bool:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                UPDATE {table}
                SET data = ?, version = ?, updated_at = ?
                WHERE id = ? AND version = ?
            """, (
                json.dumps(data, default=str),
                data.get('version', 0),
                datetime.now(timezone.utc).isoformat(),
                record_id,
                expected_version,
            ))
            self._write_done()
            return cursor.rowcount == 1

    def _select(self, table: str, where: str = "", params: tuple = ()) -> List[Dict[str, Any]]:
        with self._lock:
            self._ensure_table(table)
            rows = self._connection.execute(
                f"SELECT data FROM {table} {where} ORDER BY created_at, rowid", params
            ).fetchall()
            return [json.loads(row['data']) for row in rows]

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        found = self._select(table, "WHERE id = ?", (record_id,))
        return found[0] if found else None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        return self._select(table)

    def delete(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"DELETE FROM {table} WHERE id = ?", (record_id,))
            self._write_done()
            return cursor.rowcount > 0

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        return [document for document in self._select(table) if _matches(document, filters)]

    def count(self, table: str) -> int:
        with self._lock:
            self._ensure_table(table)
            return self._connection.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]

    def begin_transaction(self) -> None:
        self._lock.acquire()
        self._in_transaction = True

    def commit(self) -> None:
        try:
            self._connection.commit()
        finally:
            self._in_transaction = False
            self._lock.release()

    def rollback(self) -> None:
        try:
            self._connection.rollback()
        finally:
            self._in_transaction = False
            self._lock.release()

    def close(self) -> None:
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str) -> StorageInterface:
    """
    Build a storage backend from a URL

    ``memory://`` gives InMemoryStorage; ``sqlite:///path`` (or
    ``sqlite:///:memory:``) gives SQLiteStorage.
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite:///"):
        return SQLiteStorage(database_url[len("sqlite:///"):] or ":memory:")
    raise ValueError(f"Unsupported database URL: {database_url}")
