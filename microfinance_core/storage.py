"""
Storage Backend Module

Key/value tables of JSON documents with an in-memory backend (tests) and a
SQLite backend (persistence). Money is stored as Decimal strings. Records are
never deleted: loans, savings accounts and ledger entries are
append-or-update only, and every backend returns a table's records in first
insertion order, which the ledger relies on to replay its balance chain.
"""

from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Dict, List, Optional, Any, Union
from decimal import Decimal
from datetime import datetime, timezone
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager


Record = Dict[str, Any]


@dataclass
class StorageRecord:
    """Base class for loans and savings accounts"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Record:
        result = asdict(self)
        result['created_at'] = self.created_at.isoformat()
        result['updated_at'] = self.updated_at.isoformat()
        for key, value in result.items():
            if isinstance(value, Decimal):
                result[key] = str(value)
        return result


def _copy(record: Record) -> Record:
    """Detach a record from the caller by a JSON round trip"""
    return json.loads(json.dumps(record, default=str))


def _matches(record: Record, filters: Record) -> bool:
    return all(key in record and record[key] == value for key, value in filters.items())


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Record) -> None:
        """Insert or replace a record; replacing keeps its original position"""

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Record]:
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Record]:
        pass

    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        pass

    @abstractmethod
    def find(self, table: str, filters: Record) -> List[Record]:
        """Records whose top-level fields equal every value in filters"""

    @abstractmethod
    def count(self, table: str) -> int:
        pass

    @abstractmethod
    def close(self) -> None:
        pass

    @contextmanager
    def atomic(self):
        """
        Group writes so they land together or not at all

        The base implementation only forwards to the body; backends with
        real transactions override it.
        """
        yield


class InMemoryStorage(StorageInterface):
    """
    Dictionary-backed storage for tests

    atomic() holds the storage lock for the whole block and keeps an undo
    log of the records it overwrote, restoring them if the block raises.
    Nested blocks join the outermost one.
    """

    def __init__(self):
        self._tables: Dict[str, Dict[str, Record]] = defaultdict(dict)
        self._lock = threading.RLock()
        self._undo: Optional[List[tuple]] = None

    def save(self, table: str, record_id: str, data: Record) -> None:
        with self._lock:
            if self._undo is not None:
                self._undo.append((table, record_id, self._tables[table].get(record_id)))
            self._tables[table][record_id] = _copy(data)

    def load(self, table: str, record_id: str) -> Optional[Record]:
        with self._lock:
            record = self._tables[table].get(record_id)
            return _copy(record) if record is not None else None

    def load_all(self, table: str) -> List[Record]:
        with self._lock:
            return [_copy(record) for record in self._tables[table].values()]

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            return record_id in self._tables[table]

    def find(self, table: str, filters: Record) -> List[Record]:
        with self._lock:
            return [_copy(r) for r in self._tables[table].values() if _matches(r, filters)]

    def count(self, table: str) -> int:
        with self._lock:
            return len(self._tables[table])

    @contextmanager
    def atomic(self):
        with self._lock:
            if self._undo is not None:
                yield
                return
            self._undo = []
            try:
                yield
            except Exception:
                for table, record_id, previous in reversed(self._undo):
                    if previous is None:
                        del self._tables[table][record_id]
                    else:
                        self._tables[table][record_id] = previous
                raise
            finally:
                self._undo = None

    def close(self) -> None:
        pass

    def corrupt(self, table: str, record_id: str, changes: Record) -> None:
        """Overwrite fields of a stored record bypassing all checks (test helper)"""
        with self._lock:
            self._tables[table][record_id].update(changes)


class SQLiteStorage(StorageInterface):
    """
    SQLite storage for persistence

    One connection is shared by all threads. atomic() holds the connection
    lock for the whole block, so writes from other threads cannot slip into
    (or be rolled back with) an open transaction. Nested blocks join the
    outermost transaction.
    """

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level='DEFERRED')
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._depth = 0
        self._tables = set()

        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()

    def _ensure_table(self, table: str) -> None:
        if table in self._tables:
            return
        # seq keeps first-insertion order across updates
        self._connection.execute(f"""
            CREATE TABLE IF NOT EXISTS {table} (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT UNIQUE NOT NULL,
                data TEXT NOT NULL,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)
        self._tables.add(table)

    def _autocommit(self) -> None:
        if self._depth == 0:
            self._connection.commit()

    def _select(self, table: str, where: str = "", params=()) -> List[Record]:
        self._ensure_table(table)
        cursor = self._connection.execute(
            f"SELECT data FROM {table} {where} ORDER BY seq", params
        )
        return [json.loads(row['data']) for row in cursor.fetchall()]

    def save(self, table: str, record_id: str, data: Record) -> None:
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            self._connection.execute(f"""
                INSERT INTO {table} (id, data, created_at, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    data = excluded.data,
                    updated_at = excluded.updated_at
            """, (record_id, json.dumps(data, default=str), now, now))
            self._autocommit()

    def load(self, table: str, record_id: str) -> Optional[Record]:
        with self._lock:
            rows = self._select(table, "WHERE id = ?", (record_id,))
            return rows[0] if rows else None

    def load_all(self, table: str) -> List[Record]:
        with self._lock:
            return self._select(table)

    def exists(self, table: str, record_id: str) -> bool:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(
                f"SELECT 1 FROM {table} WHERE id = ? LIMIT 1", (record_id,)
            )
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Record) -> List[Record]:
        conditions = []
        params = []
        for key, value in filters.items():
            conditions.append("json_extract(data, ?) = ?")
            params.extend([f"$.{key}", value])
        where = f"WHERE {' AND '.join(conditions)}" if conditions else ""
        with self._lock:
            return self._select(table, where, params)

    def count(self, table: str) -> int:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"SELECT COUNT(*) AS count FROM {table}")
            return cursor.fetchone()['count']

    @contextmanager
    def atomic(self):
        with self._lock:
            self._depth += 1
            try:
                yield
            except Exception:
                self._depth -= 1
                if self._depth == 0:
                    self._connection.rollback()
                    # a CREATE TABLE inside the block was rolled back too
                    self._tables.clear()
                raise
            self._depth -= 1
            self._autocommit()

    def close(self) -> None:
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str) -> StorageInterface:
    """
    Build a storage backend from a database URL

    "memory" gives InMemoryStorage; "sqlite:///path.db" (or "sqlite://" for
    an in-memory SQLite database) gives SQLiteStorage.
    """
    if database_url in ("", "memory"):
        return InMemoryStorage()
    if database_url.startswith("sqlite://"):
        path = database_url[len("sqlite://"):]
        if path.startswith("/"):
            path = path[1:]
        return SQLiteStorage(path or ":memory:")
    raise ValueError(f"Unsupported database URL: {database_url}")
