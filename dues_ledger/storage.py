"""
Storage Backend Module

Provides abstract storage interface and implementations for in-memory (testing)
and SQLite (persistence). All monetary values stored as Decimal strings.

Besides plain CRUD, the interface offers the primitives the ledger relies on
for consistency: declared unique constraints, all-or-nothing batch inserts,
compare-and-swap updates and atomic sequences.
"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Any, Union, Sequence, Tuple
from decimal import Decimal
from datetime import datetime, date, timezone
from enum import Enum
import sqlite3
import json
import threading
from dataclasses import dataclass, asdict
from pathlib import Path
from contextlib import contextmanager

from .errors import DuplicateKeyError


@dataclass
class StorageRecord:
    """Base class for all stored records"""
    id: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for storage"""
        result = asdict(self)
        for key, value in result.items():
            if isinstance(value, datetime):
                result[key] = value.isoformat()
            elif isinstance(value, date):
                result[key] = value.isoformat()
            elif isinstance(value, Decimal):
                result[key] = str(value)
            elif isinstance(value, Enum):
                result[key] = value.value
        return result


def _json_copy(data: Dict[str, Any]) -> Dict[str, Any]:
    return json.loads(json.dumps(data, default=str))


def _matches(record: Dict[str, Any], filters: Dict[str, Any]) -> bool:
    for key, value in filters.items():
        if key not in record or record[key] != value:
            return False
    return True


class StorageInterface(ABC):
    """Abstract interface for storage backends"""

    @abstractmethod
    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Insert or update a record"""
        pass

    @abstractmethod
    def insert_many(self, table: str, records: Sequence[Tuple[str, Dict[str, Any]]]) -> None:
        """
        Insert new records, all or nothing.

        Raises:
            DuplicateKeyError: If any id or declared unique key already exists.
                Nothing from the batch is written in that case.
        """
        pass

    @abstractmethod
    def update_if(self, table: str, record_id: str, expected: Dict[str, Any],
                  data: Dict[str, Any]) -> bool:
        """
        Replace a record only if its current values match ``expected``.

        Returns:
            True if the record was replaced, False if it was missing or stale
        """
        pass

    @abstractmethod
    def next_sequence(self, name: str) -> int:
        """Atomically increment and return the named counter (starts at 1)"""
        pass

    @abstractmethod
    def ensure_unique(self, table: str, fields: Sequence[str]) -> None:
        """Declare that the combination of ``fields`` is unique in ``table``"""
        pass

    @abstractmethod
    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from storage"""
        pass

    @abstractmethod
    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        pass

    @abstractmethod
    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from storage"""
        pass

    @abstractmethod
    def delete_if(self, table: str, record_id: str, expected: Dict[str, Any]) -> bool:
        """Delete a record only if its current values match ``expected``"""
        pass

    @abstractmethod
    def delete_many(self, table: str, record_ids: Sequence[str]) -> int:
        """Delete records by id, returning how many were removed"""
        pass

    @abstractmethod
    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        pass

    @abstractmethod
    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        pass

    @abstractmethod
    def count(self, table: str) -> int:
        """Count records in table"""
        pass

    @abstractmethod
    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close storage connection"""
        pass

    def begin_transaction(self) -> None:
        """Start a database transaction (default no-op)"""
        pass

    def commit(self) -> None:
        """Commit current transaction (default no-op)"""
        pass

    def rollback(self) -> None:
        """Rollback current transaction (default no-op)"""
        pass

    @contextmanager
    def atomic(self):
        """Context manager for atomic operations"""
        self.begin_transaction()
        try:
            yield
            self.commit()
        except Exception:
            self.rollback()
            raise


class InMemoryStorage(StorageInterface):
    """In-memory storage implementation for testing"""

    def __init__(self):
        self._data: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self._unique: Dict[str, List[Tuple[str, ...]]] = {}
        self._sequences: Dict[str, int] = {}
        self._lock = threading.RLock()

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists"""
        if table not in self._data:
            self._data[table] = {}

    def _unique_key(self, fields: Tuple[str, ...], record: Dict[str, Any]) -> Tuple:
        return tuple(record.get(f) for f in fields)

    def _check_unique(self, table: str, record_id: str, record: Dict[str, Any]) -> None:
        """Raise DuplicateKeyError if record collides with another row"""
        for fields in self._unique.get(table, []):
            key = self._unique_key(fields, record)
            for other_id, other in self._data[table].items():
                if other_id != record_id and self._unique_key(fields, other) == key:
                    raise DuplicateKeyError(table, fields, key)

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Save a record to memory"""
        with self._lock:
            self._ensure_table(table)
            record = _json_copy(data)
            self._check_unique(table, record_id, record)
            self._data[table][record_id] = record

    def insert_many(self, table: str, records: Sequence[Tuple[str, Dict[str, Any]]]) -> None:
        """Insert a batch after checking every key against existing rows and each other"""
        with self._lock:
            self._ensure_table(table)
            constraints = self._unique.get(table, [])
            seen = {
                fields: {self._unique_key(fields, row) for row in self._data[table].values()}
                for fields in constraints
            }
            pending: Dict[str, Dict[str, Any]] = {}
            for record_id, data in records:
                if record_id in self._data[table] or record_id in pending:
                    raise DuplicateKeyError(table, ("id",), (record_id,))
                record = _json_copy(data)
                for fields in constraints:
                    key = self._unique_key(fields, record)
                    if key in seen[fields]:
                        raise DuplicateKeyError(table, fields, key)
                    seen[fields].add(key)
                pending[record_id] = record
            self._data[table].update(pending)

    def update_if(self, table: str, record_id: str, expected: Dict[str, Any],
                  data: Dict[str, Any]) -> bool:
        """Compare-and-swap under the storage lock"""
        with self._lock:
            self._ensure_table(table)
            current = self._data[table].get(record_id)
            if current is None or not _matches(current, _json_copy(expected)):
                return False
            record = _json_copy(data)
            self._check_unique(table, record_id, record)
            self._data[table][record_id] = record
            return True

    def next_sequence(self, name: str) -> int:
        with self._lock:
            value = self._sequences.get(name, 0) + 1
            self._sequences[name] = value
            return value

    def ensure_unique(self, table: str, fields: Sequence[str]) -> None:
        with self._lock:
            self._ensure_table(table)
            constraint = tuple(fields)
            constraints = self._unique.setdefault(table, [])
            if constraint not in constraints:
                constraints.append(constraint)

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from memory"""
        with self._lock:
            self._ensure_table(table)
            record = self._data[table].get(record_id)
            if record:
                # Deep copy to prevent external mutation
                return _json_copy(record)
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            return [_json_copy(record) for record in self._data[table].values()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from memory"""
        with self._lock:
            self._ensure_table(table)
            if record_id in self._data[table]:
                del self._data[table][record_id]
                return True
            return False

    def delete_if(self, table: str, record_id: str, expected: Dict[str, Any]) -> bool:
        with self._lock:
            self._ensure_table(table)
            current = self._data[table].get(record_id)
            if current is None or not _matches(current, _json_copy(expected)):
                return False
            del self._data[table][record_id]
            return True

    def delete_many(self, table: str, record_ids: Sequence[str]) -> int:
        with self._lock:
            self._ensure_table(table)
            removed = 0
            for record_id in record_ids:
                if self._data[table].pop(record_id, None) is not None:
                    removed += 1
            return removed

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            return record_id in self._data[table]

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters"""
        with self._lock:
            self._ensure_table(table)
            return [
                _json_copy(record) for record in self._data[table].values()
                if _matches(record, filters)
            ]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            return len(self._data[table])

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._data[table] = {}

    def close(self) -> None:
        """Close storage (no-op for in-memory)"""
        pass


class SQLiteStorage(StorageInterface):
    """SQLite storage implementation for persistence"""

    def __init__(self, db_path: Union[str, Path] = ":memory:"):
        self.db_path = str(db_path)
        self._connection = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level='DEFERRED')
        self._connection.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._in_transaction = False
        self._known_tables = set()

        # Enable WAL mode for better concurrent access
        if self.db_path != ":memory:":
            with self._lock:
                self._connection.execute("PRAGMA journal_mode = WAL")
                self._connection.execute("PRAGMA synchronous = NORMAL")
                self._connection.commit()

        with self._lock:
            self._connection.execute("""
                CREATE TABLE IF NOT EXISTS _sequences (
                    name TEXT PRIMARY KEY,
                    value INTEGER NOT NULL
                )
            """)
            self._connection.commit()

    def _ensure_table(self, table: str) -> None:
        """Ensure table exists with proper schema"""
        if table in self._known_tables:
            return
        with self._lock:
            self._connection.execute(f"""
                CREATE TABLE IF NOT EXISTS {table} (
                    id TEXT PRIMARY KEY,
                    data TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            self._connection.execute(f"""
                CREATE INDEX IF NOT EXISTS idx_{table}_created_at
                ON {table}(created_at)
            """)
            self._connection.commit()
            self._known_tables.add(table)

    def _commit_unless_in_transaction(self) -> None:
        if not self._in_transaction:
            self._connection.commit()

    def save(self, table: str, record_id: str, data: Dict[str, Any]) -> None:
        """Upsert a record; unique index violations surface as DuplicateKeyError"""
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            data_json = json.dumps(data, default=str)
            try:
                # ON CONFLICT(id) keeps other unique indexes enforced,
                # unlike INSERT OR REPLACE which would delete the colliding row
                self._connection.execute(f"""
                    INSERT INTO {table} (id, data, created_at, updated_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(id) DO UPDATE SET
                        data = excluded.data,
                        updated_at = excluded.updated_at
                """, (record_id, data_json, now, now))
            except sqlite3.IntegrityError as e:
                self._connection.rollback()
                raise DuplicateKeyError(table, (), (record_id,)) from e
            self._commit_unless_in_transaction()

    def insert_many(self, table: str, records: Sequence[Tuple[str, Dict[str, Any]]]) -> None:
        """Insert a batch inside one SQLite transaction"""
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            rows = [
                (record_id, json.dumps(data, default=str), now, now)
                for record_id, data in records
            ]
            try:
                self._connection.executemany(f"""
                    INSERT INTO {table} (id, data, created_at, updated_at)
                    VALUES (?, ?, ?, ?)
                """, rows)
            except sqlite3.IntegrityError as e:
                self._connection.rollback()
                raise DuplicateKeyError(table, (), ()) from e
            self._commit_unless_in_transaction()

    def update_if(self, table: str, record_id: str, expected: Dict[str, Any],
                  data: Dict[str, Any]) -> bool:
        with self._lock:
            self._ensure_table(table)
            now = datetime.now(timezone.utc).isoformat()
            conditions = ["id = ?"]
            params: List[Any] = [json.dumps(data, default=str), now, record_id]
            for key, value in expected.items():
                conditions.append(f"json_extract(data, '$.{key}') IS ?")
                params.append(value)
            try:
                cursor = self._connection.execute(f"""
                    UPDATE {table} SET data = ?, updated_at = ?
                    WHERE {" AND ".join(conditions)}
                """, params)
            except sqlite3.IntegrityError as e:
                self._connection.rollback()
                raise DuplicateKeyError(table, (), (record_id,)) from e
            self._commit_unless_in_transaction()
            return cursor.rowcount == 1

    def next_sequence(self, name: str) -> int:
        with self._lock:
            self._connection.execute("""
                INSERT INTO _sequences (name, value) VALUES (?, 1)
                ON CONFLICT(name) DO UPDATE SET value = value + 1
            """, (name,))
            row = self._connection.execute(
                "SELECT value FROM _sequences WHERE name = ?", (name,)
            ).fetchone()
            self._commit_unless_in_transaction()
            return row['value']

    def ensure_unique(self, table: str, fields: Sequence[str]) -> None:
        """Create a unique expression index over the JSON fields"""
        with self._lock:
            self._ensure_table(table)
            index_name = f"ux_{table}_{'_'.join(fields)}"
            columns = ", ".join(f"json_extract(data, '$.{f}')" for f in fields)
            self._connection.execute(
                f"CREATE UNIQUE INDEX IF NOT EXISTS {index_name} ON {table}({columns})"
            )
            self._connection.commit()

    def load(self, table: str, record_id: str) -> Optional[Dict[str, Any]]:
        """Load a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} WHERE id = ?
            """, (record_id,))
            row = cursor.fetchone()
            if row:
                return json.loads(row['data'])
            return None

    def load_all(self, table: str) -> List[Dict[str, Any]]:
        """Load all records from a table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} ORDER BY created_at
            """)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def delete(self, table: str, record_id: str) -> bool:
        """Delete a record from SQLite"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                DELETE FROM {table} WHERE id = ?
            """, (record_id,))
            self._commit_unless_in_transaction()
            return cursor.rowcount > 0

    def delete_if(self, table: str, record_id: str, expected: Dict[str, Any]) -> bool:
        with self._lock:
            self._ensure_table(table)
            conditions = ["id = ?"]
            params: List[Any] = [record_id]
            for key, value in expected.items():
                conditions.append(f"json_extract(data, '$.{key}') IS ?")
                params.append(value)
            cursor = self._connection.execute(
                f"DELETE FROM {table} WHERE {' AND '.join(conditions)}", params
            )
            self._commit_unless_in_transaction()
            return cursor.rowcount == 1

    def delete_many(self, table: str, record_ids: Sequence[str]) -> int:
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.executemany(f"""
                DELETE FROM {table} WHERE id = ?
            """, [(record_id,) for record_id in record_ids])
            self._commit_unless_in_transaction()
            return cursor.rowcount

    def exists(self, table: str, record_id: str) -> bool:
        """Check if a record exists"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT 1 FROM {table} WHERE id = ? LIMIT 1
            """, (record_id,))
            return cursor.fetchone() is not None

    def find(self, table: str, filters: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Find records matching filters using json_extract"""
        with self._lock:
            self._ensure_table(table)
            conditions = []
            params: List[Any] = []
            for key, value in filters.items():
                conditions.append(f"json_extract(data, '$.{key}') IS ?")
                params.append(value)
            where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ""
            cursor = self._connection.execute(f"""
                SELECT data FROM {table} {where_clause} ORDER BY created_at
            """, params)
            return [json.loads(row['data']) for row in cursor.fetchall()]

    def count(self, table: str) -> int:
        """Count records in table"""
        with self._lock:
            self._ensure_table(table)
            cursor = self._connection.execute(f"""
                SELECT COUNT(*) as count FROM {table}
            """)
            return cursor.fetchone()['count']

    def clear_table(self, table: str) -> None:
        """Clear all records from a table"""
        with self._lock:
            self._ensure_table(table)
            self._connection.execute(f"DELETE FROM {table}")
            self._commit_unless_in_transaction()

    def begin_transaction(self) -> None:
        """Start a database transaction"""
        with self._lock:
            if not self._in_transaction:
                # isolation_level='DEFERRED' starts the transaction on first write
                self._in_transaction = True

    def commit(self) -> None:
        """Commit current transaction"""
        with self._lock:
            if self._in_transaction:
                self._connection.commit()
                self._in_transaction = False

    def rollback(self) -> None:
        """Rollback current transaction"""
        with self._lock:
            if self._in_transaction:
                self._connection.rollback()
                self._in_transaction = False

    def close(self) -> None:
        """Close SQLite connection"""
        with self._lock:
            if self._connection:
                self._connection.close()
                self._connection = None


def create_storage(database_url: str) -> StorageInterface:
    """
    Build a storage backend from a URL.

    ``memory://`` gives InMemoryStorage, ``sqlite:///path`` (or
    ``sqlite:///:memory:``) gives SQLiteStorage.
    """
    if database_url.startswith("memory://"):
        return InMemoryStorage()
    if database_url.startswith("sqlite:///"):
        return SQLiteStorage(database_url[len("sqlite:///"):] or ":memory:")
    raise ValueError(f"Unsupported database URL: {database_url}")
