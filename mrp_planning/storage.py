"""SQLite-backed persistence helpers for requirement planning."""

from __future__ import annotations

import pickle
import sqlite3
from typing import Callable, Generic, Iterator, List, Optional, TypeVar

from .domain import (
    BomComponent,
    Product,
    ProductFacility,
    Requirement,
    Routing,
    ShiftCalendar,
)
from .repository import DuplicateRecordError, RecordNotFoundError

T = TypeVar("T")


class SQLiteRepository(Generic[T]):
    """Repository implementation that persists pickled records inside SQLite."""

    def __init__(self, connection: sqlite3.Connection, table: str) -> None:
        self._connection = connection
        self._table = table
        self._connection.execute(
            f"CREATE TABLE IF NOT EXISTS {table} ("  # nosec - static table names
            "seq INTEGER PRIMARY KEY AUTOINCREMENT, "
            "id TEXT UNIQUE NOT NULL, payload BLOB NOT NULL)"
        )
        self._connection.commit()

    def __contains__(self, item_id: object) -> bool:
        if not isinstance(item_id, str):
            return False
        cursor = self._connection.execute(
            f"SELECT 1 FROM {self._table} WHERE id = ? LIMIT 1", (item_id,)
        )
        return cursor.fetchone() is not None

    def __iter__(self) -> Iterator[T]:
        return iter(self.list())

    def __len__(self) -> int:
        cursor = self._connection.execute(f"SELECT COUNT(1) FROM {self._table}")
        value = cursor.fetchone()
        return int(value[0]) if value else 0

    # ------------------------------------------------------------------
    # CRUD operations
    # ------------------------------------------------------------------
    def add(self, item_id: str, item: T) -> None:
        if item_id in self:
            raise DuplicateRecordError(f"Record with id {item_id!r} already exists")
        self._connection.execute(
            f"INSERT INTO {self._table} (id, payload) VALUES (?, ?)",
            (item_id, pickle.dumps(item)),
        )
        self._connection.commit()

    def upsert(self, item_id: str, item: T) -> None:
        self._connection.execute(
            f"INSERT INTO {self._table} (id, payload) VALUES (?, ?) "
            "ON CONFLICT(id) DO UPDATE SET payload = excluded.payload",
            (item_id, pickle.dumps(item)),
        )
        self._connection.commit()

    def get(self, item_id: str) -> T:
        cursor = self._connection.execute(
            f"SELECT payload FROM {self._table} WHERE id = ?", (item_id,)
        )
        row = cursor.fetchone()
        if row is None:
            raise RecordNotFoundError(f"Record with id {item_id!r} not found")
        return pickle.loads(row[0])

    def remove(self, item_id: str) -> None:
        cursor = self._connection.execute(
            f"DELETE FROM {self._table} WHERE id = ?", (item_id,)
        )
        if cursor.rowcount == 0:
            raise RecordNotFoundError(f"Record with id {item_id!r} not found")
        self._connection.commit()

    def list(self) -> List[T]:
        # Insertion order keeps routing lookups deterministic.
        cursor = self._connection.execute(
            f"SELECT payload FROM {self._table} ORDER BY seq"
        )
        return [pickle.loads(row[0]) for row in cursor.fetchall()]

    def find(self, predicate: Callable[[T], bool]) -> List[T]:
        return [item for item in self.list() if predicate(item)]


class MRPDatabase:
    """Convenience facade bundling SQLite repositories for all aggregates."""

    def __init__(self, path: str) -> None:
        connection = sqlite3.connect(path, check_same_thread=False)
        connection.row_factory = sqlite3.Row
        self._connection = connection
        self.products = SQLiteRepository[Product](connection, "products")
        self.product_facilities = SQLiteRepository[ProductFacility](
            connection, "product_facilities"
        )
        self.shift_calendars = SQLiteRepository[ShiftCalendar](connection, "shift_calendars")
        self.routings = SQLiteRepository[Routing](connection, "routings")
        self.bom = SQLiteRepository[BomComponent](connection, "bom_components")
        self.requirements = SQLiteRepository[Requirement](connection, "requirements")

    @property
    def connection(self) -> sqlite3.Connection:
        return self._connection

    def close(self) -> None:
        self._connection.close()

    def __enter__(self) -> "MRPDatabase":
        return self

    def __exit__(
        self,
        exc_type: Optional[type[BaseException]],
        exc: Optional[BaseException],
        traceback: Optional[BaseException],
    ) -> None:
        self.close()


__all__ = ["SQLiteRepository", "MRPDatabase"]
