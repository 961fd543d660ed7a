"""Indexed in-memory table engine backing the Trolley repositories.

Each table keeps JSON-safe records keyed by id and maintains secondary indexes
for the fields declared in ``SCHEMA``. Queries resolve candidates from an
index (``where(field).equals(value)`` / ``any_of(values)``) and may refine them
with an in-memory predicate (``and_``), mirroring an indexed key-value store.

The API is async so callers are written against a non-blocking storage
boundary even though this implementation never yields. Results are returned in
insertion order and as copies, so callers cannot mutate table state.

The whole engine serializes to a plain dict (``export_state``) which the
storage layer persists through Home Assistant's Store.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Hashable, Iterable, Mapping
from copy import deepcopy
from typing import Any, Final

from .const import DOMAIN
from .exceptions import StorageError

LOGGER = logging.getLogger(__name__)

Record = dict[str, Any]
Predicate = Callable[[Record], bool]

TABLE_USERS: Final[str] = "users"
TABLE_LISTS: Final[str] = "shopping_lists"
TABLE_LIST_OWNERS: Final[str] = "list_owners"
TABLE_ITEMS: Final[str] = "list_items"
TABLE_SESSIONS: Final[str] = "shopping_sessions"
TABLE_SESSION_LISTS: Final[str] = "session_lists"
TABLE_SAGAS: Final[str] = "session_sagas"

# Secondary indexes per table; the primary key ``id`` is always indexed
SCHEMA: Final[dict[str, tuple[str, ...]]] = {
    TABLE_USERS: ("username", "email", "deleted_at", "last_modified_at"),
    TABLE_LISTS: (
        "name",
        "created_by",
        "community_id",
        "is_shared",
        "is_locked",
        "deleted_at",
        "last_modified_at",
    ),
    TABLE_LIST_OWNERS: ("list_id", "user_id", "deleted_at", "last_modified_at"),
    TABLE_ITEMS: (
        "list_id",
        "name",
        "is_purchased",
        "purchased_by",
        "deleted_at",
        "last_modified_at",
    ),
    TABLE_SESSIONS: ("user_id", "status", "deleted_at", "last_modified_at"),
    TABLE_SESSION_LISTS: ("session_id", "list_id", "deleted_at", "last_modified_at"),
    TABLE_SAGAS: ("session_id", "status", "deleted_at", "last_modified_at"),
}


class Table:
    """A single table: primary store, insertion sequence and field indexes."""

    def __init__(self, name: str, indexes: Iterable[str] = ()) -> None:
        self.name = name
        self._rows: dict[str, Record] = {}
        self._seq_by_id: dict[str, int] = {}
        self._next_seq = 0
        self._indexes: dict[str, dict[Hashable, set[str]]] = {field: {} for field in indexes}
        self.generation = 0

    # -----------------------------
    # Internal helpers — indexing
    # -----------------------------

    @property
    def indexed_fields(self) -> frozenset[str]:
        return frozenset(self._indexes)

    def _index_row(self, row: Record) -> None:
        row_id = row["id"]
        for field, bucket in self._indexes.items():
            key = row.get(field)
            if isinstance(key, Hashable):
                bucket.setdefault(key, set()).add(row_id)

    def _unindex_row(self, row: Record) -> None:
        row_id = row["id"]
        for field, bucket in self._indexes.items():
            key = row.get(field)
            if not isinstance(key, Hashable):
                continue
            ids = bucket.get(key)
            if not ids:
                continue
            ids.discard(row_id)
            if not ids:
                bucket.pop(key, None)

    def _store(self, row: Record) -> None:
        row_id = row.get("id")
        if not isinstance(row_id, str) or not row_id:
            raise StorageError(f"{self.name}: record id must be a non-empty string")
        current = self._rows.get(row_id)
        if current is not None:
            self._unindex_row(current)
        else:
            self._seq_by_id[row_id] = self._next_seq
            self._next_seq += 1
        stored = deepcopy(row)
        self._rows[row_id] = stored
        self._index_row(stored)
        self.generation += 1

    def _ids_for(self, field: str, values: Iterable[Any]) -> set[str]:
        if field == "id":
            return {v for v in values if isinstance(v, str) and v in self._rows}
        bucket = self._indexes.get(field)
        if bucket is None:
            raise StorageError(f"{self.name}: field '{field}' is not indexed")
        result: set[str] = set()
        for value in values:
            if isinstance(value, Hashable):
                result.update(bucket.get(value, ()))
        return result

    def _materialize(self, ids: Iterable[str], predicates: tuple[Predicate, ...]) -> list[Record]:
        ordered = sorted(ids, key=lambda row_id: self._seq_by_id[row_id])
        rows = [self._rows[row_id] for row_id in ordered]
        return [deepcopy(r) for r in rows if all(pred(r) for pred in predicates)]

    # -----------------------------
    # Public API — single records
    # -----------------------------

    async def get(self, row_id: str) -> Record | None:
        row = self._rows.get(row_id)
        return deepcopy(row) if row is not None else None

    async def put(self, record: Record) -> str:
        """Insert or replace a full record."""

        self._store(record)
        return record["id"]

    async def add(self, record: Record) -> str:
        """Insert a record; fails when the id already exists."""

        if record.get("id") in self._rows:
            raise StorageError(f"{self.name}: record {record.get('id')} already exists")
        self._store(record)
        return record["id"]

    async def bulk_add(self, records: Iterable[Record]) -> list[str]:
        """Insert several records; nothing is written if any id collides."""

        batch = list(records)
        seen: set[str] = set()
        for record in batch:
            row_id = record.get("id")
            if row_id in self._rows or row_id in seen:
                raise StorageError(f"{self.name}: record {row_id} already exists")
            seen.add(row_id)
        for record in batch:
            self._store(record)
        return [r["id"] for r in batch]

    async def update(self, row_id: str, changes: Mapping[str, Any]) -> int:
        """Merge ``changes`` into an existing record; returns the number updated."""

        current = self._rows.get(row_id)
        if current is None:
            return 0
        merged = {**current, **deepcopy(dict(changes)), "id": row_id}
        self._store(merged)
        return 1

    async def delete(self, row_id: str) -> None:
        current = self._rows.pop(row_id, None)
        if current is None:
            return
        self._unindex_row(current)
        self._seq_by_id.pop(row_id, None)
        self.generation += 1

    # -----------------------------
    # Public API — collections
    # -----------------------------

    async def to_list(self) -> list[Record]:
        return self._materialize(self._rows.keys(), ())

    async def count(self) -> int:
        return len(self._rows)

    def where(self, field: str) -> WhereClause:
        return WhereClause(self, field)

    # -----------------------------
    # Persistence — export/import
    # -----------------------------

    def export_rows(self) -> dict[str, Record]:
        return {row_id: deepcopy(self._rows[row_id]) for row_id in self._ordered_ids()}

    def _ordered_ids(self) -> list[str]:
        return sorted(self._rows, key=lambda row_id: self._seq_by_id[row_id])

    def load_rows(self, rows: Mapping[str, Any]) -> None:
        self._rows = {}
        self._seq_by_id = {}
        self._next_seq = 0
        self._indexes = {field: {} for field in self._indexes}
        for row_id, row in rows.items():
            if not isinstance(row, dict):
                LOGGER.warning(
                    "Skipping malformed record in persisted state",
                    extra={
                        "domain": DOMAIN,
                        "op": "load_state",
                        "table": self.name,
                        "record_id": str(row_id),
                    },
                )
                continue
            self._store({**row, "id": str(row.get("id", row_id))})
        self.generation = 0


class WhereClause:
    """Index lookup on one field of a table."""

    def __init__(self, table: Table, field: str) -> None:
        self._table = table
        self._field = field

    def equals(self, value: Any) -> Collection:
        return self.any_of([value])

    def any_of(self, values: Iterable[Any]) -> Collection:
        wanted = list(values)
        table = self._table
        field = self._field
        return Collection(table, lambda: table._ids_for(field, wanted))


class Collection:
    """Lazily resolved query result refined by in-memory predicates."""

    def __init__(
        self,
        table: Table,
        resolve_ids: Callable[[], set[str]],
        predicates: tuple[Predicate, ...] = (),
    ) -> None:
        self._table = table
        self._resolve_ids = resolve_ids
        self._predicates = predicates

    def and_(self, predicate: Predicate) -> Collection:
        return Collection(self._table, self._resolve_ids, (*self._predicates, predicate))

    async def to_list(self) -> list[Record]:
        return self._table._materialize(self._resolve_ids(), self._predicates)

    async def first(self) -> Record | None:
        rows = await self.to_list()
        return rows[0] if rows else None

    async def count(self) -> int:
        return len(await self.to_list())

    async def sort_by(self, field: str) -> list[Record]:
        """Return matches ordered by ``field``; records missing it sort last."""

        rows = await self.to_list()
        rows.sort(key=lambda r: (r.get(field) is None, r.get(field) or 0))
        return rows


class StorageEngine:
    """Collection of tables built from a schema mapping."""

    def __init__(self, schema: Mapping[str, Iterable[str]] = SCHEMA) -> None:
        self._tables: dict[str, Table] = {
            name: Table(name, indexes) for name, indexes in schema.items()
        }

    def table(self, name: str) -> Table:
        table = self._tables.get(name)
        if table is None:
            raise StorageError(f"unknown table: {name}")
        return table

    @property
    def table_names(self) -> list[str]:
        return list(self._tables)

    @property
    def generation(self) -> int:
        """Total number of writes since the state was loaded."""

        return sum(t.generation for t in self._tables.values())

    def get_counts(self) -> dict[str, int]:
        return {name: len(t._rows) for name, t in self._tables.items()}

    def export_state(self) -> dict[str, Any]:
        """Serialize every table to a plain dict for storage.

        Shape:
            {"tables": {table_name -> {id -> record}}}
        """

        return {"tables": {name: t.export_rows() for name, t in self._tables.items()}}

    def load_state(self, data: Mapping[str, Any]) -> None:
        """Replace all table content from a persisted payload and rebuild indexes."""

        tables = data.get("tables") if isinstance(data, Mapping) else None
        if not isinstance(tables, Mapping):
            tables = {}
        for name, table in self._tables.items():
            rows = tables.get(name)
            table.load_rows(rows if isinstance(rows, Mapping) else {})

    @staticmethod
    def from_state(
        data: Mapping[str, Any], schema: Mapping[str, Iterable[str]] = SCHEMA
    ) -> StorageEngine:
        """Create an engine from a persisted payload."""

        engine = StorageEngine(schema)
        engine.load_state(data)
        return engine
