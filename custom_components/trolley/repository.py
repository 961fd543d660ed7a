"""Repositories over the Trolley storage engine.

``EntityRepository`` provides CRUD with soft-delete semantics for any entity
type: every write stamps ``updated_at``/``last_modified_at`` and bumps
``version``; soft-deleted records drop out of active queries but stay
retrievable by id. The concrete repositories add the list-, owner-, item-,
session- and user-scoped queries the services build on.

Repositories raise typed exceptions (NotFoundError, ValidationError) and never
translate them; the service layer maps them to ``Result`` values.
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from datetime import datetime
from enum import StrEnum
from typing import Any, Generic, TypeVar

from .const import DOMAIN, SORT_ORDER_STEP
from .engine import (
    TABLE_ITEMS,
    TABLE_LIST_OWNERS,
    TABLE_LISTS,
    TABLE_SESSION_LISTS,
    TABLE_SESSIONS,
    TABLE_USERS,
    Record,
    StorageEngine,
    Table,
)
from .exceptions import NotFoundError, ValidationError
from .models import (
    Entity,
    ListItem,
    ListOwner,
    SessionList,
    SessionStatus,
    SessionWithLists,
    ShoppingList,
    ShoppingSession,
    User,
    format_timestamp,
    new_id,
    utc_now,
)

LOGGER = logging.getLogger(__name__)

EntityT = TypeVar("EntityT", bound=Entity)

# Fields callers can never change through update()
_IMMUTABLE_FIELDS: frozenset[str] = frozenset({"id", "created_at"})
# Fields the store owns; values supplied by callers are overwritten
_STORE_FIELDS: frozenset[str] = frozenset({"updated_at", "last_modified_at", "version"})


def _is_active(record: Record) -> bool:
    return record.get("deleted_at") is None


class EntityRepository(Generic[EntityT]):
    """Generic CRUD + soft-delete over one engine table."""

    entity_cls: type[EntityT]
    table_name: str

    def __init__(self, engine: StorageEngine) -> None:
        self._engine = engine
        self.table: Table = engine.table(self.table_name)

    # -----------------------------
    # Internal helpers
    # -----------------------------

    def _to_entity(self, record: Record) -> EntityT:
        return self.entity_cls.from_record(record)

    def _to_entities(self, records: Iterable[Record]) -> list[EntityT]:
        return [self._to_entity(r) for r in records]

    def _serialize_changes(self, changes: Mapping[str, Any]) -> Record:
        known = self.entity_cls.field_names()
        unknown = sorted(set(changes) - known)
        if unknown:
            raise ValidationError(
                f"unknown {self.entity_cls.__name__} fields: {', '.join(unknown)}"
            )
        return {k: _record_value(v) for k, v in changes.items()}

    def _log(self, op: str, entity_id: str) -> None:
        LOGGER.debug(
            "%s %s",
            self.entity_cls.__name__,
            op,
            extra={"domain": DOMAIN, "op": op, "table": self.table_name, "entity_id": entity_id},
        )

    # -----------------------------
    # Public API — reads
    # -----------------------------

    async def find_by_id(self, entity_id: str) -> EntityT | None:
        """Return the entity, including soft-deleted ones, or None."""

        record = await self.table.get(entity_id)
        return self._to_entity(record) if record is not None else None

    async def get_active(self, entity_id: str) -> EntityT:
        """Return the entity or raise NotFoundError when missing or soft-deleted."""

        entity = await self.find_by_id(entity_id)
        if entity is None or entity.is_deleted:
            raise NotFoundError(f"{self.entity_cls.__name__} {entity_id} not found")
        return entity

    async def find_all(self) -> list[EntityT]:
        """Return every record including soft-deleted ones (audit use)."""

        return self._to_entities(await self.table.to_list())

    async def find_active(self) -> list[EntityT]:
        return self._to_entities(await self.table.where("deleted_at").equals(None).to_list())

    async def find_by_ids(self, entity_ids: Iterable[str]) -> list[EntityT]:
        ids = list(entity_ids)
        if not ids:
            return []
        records = await self.table.where("id").any_of(ids).and_(_is_active).to_list()
        return self._to_entities(records)

    # -----------------------------
    # Public API — writes
    # -----------------------------

    async def save(self, entity: Mapping[str, Any] | EntityT) -> EntityT:
        """Insert a record or merge into the stored one (upsert).

        Generates an id when absent. When an id matches a stored record the
        payload is merged over it, so omitted fields keep their stored values,
        and the original ``created_at`` is preserved: the explicit value, else
        the stored one, else now.
        """

        payload: dict[str, Any] = (
            entity.to_record() if isinstance(entity, Entity) else dict(entity)
        )
        now = utc_now()
        entity_id = payload.get("id") or new_id()
        created_at = payload.get("created_at")
        existing = await self.table.get(entity_id) if payload.get("id") else None
        if created_at is None:
            created_at = existing["created_at"] if existing else now
        version = int(existing.get("version", 0)) + 1 if existing else 1

        if existing is not None:
            known = self.entity_cls.field_names()
            payload = {**{k: v for k, v in existing.items() if k in known}, **payload}
        record = self._serialize_changes(payload)
        record.update(
            {
                "id": entity_id,
                "created_at": _record_value(created_at),
                "updated_at": _record_value(now),
                "last_modified_at": _record_value(now),
                "version": version,
            }
        )
        try:
            saved = self._to_entity(record)
        except TypeError as exc:
            raise ValidationError(
                f"incomplete {self.entity_cls.__name__} record: {exc}"
            ) from exc
        await self.table.put(saved.to_record())
        self._log("save", entity_id)
        return saved

    async def bulk_save(self, entities: Iterable[Mapping[str, Any]]) -> list[EntityT]:
        """Insert several new records at once; ids are generated when absent."""

        now = _record_value(utc_now())
        created: list[EntityT] = []
        for payload in entities:
            record = self._serialize_changes(payload)
            record.update(
                {
                    "id": record.get("id") or new_id(),
                    "created_at": now,
                    "updated_at": now,
                    "last_modified_at": now,
                    "version": 1,
                }
            )
            created.append(self._to_entity(record))
        await self.table.bulk_add([e.to_record() for e in created])
        return created

    async def update(self, entity_id: str, changes: Mapping[str, Any]) -> EntityT:
        """Merge ``changes`` onto an existing record and persist it.

        Read-modify-write: two interleaved updates of one id resolve as
        last-write-wins.
        """

        current = await self.table.get(entity_id)
        if current is None:
            raise NotFoundError(f"{self.entity_cls.__name__} {entity_id} not found")

        filtered = {
            k: v
            for k, v in changes.items()
            if k not in _IMMUTABLE_FIELDS and k not in _STORE_FIELDS
        }
        now = _record_value(utc_now())
        merged = {
            **current,
            **self._serialize_changes(filtered),
            "updated_at": now,
            "last_modified_at": now,
            "version": int(current.get("version", 1)) + 1,
        }
        updated = self._to_entity(merged)
        await self.table.put(updated.to_record())
        self._log("update", entity_id)
        return updated

    async def soft_delete(self, entity_id: str) -> None:
        current = await self.table.get(entity_id)
        if current is None:
            raise NotFoundError(f"{self.entity_cls.__name__} {entity_id} not found")
        now = _record_value(utc_now())
        await self.table.update(
            entity_id,
            {
                "deleted_at": now,
                "last_modified_at": now,
                "version": int(current.get("version", 1)) + 1,
            },
        )
        self._log("soft_delete", entity_id)

    async def hard_delete(self, entity_id: str) -> None:
        await self.table.delete(entity_id)
        self._log("hard_delete", entity_id)


def _record_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return format_timestamp(value)
    if isinstance(value, StrEnum):
        return value.value
    return value


# -----------------------------
# Shopping lists
# -----------------------------


class ShoppingListRepository(EntityRepository[ShoppingList]):
    entity_cls = ShoppingList
    table_name = TABLE_LISTS

    async def find_by_user(self, user_id: str) -> list[ShoppingList]:
        """Active lists created by ``user_id``."""

        records = await self.table.where("created_by").equals(user_id).and_(_is_active).to_list()
        return self._to_entities(records)

    async def find_by_community(self, community_id: str) -> list[ShoppingList]:
        """Active lists shared with a community."""

        records = (
            await self.table.where("community_id")
            .equals(community_id)
            .and_(lambda r: _is_active(r) and r.get("is_shared") is True)
            .to_list()
        )
        return self._to_entities(records)

    async def find_shared_with_user(self, user_id: str) -> list[ShoppingList]:
        """Active lists the user owns through an active ListOwner row."""

        owners = (
            await self._engine.table(TABLE_LIST_OWNERS)
            .where("user_id")
            .equals(user_id)
            .and_(_is_active)
            .to_list()
        )
        list_ids = [o["list_id"] for o in owners]
        if not list_ids:
            return []
        return await self.find_by_ids(list_ids)

    async def lock_list(self, list_id: str) -> None:
        await self.update(list_id, {"is_locked": True})

    async def unlock_list(self, list_id: str) -> None:
        await self.update(list_id, {"is_locked": False})


class ListOwnerRepository(EntityRepository[ListOwner]):
    entity_cls = ListOwner
    table_name = TABLE_LIST_OWNERS

    async def find_by_list(self, list_id: str) -> list[ListOwner]:
        records = await self.table.where("list_id").equals(list_id).and_(_is_active).to_list()
        return self._to_entities(records)

    async def find_by_user(self, user_id: str) -> list[ListOwner]:
        records = await self.table.where("user_id").equals(user_id).and_(_is_active).to_list()
        return self._to_entities(records)

    async def find_owner(self, list_id: str, user_id: str) -> ListOwner | None:
        record = (
            await self.table.where("list_id")
            .equals(list_id)
            .and_(lambda r: _is_active(r) and r.get("user_id") == user_id)
            .first()
        )
        return self._to_entity(record) if record is not None else None

    async def add_owner(self, list_id: str, user_id: str) -> ListOwner:
        return await self.save({"list_id": list_id, "user_id": user_id, "added_at": utc_now()})

    async def is_owner(self, lst: ShoppingList, user_id: str) -> bool:
        """The creator or a user with an active owner row."""

        return lst.created_by == user_id or await self.find_owner(lst.id, user_id) is not None


# -----------------------------
# List items
# -----------------------------


class ListItemRepository(EntityRepository[ListItem]):
    entity_cls = ListItem
    table_name = TABLE_ITEMS

    async def find_by_list(self, list_id: str) -> list[ListItem]:
        """Active items of a list ordered by ``sort_order``."""

        records = (
            await self.table.where("list_id").equals(list_id).and_(_is_active).sort_by("sort_order")
        )
        return self._to_entities(records)

    async def find_by_lists(self, list_ids: Iterable[str]) -> list[ListItem]:
        ids = list(list_ids)
        if not ids:
            return []
        records = await self.table.where("list_id").any_of(ids).and_(_is_active).to_list()
        return self._to_entities(records)

    async def max_sort_order(self, list_id: str) -> int:
        items = await self.find_by_list(list_id)
        return max((item.sort_order or 0 for item in items), default=0)

    async def mark_as_purchased(self, item_id: str, user_id: str) -> ListItem:
        return await self.update(
            item_id, {"is_purchased": True, "purchased_by": user_id, "purchased_at": utc_now()}
        )

    async def mark_as_unpurchased(self, item_id: str) -> ListItem:
        return await self.update(
            item_id, {"is_purchased": False, "purchased_by": None, "purchased_at": None}
        )

    async def move_to_list(self, item_id: str, new_list_id: str) -> ListItem:
        return await self.update(item_id, {"list_id": new_list_id})

    async def update_sort_order(self, item_id: str, sort_order: int) -> ListItem:
        return await self.update(item_id, {"sort_order": sort_order})

    async def reorder_items(self, list_id: str, item_ids: list[str]) -> list[ListItem]:
        """Renumber the given items in order using the sparse step."""

        current = {item.id for item in await self.find_by_list(list_id)}
        stray = [item_id for item_id in item_ids if item_id not in current]
        if stray:
            raise ValidationError(f"items not on list {list_id}: {', '.join(stray)}")
        return [
            await self.update_sort_order(item_id, (index + 1) * SORT_ORDER_STEP)
            for index, item_id in enumerate(item_ids)
        ]


# -----------------------------
# Shopping sessions
# -----------------------------


class ShoppingSessionRepository(EntityRepository[ShoppingSession]):
    entity_cls = ShoppingSession
    table_name = TABLE_SESSIONS

    @property
    def _session_lists(self) -> Table:
        return self._engine.table(TABLE_SESSION_LISTS)

    async def find_active_by_user(self, user_id: str) -> ShoppingSession | None:
        record = (
            await self.table.where("user_id")
            .equals(user_id)
            .and_(lambda r: _is_active(r) and r.get("status") == SessionStatus.ACTIVE.value)
            .first()
        )
        return self._to_entity(record) if record is not None else None

    async def find_with_lists(self, session_id: str) -> SessionWithLists:
        session = await self.find_by_id(session_id)
        if session is None:
            raise NotFoundError(f"ShoppingSession {session_id} not found")
        return SessionWithLists(session=session, list_ids=await self.get_session_lists(session_id))

    async def add_list_to_session(self, session_id: str, list_id: str) -> SessionList:
        now = utc_now()
        membership = SessionList(
            id=new_id(),
            session_id=session_id,
            list_id=list_id,
            added_at=now,
            created_at=now,
            updated_at=now,
            last_modified_at=now,
        )
        await self._session_lists.add(membership.to_record())
        self._log("add_list_to_session", session_id)
        return membership

    async def remove_list_from_session(self, session_id: str, list_id: str) -> None:
        record = (
            await self._session_lists.where("session_id")
            .equals(session_id)
            .and_(lambda r: _is_active(r) and r.get("list_id") == list_id)
            .first()
        )
        if record is None:
            return
        now = format_timestamp(utc_now())
        await self._session_lists.update(
            record["id"],
            {
                "deleted_at": now,
                "last_modified_at": now,
                "version": int(record.get("version", 1)) + 1,
            },
        )
        self._log("remove_list_from_session", session_id)

    async def get_session_lists(self, session_id: str) -> list[str]:
        """List ids of the session's active memberships, in insertion order."""

        records = (
            await self._session_lists.where("session_id")
            .equals(session_id)
            .and_(_is_active)
            .to_list()
        )
        return [r["list_id"] for r in records]

    async def end_session(self, session_id: str, status: SessionStatus) -> ShoppingSession:
        return await self.update(session_id, {"status": status, "ended_at": utc_now()})


# -----------------------------
# Users
# -----------------------------


class UserRepository(EntityRepository[User]):
    entity_cls = User
    table_name = TABLE_USERS

    async def find_by_email(self, email: str) -> User | None:
        needle = email.strip().casefold()
        # Emails are stored as entered; compare case-insensitively over active users
        records = await self.table.where("deleted_at").equals(None).to_list()
        for record in records:
            if str(record.get("email", "")).casefold() == needle:
                return self._to_entity(record)
        return None

    async def find_by_username(self, username: str) -> User | None:
        record = await self.table.where("username").equals(username).and_(_is_active).first()
        return self._to_entity(record) if record is not None else None
