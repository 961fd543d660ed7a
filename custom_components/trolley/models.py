"""Typed models and validation helpers for Trolley.

This module defines the persisted entity shapes (users, lists, owners, items,
sessions, session memberships and saga records), the input payloads for the
service layer, the derived read models returned by the session service, and
the ``Result`` envelope every service operation returns.

Entities convert to and from JSON-safe records (``to_record``/``from_record``)
so the storage engine never holds datetime or enum objects. The intent is to
keep these models framework-agnostic and free of I/O.
"""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass, field, fields, is_dataclass
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, ClassVar, Generic, Self, TypedDict, TypeVar

from .const import (
    LIST_NAME_MAX_LENGTH,
    PASSWORD_MIN_LENGTH,
    UNIT_MAX_LENGTH,
    USERNAME_MAX_LENGTH,
    USERNAME_MIN_LENGTH,
)
from .exceptions import ValidationError

T = TypeVar("T")


# -----------------------------
# Time and identity helpers
# -----------------------------


def utc_now() -> datetime:
    """Return the current UTC time truncated to millisecond precision."""

    now = datetime.now(tz=UTC)
    return now.replace(microsecond=(now.microsecond // 1000) * 1000)


def format_timestamp(value: datetime) -> str:
    """Return ISO-8601 UTC timestamp string with milliseconds and 'Z'."""

    return value.astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: str, *, field_name: str = "timestamp") -> datetime:
    """Parse an ISO-8601 timestamp into an aware UTC datetime.

    Raises ValidationError on bad format.
    """

    if not isinstance(value, str):
        raise ValidationError(f"{field_name} must be an ISO-8601 timestamp string")
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError as exc:
        raise ValidationError(f"{field_name} must be an ISO-8601 timestamp string") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def new_id() -> str:
    """Generate a hyphenated UUID v4 string."""

    return str(uuid.uuid4())


# -----------------------------
# Entities
# -----------------------------


class SessionStatus(StrEnum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class SagaStatus(StrEnum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass(kw_only=True)
class Entity:
    """Base shape shared by every persisted record.

    Attributes:
        id: Opaque identifier, immutable after creation.
        created_at: Set once on first save.
        updated_at: Refreshed on every write.
        last_modified_at: Sync cursor; bumped on every mutation including
            soft-delete.
        deleted_at: Tombstone; present when the record is logically deleted.
        version: Incremented on every write.
    """

    # Fields that never appear in outward-facing serializations
    private_fields: ClassVar[frozenset[str]] = frozenset()
    enum_fields: ClassVar[dict[str, type[StrEnum]]] = {}

    id: str
    created_at: datetime
    updated_at: datetime
    last_modified_at: datetime
    deleted_at: datetime | None = None
    version: int = 1

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    @classmethod
    def field_names(cls) -> frozenset[str]:
        return frozenset(f.name for f in fields(cls))

    def to_record(self) -> dict[str, Any]:
        """Serialize to a JSON-safe dict suitable for the storage engine."""

        return {f.name: _to_json_value(getattr(self, f.name)) for f in fields(self)}

    def to_dict(self) -> dict[str, Any]:
        """Serialize for responses; private fields are dropped."""

        record = self.to_record()
        for name in self.private_fields:
            record.pop(name, None)
        return record

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> Self:
        """Build an entity from a stored record.

        Keys the entity does not know are ignored so newer payloads still load.
        Timestamp fields (``*_at``) are parsed from ISO strings.
        """

        kwargs: dict[str, Any] = {}
        for f in fields(cls):
            if f.name not in record:
                continue
            value = record[f.name]
            if value is not None and f.name.endswith("_at") and isinstance(value, str):
                value = parse_timestamp(value, field_name=f.name)
            elif value is not None and f.name in cls.enum_fields:
                value = cls.enum_fields[f.name](value)
            elif isinstance(value, list):
                value = list(value)
            kwargs[f.name] = value
        return cls(**kwargs)


@dataclass(kw_only=True)
class User(Entity):
    private_fields: ClassVar[frozenset[str]] = frozenset({"password_hash"})

    username: str
    email: str
    password_hash: str | None = None


@dataclass(kw_only=True)
class ShoppingList(Entity):
    name: str
    description: str = ""
    created_by: str
    community_id: str | None = None
    is_shared: bool = False
    is_locked: bool = False


@dataclass(kw_only=True)
class ListOwner(Entity):
    list_id: str
    user_id: str
    added_at: datetime


@dataclass(kw_only=True)
class ListItem(Entity):
    list_id: str
    name: str
    quantity: int = 1
    unit: str
    is_purchased: bool = False
    purchased_by: str | None = None
    purchased_at: datetime | None = None
    sort_order: int = 0


@dataclass(kw_only=True)
class ShoppingSession(Entity):
    enum_fields: ClassVar[dict[str, type[StrEnum]]] = {"status": SessionStatus}

    user_id: str
    started_at: datetime
    ended_at: datetime | None = None
    status: SessionStatus = SessionStatus.ACTIVE

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE


@dataclass(kw_only=True)
class SessionList(Entity):
    session_id: str
    list_id: str
    added_at: datetime


@dataclass(kw_only=True)
class SessionSaga(Entity):
    """Step log for one multi-step session orchestration."""

    enum_fields: ClassVar[dict[str, type[StrEnum]]] = {"status": SagaStatus}

    kind: str
    user_id: str
    session_id: str | None = None
    status: SagaStatus = SagaStatus.RUNNING
    steps: list[str] = field(default_factory=list)
    error: str | None = None


# -----------------------------
# Service inputs
# -----------------------------


class CreateListParams(TypedDict, total=False):
    """Creation input for ShoppingList. Only 'name' is required."""

    name: str
    description: str
    is_shared: bool
    community_id: str | None


class UpdateListParams(TypedDict, total=False):
    """Update input for ShoppingList. 'id' is required; other fields are optional."""

    id: str
    name: str
    description: str
    is_shared: bool
    community_id: str | None


class CreateListItemParams(TypedDict, total=False):
    list_id: str
    name: str
    quantity: int
    unit: str
    sort_order: int


class UpdateListItemParams(TypedDict, total=False):
    id: str
    name: str
    quantity: int
    unit: str
    is_purchased: bool
    sort_order: int


# -----------------------------
# Derived read models
# -----------------------------


@dataclass(frozen=True)
class ItemSource:
    """One contributing item behind a consolidated entry."""

    list_id: str
    item_id: str
    quantity: int
    is_purchased: bool


@dataclass
class ConsolidatedItem:
    """Items sharing a normalized (name, unit) key merged across lists."""

    key: str
    name: str
    unit: str
    quantity: int
    is_purchased: bool
    appearance_order: int
    sources: list[ItemSource] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return _to_json_value(self)


@dataclass(frozen=True)
class SessionWithLists:
    session: ShoppingSession
    list_ids: list[str]


@dataclass(frozen=True)
class SessionDetails:
    session: ShoppingSession
    lists: list[ShoppingList]

    def to_dict(self) -> dict[str, Any]:
        return _to_json_value(self)


@dataclass(frozen=True)
class SourceListPurchases:
    """Purchased items of a single source list."""

    list: ShoppingList
    items: list[ListItem]

    def to_dict(self) -> dict[str, Any]:
        return _to_json_value(self)


@dataclass
class Result(Generic[T]):
    """Outcome of a service operation; services never raise across their edge."""

    success: bool
    data: T | None = None
    error: str | None = None
    code: str | None = None

    @classmethod
    def ok(cls, data: T | None = None) -> Result[T]:
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str, *, code: str) -> Result[T]:
        return cls(success=False, error=error, code=code)

    def to_dict(self) -> dict[str, Any]:
        if not self.success:
            return {"success": False, "error": self.error, "code": self.code}
        return {"success": True, "data": _to_json_value(self.data)}


def _to_json_value(value: Any) -> Any:
    if isinstance(value, datetime):
        return format_timestamp(value)
    if isinstance(value, StrEnum):
        return value.value
    if isinstance(value, Entity):
        return value.to_dict()
    if is_dataclass(value) and not isinstance(value, type):
        return {f.name: _to_json_value(getattr(value, f.name)) for f in fields(value)}
    if isinstance(value, dict):
        return {str(k): _to_json_value(v) for k, v in value.items()}
    if isinstance(value, list | tuple):
        return [_to_json_value(v) for v in value]
    return value


# -----------------------------
# Validation helpers
# -----------------------------

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
PASSWORD_RE = re.compile(r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d).+$")


def _require_text(value: Any, *, field_name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field_name} is required and must be a non-empty string")
    return value.strip()


def validate_list_name(name: Any) -> str:
    """Validate a list name and return a trimmed value."""

    trimmed = _require_text(name, field_name="name")
    if len(trimmed) > LIST_NAME_MAX_LENGTH:
        raise ValidationError(f"name must be at most {LIST_NAME_MAX_LENGTH} characters")
    return trimmed


def validate_item_name(name: Any) -> str:
    return _require_text(name, field_name="item name")


def validate_quantity(quantity: Any) -> int:
    # bool is an int subclass; reject it explicitly
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise ValidationError("quantity must be a positive integer")
    return quantity


def validate_unit(unit: Any) -> str:
    trimmed = _require_text(unit, field_name="unit")
    if len(trimmed) > UNIT_MAX_LENGTH:
        raise ValidationError(f"unit must be at most {UNIT_MAX_LENGTH} characters")
    return trimmed


def validate_sort_order(sort_order: Any) -> int:
    if isinstance(sort_order, bool) or not isinstance(sort_order, int):
        raise ValidationError("sort_order must be an integer")
    return sort_order


def validate_username(username: Any) -> str:
    trimmed = _require_text(username, field_name="username")
    if not USERNAME_MIN_LENGTH <= len(trimmed) <= USERNAME_MAX_LENGTH:
        raise ValidationError(
            f"username must be between {USERNAME_MIN_LENGTH} and "
            f"{USERNAME_MAX_LENGTH} characters"
        )
    return trimmed


def validate_email(email: Any) -> str:
    if not isinstance(email, str) or not EMAIL_RE.match(email.strip()):
        raise ValidationError("invalid email address")
    return email.strip()


def validate_password(password: Any) -> str:
    if (
        not isinstance(password, str)
        or len(password) < PASSWORD_MIN_LENGTH
        or not PASSWORD_RE.match(password)
    ):
        raise ValidationError(
            f"password must be at least {PASSWORD_MIN_LENGTH} characters with at least one "
            "uppercase letter, one lowercase letter, and one number"
        )
    return password


def consolidation_key(name: str, unit: str) -> str:
    """Return the merge key for an item: lowercased name and unit joined by '_'."""

    return f"{name.lower()}_{unit.lower()}"
