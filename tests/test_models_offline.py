"""Offline tests for Trolley models and validators.

Scenarios:
- Timestamps format with milliseconds and 'Z' and parse back to aware UTC
- Entity records are JSON-safe; unknown keys are ignored on load
- Private fields (password hash) are dropped from outward serialization
- Validators trim and reject bad names, quantities, units, usernames,
  emails and passwords
- Result envelopes serialize success and failure shapes
"""

from __future__ import annotations

from datetime import UTC, datetime

import pytest
from custom_components.trolley.exceptions import ValidationError
from custom_components.trolley.models import (
    ConsolidatedItem,
    ItemSource,
    Result,
    SessionStatus,
    ShoppingSession,
    User,
    consolidation_key,
    format_timestamp,
    parse_timestamp,
    utc_now,
    validate_email,
    validate_item_name,
    validate_list_name,
    validate_password,
    validate_quantity,
    validate_unit,
    validate_username,
)

NOW = datetime(2024, 5, 1, 12, 30, 15, 123000, tzinfo=UTC)


def test_timestamp_format_and_parse() -> None:
    text = format_timestamp(NOW)
    assert text == "2024-05-01T12:30:15.123Z"
    assert parse_timestamp(text) == NOW

    # Naive input is read as UTC
    assert parse_timestamp("2024-05-01T12:30:15.123") == NOW

    with pytest.raises(ValidationError):
        parse_timestamp("yesterday", field_name="started_at")
    with pytest.raises(ValidationError):
        parse_timestamp(123)  # type: ignore[arg-type]


def test_utc_now_has_millisecond_precision() -> None:
    now = utc_now()
    assert now.tzinfo is not None
    assert now.microsecond % 1000 == 0


def test_entity_record_roundtrip_and_unknown_keys() -> None:
    session = ShoppingSession(
        id="s1",
        created_at=NOW,
        updated_at=NOW,
        last_modified_at=NOW,
        user_id="u1",
        started_at=NOW,
    )
    record = session.to_record()
    assert record["status"] == "active"
    assert record["started_at"] == "2024-05-01T12:30:15.123Z"
    assert record["ended_at"] is None
    assert record["version"] == 1

    restored = ShoppingSession.from_record({**record, "legacy_field": "ignored"})
    assert restored == session
    assert restored.status is SessionStatus.ACTIVE
    assert restored.is_active


def test_user_to_dict_drops_password_hash() -> None:
    user = User(
        id="u1",
        created_at=NOW,
        updated_at=NOW,
        last_modified_at=NOW,
        username="shopper",
        email="shopper@example.com",
        password_hash="$2b$04$hash",
    )
    assert "password_hash" in user.to_record()
    assert "password_hash" not in user.to_dict()
    assert "password_hash" not in Result.ok(user).to_dict()["data"]


def test_list_and_item_validators() -> None:
    assert validate_list_name("  Groceries  ") == "Groceries"
    assert validate_list_name("x" * 100) == "x" * 100
    for bad in ("", "   ", None, 5, "x" * 101):
        with pytest.raises(ValidationError):
            validate_list_name(bad)

    assert validate_item_name(" Milk ") == "Milk"
    with pytest.raises(ValidationError):
        validate_item_name("")

    assert validate_quantity(3) == 3
    for bad in (0, -1, 1.5, "2", True, None):
        with pytest.raises(ValidationError):
            validate_quantity(bad)

    assert validate_unit(" kg ") == "kg"
    for bad in ("", "x" * 21, None):
        with pytest.raises(ValidationError):
            validate_unit(bad)


def test_user_validators() -> None:
    assert validate_username("bob") == "bob"
    for bad in ("ab", "x" * 31, ""):
        with pytest.raises(ValidationError):
            validate_username(bad)

    assert validate_email(" a@b.co ") == "a@b.co"
    for bad in ("a@b", "no-at.example.com", "a b@c.de", None):
        with pytest.raises(ValidationError):
            validate_email(bad)

    assert validate_password("Secret123") == "Secret123"
    for bad in ("Short1A", "alllowercase1", "ALLUPPERCASE1", "NoDigitsHere", None):
        with pytest.raises(ValidationError):
            validate_password(bad)


def test_consolidation_key_is_case_insensitive() -> None:
    assert consolidation_key("Milk", "liter") == consolidation_key("milk", "Liter")
    assert consolidation_key("Milk", "liter") == "milk_liter"
    assert consolidation_key("Milk", "l") != consolidation_key("Milk", "liter")


def test_result_shapes() -> None:
    assert Result.fail("nope", code="not_found").to_dict() == {
        "success": False,
        "error": "nope",
        "code": "not_found",
    }

    item = ConsolidatedItem(
        key="milk_liter",
        name="Milk",
        unit="liter",
        quantity=3,
        is_purchased=False,
        appearance_order=0,
        sources=[ItemSource(list_id="A", item_id="i1", quantity=3, is_purchased=False)],
    )
    payload = Result.ok([item]).to_dict()
    assert payload["success"] is True
    assert payload["data"][0]["sources"] == [
        {"list_id": "A", "item_id": "i1", "quantity": 3, "is_purchased": False}
    ]
    assert Result.ok().to_dict() == {"success": True, "data": None}
