"""Offline tests for the trolley.* Home Assistant services.

Scenarios:
- A shopping trip end to end through services: create list, add items,
  start a session, buy, consolidate, end with a leftover list
- The acting user comes from the call context unless user_id is given
- Every service accepts an explicit user_id
- Business failures come back as failed responses, not exceptions
- Only the session owner can end a session; only list owners can start one
- Schema violations are rejected before reaching a handler
- Successful mutations are persisted; persist failures are reported
- register_user never returns the password hash
"""

from __future__ import annotations

from typing import Any

import pytest
import voluptuous as vol
from custom_components.trolley import async_setup_entry, async_unload_entry
from custom_components.trolley.const import DOMAIN, STORAGE_KEY
from custom_components.trolley.engine import TABLE_ITEMS, TABLE_LISTS
from custom_components.trolley.services import SERVICES
from custom_components.trolley.storage import DomainStore
from homeassistant.core import Context, HomeAssistant, SupportsResponse
from homeassistant.exceptions import HomeAssistantError
from pytest_homeassistant_custom_component.common import MockConfigEntry

USER = "ha-user-1"


@pytest.fixture
async def setup_integration(hass: HomeAssistant, hass_storage):
    entry = MockConfigEntry(domain=DOMAIN)
    assert await async_setup_entry(hass, entry)
    yield entry
    await async_unload_entry(hass, entry)


async def _call(
    hass: HomeAssistant, service: str, data: dict[str, Any], user_id: str | None = USER
) -> dict[str, Any]:
    return await hass.services.async_call(
        DOMAIN,
        service,
        data,
        blocking=True,
        return_response=True,
        context=Context(user_id=user_id),
    )


@pytest.mark.asyncio
async def test_every_service_is_registered(hass: HomeAssistant, setup_integration) -> None:
    for name, (_schema, _handler, supports_response) in SERVICES.items():
        assert hass.services.has_service(DOMAIN, name)
        expected = SupportsResponse.ONLY if name.startswith("get_") else SupportsResponse.OPTIONAL
        assert supports_response is expected


@pytest.mark.asyncio
async def test_shopping_trip_through_services(
    hass: HomeAssistant, hass_storage, setup_integration
) -> None:
    created = await _call(hass, "create_list", {"name": "Weekly"})
    assert created["success"] is True
    list_id = created["data"]["id"]
    assert created["data"]["created_by"] == USER

    milk = await _call(hass, "add_item", {"list_id": list_id, "name": "Milk", "unit": "l"})
    await _call(hass, "add_item", {"list_id": list_id, "name": "Bread", "unit": "pcs"})
    assert milk["data"]["sort_order"] == 1000

    started = await _call(hass, "start_session", {"list_ids": [list_id]})
    assert started["success"] is True
    session_id = started["data"]["id"]
    assert started["data"]["status"] == "active"

    bought = await _call(hass, "update_item", {"item_id": milk["data"]["id"], "is_purchased": True})
    assert bought["data"]["purchased_by"] == USER

    consolidated = await _call(hass, "get_consolidated_items", {"session_id": session_id})
    assert [(c["name"], c["is_purchased"]) for c in consolidated["data"]] == [
        ("Milk", True),
        ("Bread", False),
    ]
    receipts = await _call(hass, "get_items_by_source_list", {"session_id": session_id})
    assert [i["name"] for i in receipts["data"][0]["items"]] == ["Milk"]

    ended = await _call(
        hass,
        "end_session",
        {"session_id": session_id, "create_new_list_for_unpurchased": True, "new_list_name": "Next"},
    )
    assert ended["success"] is True
    assert ended["data"]["status"] == "completed"

    tables = hass_storage[STORAGE_KEY]["data"]["tables"]
    names = {row["name"]: row for row in tables[TABLE_LISTS].values()}
    assert names["Weekly"]["deleted_at"] is not None
    assert names["Next"]["deleted_at"] is None
    leftover = [row for row in tables[TABLE_ITEMS].values() if row["list_id"] == names["Next"]["id"]]
    assert [row["name"] for row in leftover] == ["Bread"]


@pytest.mark.asyncio
async def test_acting_user_from_context_or_data(hass: HomeAssistant, setup_integration) -> None:
    explicit = await _call(hass, "create_list", {"name": "Theirs", "user_id": "u2"})
    assert explicit["data"]["created_by"] == "u2"

    anonymous = await _call(hass, "create_list", {"name": "Nobody"}, user_id=None)
    assert anonymous["success"] is False
    assert anonymous["code"] == "invalid_input"

    shared = await _call(
        hass,
        "share_list",
        {"list_id": explicit["data"]["id"], "owner_id": USER, "user_id": "u2"},
    )
    assert shared["success"] is True
    updated = await _call(
        hass, "update_list", {"list_id": explicit["data"]["id"], "description": "co-owned"}
    )
    assert updated["data"]["description"] == "co-owned"


@pytest.mark.asyncio
async def test_business_failures_are_responses(hass: HomeAssistant, setup_integration) -> None:
    list_id = (await _call(hass, "create_list", {"name": "Weekly"}))["data"]["id"]
    await _call(hass, "start_session", {"list_ids": [list_id]})

    locked = await _call(hass, "add_item", {"list_id": list_id, "name": "Eggs", "unit": "pcs"})
    assert (locked["success"], locked["code"]) == (False, "locked")

    # Lock is checked before ownership
    delete = await _call(hass, "delete_list", {"list_id": list_id}, user_id="intruder")
    assert delete["code"] == "locked"

    missing = await _call(hass, "get_consolidated_items", {"session_id": "missing"})
    assert missing["code"] == "not_found"


@pytest.mark.asyncio
async def test_schema_violations_are_rejected(hass: HomeAssistant, setup_integration) -> None:
    with pytest.raises((vol.Invalid, HomeAssistantError)):
        await _call(hass, "end_session", {"session_id": "s1", "status": "active"})
    with pytest.raises((vol.Invalid, HomeAssistantError)):
        await _call(hass, "add_item", {"list_id": "l1", "name": "Milk", "unit": "l", "quantity": 0})


@pytest.mark.asyncio
async def test_persist_failure_is_reported(
    hass: HomeAssistant, setup_integration, monkeypatch: pytest.MonkeyPatch
) -> None:
    async def _fail(self, _data):  # type: ignore[no-untyped-def]
        raise OSError("read-only file system")

    monkeypatch.setattr(DomainStore, "async_save", _fail)

    result = await _call(hass, "create_list", {"name": "Weekly"})
    assert result["success"] is False
    assert result["code"] == "storage_failure"
    assert result["error"].startswith("Failed to persist create list")
    monkeypatch.undo()


@pytest.mark.asyncio
async def test_register_user_hides_password_hash(
    hass: HomeAssistant, hass_storage, setup_integration
) -> None:
    result = await _call(
        hass,
        "register_user",
        {"username": "shopper", "email": "shopper@example.com", "password": "Secret123"},
    )
    assert result["success"] is True
    assert "password_hash" not in result["data"]

    duplicate = await _call(
        hass,
        "register_user",
        {"username": "other", "email": "SHOPPER@example.com", "password": "Secret123"},
    )
    assert duplicate["code"] == "conflict"


@pytest.mark.asyncio
async def test_every_service_accepts_an_explicit_user(
    hass: HomeAssistant, setup_integration
) -> None:
    list_id = (await _call(hass, "create_list", {"name": "Weekly", "user_id": "u2"}))["data"]["id"]

    added = await _call(
        hass, "add_item", {"list_id": list_id, "name": "Milk", "unit": "l", "user_id": "u2"}
    )
    assert added["success"] is True
    removed = await _call(hass, "remove_item", {"item_id": added["data"]["id"], "user_id": "u2"})
    assert removed["success"] is True

    session_id = (
        await _call(hass, "start_session", {"list_ids": [list_id], "user_id": "u2"})
    )["data"]["id"]
    consolidated = await _call(
        hass, "get_consolidated_items", {"session_id": session_id, "user_id": "u2"}
    )
    assert consolidated["success"] is True

    other_id = (await _call(hass, "create_list", {"name": "Extra", "user_id": "u2"}))["data"]["id"]
    joined = await _call(
        hass,
        "add_list_to_session",
        {"session_id": session_id, "list_id": other_id, "user_id": "u2"},
    )
    assert joined["success"] is True

    ended = await _call(
        hass, "end_session", {"session_id": session_id, "user_id": "u2"}, user_id=None
    )
    assert ended["success"] is True

    registered = await _call(
        hass,
        "register_user",
        {"username": "shopper", "email": "s@example.com", "password": "Secret123", "user_id": "u2"},
    )
    assert registered["success"] is True


@pytest.mark.asyncio
async def test_only_the_session_owner_ends_it(hass: HomeAssistant, setup_integration) -> None:
    list_id = (await _call(hass, "create_list", {"name": "Weekly"}))["data"]["id"]
    session_id = (await _call(hass, "start_session", {"list_ids": [list_id]}))["data"]["id"]

    stranger = await _call(hass, "end_session", {"session_id": session_id}, user_id="intruder")
    assert (stranger["success"], stranger["code"]) == (False, "forbidden")
    anonymous = await _call(hass, "end_session", {"session_id": session_id}, user_id=None)
    assert anonymous["code"] == "invalid_input"
    stolen = await _call(hass, "start_session", {"list_ids": [list_id]}, user_id="intruder")
    assert stolen["code"] == "forbidden"

    owner = await _call(hass, "end_session", {"session_id": session_id})
    assert owner["success"] is True
