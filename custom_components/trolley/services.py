"""Service registration and handlers for Trolley.

Exposes Home Assistant services under the ``trolley`` domain for lists, items,
sharing, shopping sessions and user profiles. Input is validated with
voluptuous and operations are delegated to the services of the
``TrolleyRuntime`` built at setup.

Every service returns the serialized ``Result`` as its service response. The
acting user is the calling Home Assistant user unless ``user_id`` is given.
Successful mutations persist the engine snapshot before responding.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable, Callable
from typing import Any

import voluptuous as vol
from homeassistant.core import HomeAssistant, ServiceCall, ServiceResponse, SupportsResponse
from homeassistant.helpers import config_validation as cv

from .const import DOMAIN
from .exceptions import StorageError
from .models import Result, SessionStatus
from .runtime import TrolleyRuntime
from .storage import async_persist_repo

LOGGER = logging.getLogger(__name__)

Handler = Callable[[HomeAssistant, dict[str, Any], str | None], Awaitable[Result[Any]]]


# -----------------------------
# Validation schemas
# -----------------------------

_USER = {vol.Optional("user_id"): cv.string}

SCHEMA_CREATE_LIST = vol.Schema(
    {
        **_USER,
        vol.Required("name"): cv.string,
        vol.Optional("description"): vol.Any(cv.string, None),
        vol.Optional("is_shared", default=False): cv.boolean,
        vol.Optional("community_id"): vol.Any(cv.string, None),
    }
)

SCHEMA_UPDATE_LIST = vol.Schema(
    {
        **_USER,
        vol.Required("list_id"): cv.string,
        vol.Optional("name"): cv.string,
        vol.Optional("description"): vol.Any(cv.string, None),
        vol.Optional("is_shared"): cv.boolean,
        vol.Optional("community_id"): vol.Any(cv.string, None),
    }
)

SCHEMA_DELETE_LIST = vol.Schema({**_USER, vol.Required("list_id"): cv.string})

SCHEMA_ADD_ITEM = vol.Schema(
    {
        **_USER,
        vol.Required("list_id"): cv.string,
        vol.Required("name"): cv.string,
        vol.Optional("quantity", default=1): vol.All(vol.Coerce(int), vol.Range(min=1)),
        vol.Required("unit"): cv.string,
        vol.Optional("sort_order"): vol.Coerce(int),
    }
)

SCHEMA_UPDATE_ITEM = vol.Schema(
    {
        **_USER,
        vol.Required("item_id"): cv.string,
        vol.Optional("name"): cv.string,
        vol.Optional("quantity"): vol.All(vol.Coerce(int), vol.Range(min=1)),
        vol.Optional("unit"): cv.string,
        vol.Optional("is_purchased"): cv.boolean,
        vol.Optional("sort_order"): vol.Coerce(int),
    }
)

SCHEMA_REMOVE_ITEM = vol.Schema({**_USER, vol.Required("item_id"): cv.string})

SCHEMA_REORDER_ITEMS = vol.Schema(
    {
        **_USER,
        vol.Required("list_id"): cv.string,
        vol.Required("item_ids"): vol.All(cv.ensure_list, [cv.string]),
    }
)

SCHEMA_SHARE_LIST = vol.Schema(
    {
        **_USER,
        vol.Required("list_id"): cv.string,
        vol.Required("owner_id"): cv.string,
    }
)

SCHEMA_START_SESSION = vol.Schema(
    {
        **_USER,
        vol.Required("list_ids"): vol.All(cv.ensure_list, [cv.string]),
    }
)

SCHEMA_END_SESSION = vol.Schema(
    {
        **_USER,
        vol.Required("session_id"): cv.string,
        vol.Optional("status", default=SessionStatus.COMPLETED.value): vol.In(
            [SessionStatus.COMPLETED.value, SessionStatus.CANCELLED.value]
        ),
        vol.Optional("create_new_list_for_unpurchased", default=False): cv.boolean,
        vol.Optional("new_list_name"): cv.string,
    }
)

SCHEMA_SESSION_LIST = vol.Schema(
    {
        **_USER,
        vol.Required("session_id"): cv.string,
        vol.Required("list_id"): cv.string,
    }
)

SCHEMA_SESSION = vol.Schema({**_USER, vol.Required("session_id"): cv.string})

SCHEMA_REGISTER_USER = vol.Schema(
    {
        **_USER,
        vol.Required("username"): cv.string,
        vol.Required("email"): cv.string,
        vol.Required("password"): cv.string,
    }
)


# -----------------------------
# Internal helpers
# -----------------------------


def _get_runtime(hass: HomeAssistant) -> TrolleyRuntime:
    runtime = (hass.data.get(DOMAIN) or {}).get("runtime")
    if runtime is None:
        raise StorageError("runtime not initialized; run integration setup")
    return runtime


def _missing_user() -> Result[Any]:
    return Result.fail(
        "user_id is required when the call has no user context", code="invalid_input"
    )


async def _persist_after(hass: HomeAssistant, op: str, result: Result[Any]) -> Result[Any]:
    """Persist the engine snapshot after a successful mutation."""

    if not result.success:
        return result
    try:
        await async_persist_repo(hass)
    except StorageError as exc:
        LOGGER.warning(
            "Failed to persist after %s",
            op,
            exc_info=True,
            extra={"domain": DOMAIN, "op": op},
        )
        return Result.fail(f"Failed to persist {op.replace('_', ' ')}: {exc}", code=exc.code)
    return result


# -----------------------------
# Service handlers (exported for tests)
# -----------------------------


async def service_create_list(
    hass: HomeAssistant, data: dict[str, Any], user_id: str | None
) -> Result[Any]:
    if user_id is None:
        return _missing_user()
    params = {k: data[k] for k in ("name", "description", "is_shared", "community_id") if k in data}
    result = await _get_runtime(hass).list_service.create_list(params, user_id)
    return await _persist_after(hass, "create_list", result)


async def service_update_list(
    hass: HomeAssistant, data: dict[str, Any], user_id: str | None
) -> Result[Any]:
    if user_id is None:
        return _missing_user()
    params = {k: data[k] for k in ("name", "description", "is_shared", "community_id") if k in data}
    params["id"] = data["list_id"]
    result = await _get_runtime(hass).list_service.update_list(params, user_id)
    return await _persist_after(hass, "update_list", result)


async def service_delete_list(
    hass: HomeAssistant, data: dict[str, Any], user_id: str | None
) -> Result[Any]:
    if user_id is None:
        return _missing_user()
    result = await _get_runtime(hass).list_service.delete_list(data["list_id"], user_id)
    return await _persist_after(hass, "delete_list", result)


async def service_add_item(
    hass: HomeAssistant, data: dict[str, Any], _user_id: str | None
) -> Result[Any]:
    fields = ("list_id", "name", "quantity", "unit", "sort_order")
    params = {k: data[k] for k in fields if k in data}
    result = await _get_runtime(hass).list_service.add_item_to_list(params)
    return await _persist_after(hass, "add_item", result)


async def service_update_item(
    hass: HomeAssistant, data: dict[str, Any], user_id: str | None
) -> Result[Any]:
    if user_id is None:
        return _missing_user()
    params = {
        k: data[k] for k in ("name", "quantity", "unit", "is_purchased", "sort_order") if k in data
    }
    params["id"] = data["item_id"]
    result = await _get_runtime(hass).list_service.update_list_item(params, user_id)
    return await _persist_after(hass, "update_item", result)


async def service_remove_item(
    hass: HomeAssistant, data: dict[str, Any], _user_id: str | None
) -> Result[Any]:
    result = await _get_runtime(hass).list_service.remove_item_from_list(data["item_id"])
    return await _persist_after(hass, "remove_item", result)


async def service_reorder_items(
    hass: HomeAssistant, data: dict[str, Any], user_id: str | None
) -> Result[Any]:
    if user_id is None:
        return _missing_user()
    result = await _get_runtime(hass).list_service.reorder_list_items(
        data["list_id"], list(data["item_ids"]), user_id
    )
    return await _persist_after(hass, "reorder_items", result)


async def service_share_list(
    hass: HomeAssistant, data: dict[str, Any], user_id: str | None
) -> Result[Any]:
    if user_id is None:
        return _missing_user()
    result = await _get_runtime(hass).list_service.share_list(
        data["list_id"], data["owner_id"], user_id
    )
    return await _persist_after(hass, "share_list", result)


async def service_unshare_list(
    hass: HomeAssistant, data: dict[str, Any], user_id: str | None
) -> Result[Any]:
    if user_id is None:
        return _missing_user()
    result = await _get_runtime(hass).list_service.unshare_list(
        data["list_id"], data["owner_id"], user_id
    )
    return await _persist_after(hass, "unshare_list", result)


async def service_start_session(
    hass: HomeAssistant, data: dict[str, Any], user_id: str | None
) -> Result[Any]:
    if user_id is None:
        return _missing_user()
    result = await _get_runtime(hass).session_service.create_session(
        user_id, list(data["list_ids"])
    )
    return await _persist_after(hass, "start_session", result)


async def service_end_session(
    hass: HomeAssistant, data: dict[str, Any], user_id: str | None
) -> Result[Any]:
    if user_id is None:
        return _missing_user()
    result = await _get_runtime(hass).session_service.end_session(
        data["session_id"],
        user_id,
        data.get("status", SessionStatus.COMPLETED.value),
        create_new_list_for_unpurchased=bool(data.get("create_new_list_for_unpurchased")),
        new_list_name=data.get("new_list_name"),
    )
    return await _persist_after(hass, "end_session", result)


async def service_add_list_to_session(
    hass: HomeAssistant, data: dict[str, Any], user_id: str | None
) -> Result[Any]:
    if user_id is None:
        return _missing_user()
    result = await _get_runtime(hass).session_service.add_list_to_session(
        data["session_id"], data["list_id"], user_id
    )
    return await _persist_after(hass, "add_list_to_session", result)


async def service_remove_list_from_session(
    hass: HomeAssistant, data: dict[str, Any], user_id: str | None
) -> Result[Any]:
    if user_id is None:
        return _missing_user()
    result = await _get_runtime(hass).session_service.remove_list_from_session(
        data["session_id"], data["list_id"], user_id
    )
    return await _persist_after(hass, "remove_list_from_session", result)


async def service_get_consolidated_items(
    hass: HomeAssistant, data: dict[str, Any], _user_id: str | None
) -> Result[Any]:
    return await _get_runtime(hass).session_service.get_consolidated_items(data["session_id"])


async def service_get_items_by_source_list(
    hass: HomeAssistant, data: dict[str, Any], _user_id: str | None
) -> Result[Any]:
    return await _get_runtime(hass).session_service.get_items_by_source_list(data["session_id"])


async def service_register_user(
    hass: HomeAssistant, data: dict[str, Any], _user_id: str | None
) -> Result[Any]:
    result = await _get_runtime(hass).user_service.register(
        data["username"], data["email"], data["password"]
    )
    return await _persist_after(hass, "register_user", result)


# name -> (schema, handler, response support)
SERVICES: dict[str, tuple[vol.Schema, Handler, SupportsResponse]] = {
    "create_list": (SCHEMA_CREATE_LIST, service_create_list, SupportsResponse.OPTIONAL),
    "update_list": (SCHEMA_UPDATE_LIST, service_update_list, SupportsResponse.OPTIONAL),
    "delete_list": (SCHEMA_DELETE_LIST, service_delete_list, SupportsResponse.OPTIONAL),
    "add_item": (SCHEMA_ADD_ITEM, service_add_item, SupportsResponse.OPTIONAL),
    "update_item": (SCHEMA_UPDATE_ITEM, service_update_item, SupportsResponse.OPTIONAL),
    "remove_item": (SCHEMA_REMOVE_ITEM, service_remove_item, SupportsResponse.OPTIONAL),
    "reorder_items": (SCHEMA_REORDER_ITEMS, service_reorder_items, SupportsResponse.OPTIONAL),
    "share_list": (SCHEMA_SHARE_LIST, service_share_list, SupportsResponse.OPTIONAL),
    "unshare_list": (SCHEMA_SHARE_LIST, service_unshare_list, SupportsResponse.OPTIONAL),
    "start_session": (SCHEMA_START_SESSION, service_start_session, SupportsResponse.OPTIONAL),
    "end_session": (SCHEMA_END_SESSION, service_end_session, SupportsResponse.OPTIONAL),
    "add_list_to_session": (
        SCHEMA_SESSION_LIST,
        service_add_list_to_session,
        SupportsResponse.OPTIONAL,
    ),
    "remove_list_from_session": (
        SCHEMA_SESSION_LIST,
        service_remove_list_from_session,
        SupportsResponse.OPTIONAL,
    ),
    "get_consolidated_items": (
        SCHEMA_SESSION,
        service_get_consolidated_items,
        SupportsResponse.ONLY,
    ),
    "get_items_by_source_list": (
        SCHEMA_SESSION,
        service_get_items_by_source_list,
        SupportsResponse.ONLY,
    ),
    "register_user": (SCHEMA_REGISTER_USER, service_register_user, SupportsResponse.OPTIONAL),
}


def _make_service_handler(
    hass: HomeAssistant, name: str, handler: Handler
) -> Callable[[ServiceCall], Awaitable[ServiceResponse]]:
    async def _handle(call: ServiceCall) -> ServiceResponse:
        data = dict(call.data)
        user_id = data.pop("user_id", None) or call.context.user_id
        result = await handler(hass, data, user_id)
        LOGGER.debug(
            "Service %s handled",
            name,
            extra={"domain": DOMAIN, "op": name, "success": result.success},
        )
        return result.to_dict()

    return _handle


def setup(hass: HomeAssistant) -> None:
    """Register trolley.* services on Home Assistant."""

    # Idempotent across reloads
    bucket = hass.data.setdefault(DOMAIN, {})
    if bucket.get("services_registered"):
        return

    for name, (schema, handler, supports_response) in SERVICES.items():
        hass.services.async_register(
            DOMAIN,
            name,
            _make_service_handler(hass, name, handler),
            schema=schema,
            supports_response=supports_response,
        )

    bucket["services_registered"] = True


def teardown(hass: HomeAssistant) -> None:
    """Remove trolley.* services."""

    for name in SERVICES:
        hass.services.async_remove(DOMAIN, name)
    (hass.data.get(DOMAIN) or {}).pop("services_registered", None)
