"""Trolley integration bootstrap.

Loads persisted storage, builds the ``TrolleyRuntime`` and registers the
``trolley.*`` services. Everything lives under ``hass.data[DOMAIN]``.
"""

from __future__ import annotations

import logging
from typing import Any

from homeassistant.config_entries import ConfigEntry
from homeassistant.core import HomeAssistant
from homeassistant.exceptions import ConfigEntryNotReady
from homeassistant.helpers import config_validation as cv

from . import services as services_mod
from .const import DOMAIN, INTEGRATION_VERSION, STORAGE_KEY
from .engine import StorageEngine
from .exceptions import StorageError
from .runtime import TrolleyRuntime
from .storage import CURRENT_SCHEMA_VERSION, DomainStore, async_persist_repo

LOGGER = logging.getLogger(__name__)


# This integration is config-entry only; no YAML configuration is accepted.
CONFIG_SCHEMA = cv.config_entry_only_config_schema(DOMAIN)


async def async_setup(hass: HomeAssistant, _config: dict) -> bool:
    """Set up the Trolley domain at Home Assistant startup."""

    hass.data.setdefault(DOMAIN, {})
    return True


async def async_setup_entry(hass: HomeAssistant, entry: ConfigEntry) -> bool:
    """Set up Trolley from a config entry."""

    bucket = hass.data.setdefault(DOMAIN, {})
    store = DomainStore(hass, key=STORAGE_KEY, version=CURRENT_SCHEMA_VERSION)
    bucket["store"] = store

    try:
        payload = await store.async_load()
        _validate_storage_payload(payload, schema_version=store.schema_version)
    except StorageError as exc:
        LOGGER.error(
            "Storage validation failed during setup",
            extra={"domain": DOMAIN, "op": "setup_storage", "schema_version": store.schema_version},
            exc_info=True,
        )
        raise ConfigEntryNotReady("storage validation failed") from exc

    engine = StorageEngine.from_state(payload)
    _log_storage_health(engine, schema_version=store.schema_version)
    runtime = TrolleyRuntime.build(engine, run_blocking=hass.async_add_executor_job)
    bucket["runtime"] = runtime

    await _report_incomplete_sagas(runtime)
    services_mod.setup(hass)
    return True


async def async_unload_entry(hass: HomeAssistant, entry: ConfigEntry) -> bool:
    """Unload a config entry, persisting the current state first."""

    bucket = hass.data.get(DOMAIN) or {}
    if bucket.get("runtime") is not None:
        try:
            await async_persist_repo(hass)
        except StorageError:
            LOGGER.warning(
                "Failed to persist during unload",
                extra={"domain": DOMAIN, "op": "unload"},
                exc_info=True,
            )

    services_mod.teardown(hass)
    bucket.pop("runtime", None)
    bucket.pop("store", None)
    return True


def _validate_storage_payload(payload: dict[str, Any], *, schema_version: int) -> None:
    """Validate loaded storage payload shape and version."""

    if not isinstance(payload, dict):
        raise StorageError("storage payload is not a dict")

    if int(payload.get("schema_version", -1)) != int(schema_version):
        raise StorageError("storage payload schema_version mismatch")

    tables = payload.get("tables")
    if not isinstance(tables, dict) or not all(isinstance(t, dict) for t in tables.values()):
        raise StorageError("storage payload missing required tables")


def _log_storage_health(engine: StorageEngine, *, schema_version: int) -> None:
    """Log a per-table record count summary after load."""

    counts = engine.get_counts()
    total = sum(counts.values())
    level = logging.WARNING if total == 0 else logging.DEBUG
    LOGGER.log(
        level,
        "Storage health: version=%s schema_version=%s records=%s",
        INTEGRATION_VERSION,
        schema_version,
        total,
        extra={
            "domain": DOMAIN,
            "op": "setup_storage_health",
            "integration_version": INTEGRATION_VERSION,
            "schema_version": schema_version,
            "counts": counts,
        },
    )


async def _report_incomplete_sagas(runtime: TrolleyRuntime) -> None:
    """Warn about session orchestrations that were interrupted before finishing."""

    for saga in await runtime.sagas.find_incomplete():
        LOGGER.warning(
            "Interrupted %s saga %s; completed steps: %s",
            saga.kind,
            saga.id,
            ", ".join(saga.steps) or "none",
            extra={
                "domain": DOMAIN,
                "op": "setup_saga_check",
                "saga_id": saga.id,
                "session_id": saga.session_id,
            },
        )
