"""Persistent storage manager for Trolley.

Wraps Home Assistant's Store with schema-aware load/save and migrations.

Data shape persisted:
    {
        "schema_version": int,
        "tables": {table_name -> {id -> record}},
    }

First load yields an empty dataset; older payloads go through forward-only
migrations and are written back once migrated.
"""

from __future__ import annotations

import asyncio
import logging
import time
from copy import deepcopy
from typing import Any, Final

from homeassistant.core import HomeAssistant
from homeassistant.helpers.storage import Store

from . import migrations
from .const import DOMAIN, STORAGE_KEY
from .engine import SCHEMA
from .exceptions import StorageError

_LOGGER = logging.getLogger(__name__)

# Current schema version for persisted payloads
CURRENT_SCHEMA_VERSION: Final[int] = 1


def _empty_payload() -> dict[str, Any]:
    """Create a new empty payload matching the current schema."""

    return {
        "schema_version": CURRENT_SCHEMA_VERSION,
        "tables": {name: {} for name in SCHEMA},
    }


def _normalize(raw: dict[str, Any], version: int) -> dict[str, Any]:
    data = _empty_payload()
    data["schema_version"] = version
    tables = raw.get("tables")
    if isinstance(tables, dict):
        data["tables"].update(deepcopy(tables))
    return data


def _get_persist_lock(hass: HomeAssistant) -> asyncio.Lock:
    """Get or create the persistence lock for this hass instance."""

    bucket = hass.data.setdefault(DOMAIN, {})
    if "persist_lock" not in bucket:
        bucket["persist_lock"] = asyncio.Lock()
    return bucket["persist_lock"]


class DomainStore:
    """Schema-aware wrapper around Home Assistant's Store for Trolley.

    Exposed via ``hass.data[DOMAIN]["store"]``.
    """

    def __init__(
        self, hass: HomeAssistant, *, key: str = STORAGE_KEY, version: int = CURRENT_SCHEMA_VERSION
    ) -> None:
        self._hass = hass
        self._key = key
        self._store: Store[dict[str, Any]] = Store(hass, version, key)
        self._schema_version = version

    @property
    def schema_version(self) -> int:
        return self._schema_version

    @property
    def key(self) -> str:
        return self._key

    async def async_load(self) -> dict[str, Any]:
        """Load the persisted dataset, applying migrations if needed.

        Returns a copy so callers cannot mutate the Store's cached object.
        """

        raw = await self._store.async_load()
        if raw is None:
            return _empty_payload()

        from_version = int(raw.get("schema_version", 0)) if isinstance(raw, dict) else 0
        if from_version != self._schema_version:
            return deepcopy(await self.async_migrate_if_needed(raw))
        return _normalize(raw, self._schema_version)

    async def async_save(self, data: dict[str, Any]) -> None:
        """Persist the dataset with the current schema_version."""

        payload = _normalize(data if isinstance(data, dict) else {}, self._schema_version)
        await self._store.async_save(payload)

    async def async_migrate_if_needed(self, raw: dict[str, Any]) -> dict[str, Any]:
        """Migrate ``raw`` to the current schema iff needed.

        A migrated payload is saved back to storage before it is returned.
        """

        if not isinstance(raw, dict):
            _LOGGER.error(
                "Corrupted storage payload: expected dict, got %s",
                type(raw).__name__,
                extra={
                    "domain": DOMAIN,
                    "op": "migrate",
                    "from_version": None,
                    "to_version": self._schema_version,
                    "storage_key": self.key,
                },
            )
            raise StorageError("corrupted storage payload: not a dict")

        from_version = int(raw.get("schema_version", 0))
        to_version = self._schema_version
        if from_version == to_version:
            return _normalize(raw, to_version)

        try:
            migrated = migrations.migrate(raw, from_version=from_version, to_version=to_version)
        except Exception as exc:
            # Leave the on-disk payload untouched
            _LOGGER.error(
                "Storage migration failed",
                extra={
                    "domain": DOMAIN,
                    "op": "migrate",
                    "from_version": from_version,
                    "to_version": to_version,
                    "storage_key": self.key,
                },
                exc_info=True,
            )
            raise StorageError("storage migration failed") from exc

        migrated = _normalize(migrated, to_version)
        _LOGGER.info(
            "Storage migrated",
            extra={
                "domain": DOMAIN,
                "op": "migrate",
                "from_version": from_version,
                "to_version": to_version,
                "storage_key": self.key,
            },
        )
        await self._store.async_save(migrated)
        return migrated


async def async_persist_repo(hass: HomeAssistant) -> None:
    """Persist the engine snapshot through DomainStore under the persist lock.

    Fails fast with StorageError when setup has not populated
    ``hass.data[DOMAIN]`` so a missing store never silently drops writes.
    """

    lock = _get_persist_lock(hass)
    async with lock:
        bucket = hass.data.get(DOMAIN) or {}
        store = bucket.get("store")
        runtime = bucket.get("runtime")
        if store is None:
            raise StorageError("storage manager not initialized; run integration setup")
        if runtime is None:
            raise StorageError("runtime not initialized; run integration setup")

        start_time = time.monotonic()
        generation = runtime.engine.generation
        _LOGGER.debug(
            "Persisting engine state",
            extra={"domain": DOMAIN, "op": "persist_start", "generation": generation},
        )

        payload = runtime.engine.export_state()
        try:
            await store.async_save(payload)
        except Exception as exc:
            _LOGGER.error(
                "Failed to persist engine state",
                extra={
                    "domain": DOMAIN,
                    "op": "persist_failed",
                    "generation": generation,
                    "elapsed_ms": int((time.monotonic() - start_time) * 1000),
                },
                exc_info=True,
            )
            raise StorageError("failed to persist engine state") from exc
        _LOGGER.debug(
            "Engine state persisted",
            extra={
                "domain": DOMAIN,
                "op": "persist_complete",
                "generation": generation,
                "elapsed_ms": int((time.monotonic() - start_time) * 1000),
            },
        )
