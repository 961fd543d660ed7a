"""Schema migrations for Trolley persistent storage.

Forward-only, idempotent steps. Each step receives and returns the whole
persisted payload and must give the same result when applied twice.
"""

from __future__ import annotations

from copy import deepcopy
from typing import Any

from .engine import SCHEMA


def migrate(payload: dict[str, Any], *, from_version: int, to_version: int) -> dict[str, Any]:
    """Migrate ``payload`` from ``from_version`` to ``to_version``.

    Steps are applied sequentially: vN -> vN+1 -> ... -> vM. Downgrades are
    not supported and return the payload unchanged.
    """

    if from_version > to_version:
        return payload

    data: dict[str, Any] = deepcopy(payload)
    version = int(from_version)
    while version < to_version:
        next_version = version + 1
        step = _STEPS.get((version, next_version))
        if step is not None:
            data = step(data)
        version = next_version

    data["schema_version"] = to_version
    return data


def migrate_0_to_1(payload: dict[str, Any]) -> dict[str, Any]:
    """Nest tables under ``"tables"`` and make sure every table exists.

    Unversioned payloads kept each table at the top level; those are moved.
    """

    data = deepcopy(payload) if isinstance(payload, dict) else {}
    tables = data.get("tables")
    if not isinstance(tables, dict):
        tables = {}
    for name in SCHEMA:
        legacy = data.pop(name, None)
        if name not in tables:
            tables[name] = legacy if isinstance(legacy, dict) else {}
    data["tables"] = tables
    return data


_STEPS = {
    (0, 1): migrate_0_to_1,
}
