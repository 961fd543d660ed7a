"""Shared fixtures for Trolley tests.

Core modules (engine, repositories, services) are exercised without Home
Assistant running through the ``runtime`` fixture. Integration glue uses the
``hass`` fixture provided by pytest-homeassistant-custom-component.
"""

from __future__ import annotations

import sys
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest

# Ensure project root is on sys.path for module imports
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from custom_components.trolley.runtime import TrolleyRuntime  # noqa: E402

# Lowest bcrypt work factor; keeps hashing fast in tests
TEST_BCRYPT_ROUNDS = 4


async def run_inline(func: Callable[..., Any], *args: Any) -> Any:
    """Run blocking work directly on the loop thread."""

    return func(*args)


@pytest.fixture
def runtime() -> TrolleyRuntime:
    """Fresh runtime over an empty in-memory engine."""

    return TrolleyRuntime.build(bcrypt_rounds=TEST_BCRYPT_ROUNDS, run_blocking=run_inline)
