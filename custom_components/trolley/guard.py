"""Service-edge decorator turning exceptions into ``Result`` values."""

from __future__ import annotations

import functools
import logging
from collections.abc import Awaitable, Callable
from typing import ParamSpec, TypeVar

from .const import DOMAIN
from .exceptions import ConflictError, TrolleyError
from .models import Result

LOGGER = logging.getLogger(__name__)

P = ParamSpec("P")
T = TypeVar("T")

STORAGE_FAILURE = "storage_failure"


def result_guard(
    op: str,
) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[Result[T]]]]:
    """Decorator to wrap a service coroutine's return value in a ``Result``.

    Typed Trolley errors become ``Result.fail(message, code=exc.code)``. Any
    other exception becomes ``storage_failure`` with the message
    ``"Failed to <op>: <underlying message>"`` and is logged with its
    traceback. Nothing is retried.
    """

    label = op.replace("_", " ")

    def decorator(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[Result[T]]]:
        @functools.wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> Result[T]:
            try:
                return Result.ok(await func(*args, **kwargs))
            except TrolleyError as exc:
                level = logging.ERROR if isinstance(exc, ConflictError) else logging.WARNING
                LOGGER.log(
                    level,
                    "%s rejected: %s",
                    label,
                    exc,
                    extra={"domain": DOMAIN, "op": op, "code": exc.code},
                )
                return Result.fail(str(exc), code=exc.code)
            except Exception as exc:  # noqa: BLE001
                LOGGER.error(
                    "%s failed",
                    label,
                    extra={"domain": DOMAIN, "op": op, "code": STORAGE_FAILURE},
                    exc_info=True,
                )
                return Result.fail(f"Failed to {label}: {exc}", code=STORAGE_FAILURE)

        return wrapper

    return decorator
