"""Local user profiles.

Home Assistant owns login; Trolley only keeps the profiles lists and sessions
refer to. Passwords are stored as bcrypt hashes. Hashing is CPU-bound, so it
goes through ``run_blocking`` (Home Assistant's executor at runtime).
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import bcrypt

from .const import BCRYPT_ROUNDS, DOMAIN
from .exceptions import ConflictError, NotFoundError, ValidationError
from .guard import result_guard
from .models import User, validate_email, validate_password, validate_username
from .repository import UserRepository

LOGGER = logging.getLogger(__name__)

BlockingRunner = Callable[..., Awaitable[Any]]

# bcrypt only looks at the first 72 bytes of a password
_BCRYPT_MAX_BYTES = 72


def hash_password(password: str, rounds: int = BCRYPT_ROUNDS) -> str:
    """Generate a bcrypt hash for ``password``."""

    salt = bcrypt.gensalt(rounds=rounds)
    return bcrypt.hashpw(password.encode("utf-8"), salt).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # Malformed stored hash
        return False


async def run_in_default_executor(func: Callable[..., Any], *args: Any) -> Any:
    return await asyncio.get_running_loop().run_in_executor(None, func, *args)


class UserService:
    def __init__(
        self,
        users: UserRepository,
        *,
        rounds: int = BCRYPT_ROUNDS,
        run_blocking: BlockingRunner = run_in_default_executor,
    ) -> None:
        self._users = users
        self._rounds = rounds
        self._run_blocking = run_blocking

    @result_guard("register_user")
    async def register(self, username: str, email: str, password: str) -> User:
        username = validate_username(username)
        email = validate_email(email)
        password = validate_password(password)
        if len(password.encode("utf-8")) > _BCRYPT_MAX_BYTES:
            raise ValidationError(f"password must be at most {_BCRYPT_MAX_BYTES} bytes")
        if await self._users.find_by_email(email) is not None:
            raise ConflictError("a user with this email already exists")

        password_hash = await self._run_blocking(hash_password, password, self._rounds)
        user = await self._users.save(
            {"username": username, "email": email, "password_hash": password_hash}
        )
        LOGGER.info(
            "User registered",
            extra={"domain": DOMAIN, "op": "register_user", "user_id": user.id},
        )
        return user

    @result_guard("authenticate")
    async def authenticate(self, email: str, password: str) -> User:
        user = await self._users.find_by_email(email) if isinstance(email, str) else None
        if user is None or not user.password_hash or not isinstance(password, str):
            raise ValidationError("invalid email or password")
        if not await self._run_blocking(verify_password, password, user.password_hash):
            raise ValidationError("invalid email or password")
        return user

    @result_guard("get_user")
    async def get_user(self, user_id: str) -> User:
        user = await self._users.find_by_id(user_id)
        if user is None or user.is_deleted:
            raise NotFoundError(f"user {user_id} not found")
        return user
