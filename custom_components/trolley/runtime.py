"""Explicit wiring of repositories and services.

One ``TrolleyRuntime`` is built per config entry at setup time and stored in
``hass.data[DOMAIN]["runtime"]``. Services receive their repositories through
their constructors; nothing is looked up globally.
"""

from __future__ import annotations

from dataclasses import dataclass

from .const import BCRYPT_ROUNDS
from .engine import StorageEngine
from .list_service import ListService
from .repository import (
    ListItemRepository,
    ListOwnerRepository,
    ShoppingListRepository,
    ShoppingSessionRepository,
    UserRepository,
)
from .saga import SagaLog
from .session_service import SessionService
from .user_service import BlockingRunner, UserService, run_in_default_executor


@dataclass(frozen=True)
class TrolleyRuntime:
    engine: StorageEngine
    lists: ShoppingListRepository
    owners: ListOwnerRepository
    items: ListItemRepository
    sessions: ShoppingSessionRepository
    users: UserRepository
    sagas: SagaLog
    list_service: ListService
    session_service: SessionService
    user_service: UserService

    @classmethod
    def build(
        cls,
        engine: StorageEngine | None = None,
        *,
        bcrypt_rounds: int = BCRYPT_ROUNDS,
        run_blocking: BlockingRunner = run_in_default_executor,
    ) -> TrolleyRuntime:
        """Construct every repository and service over ``engine``.

        ``run_blocking`` executes CPU-bound work (password hashing) off the
        event loop; setup passes ``hass.async_add_executor_job``.
        """

        engine = engine if engine is not None else StorageEngine()
        lists = ShoppingListRepository(engine)
        owners = ListOwnerRepository(engine)
        items = ListItemRepository(engine)
        sessions = ShoppingSessionRepository(engine)
        users = UserRepository(engine)
        sagas = SagaLog(engine)
        return cls(
            engine=engine,
            lists=lists,
            owners=owners,
            items=items,
            sessions=sessions,
            users=users,
            sagas=sagas,
            list_service=ListService(lists, owners, items),
            session_service=SessionService(sessions, lists, owners, items, sagas),
            user_service=UserService(users, rounds=bcrypt_rounds, run_blocking=run_blocking),
        )
