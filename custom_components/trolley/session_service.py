"""Shopping session state machine and item consolidation.

A session goes ``active`` -> ``completed`` | ``cancelled``; both end states are
terminal. While a session is active, every list it references is locked. At
most one session per user is active: starting a new one cancels the old one
through the regular end-session flow.

Only an owner of a list (its creator or a co-owner) can put it in a session,
and only the user who started a session can end it or change its lists.

Starting and ending a session are multi-step orchestrations without a
transaction. Each run is recorded in the saga log so an interrupted run can
be found after a restart (see ``saga.py``).
"""

from __future__ import annotations

import logging
from collections.abc import Iterable

from .const import (
    DEFAULT_UNPURCHASED_LIST_NAME,
    DOMAIN,
    SORT_ORDER_STEP,
    UNPURCHASED_LIST_DESCRIPTION,
)
from .exceptions import (
    AlreadyLockedError,
    ForbiddenError,
    NotActiveError,
    NotFoundError,
    ValidationError,
)
from .guard import result_guard
from .models import (
    ConsolidatedItem,
    ItemSource,
    ListItem,
    SessionDetails,
    SessionSaga,
    SessionStatus,
    ShoppingList,
    ShoppingSession,
    SourceListPurchases,
    consolidation_key,
    utc_now,
    validate_list_name,
)
from .repository import (
    ListItemRepository,
    ListOwnerRepository,
    ShoppingListRepository,
    ShoppingSessionRepository,
)
from .saga import SAGA_CREATE_SESSION, SAGA_END_SESSION, SagaLog

LOGGER = logging.getLogger(__name__)


def _coerce_end_status(status: SessionStatus | str) -> SessionStatus:
    try:
        value = SessionStatus(status)
    except ValueError as exc:
        raise ValidationError(f"unknown session status: {status}") from exc
    if value is SessionStatus.ACTIVE:
        raise ValidationError("a session can only end as completed or cancelled")
    return value


def _unique(ids: Iterable[str]) -> list[str]:
    return list(dict.fromkeys(ids))


class SessionService:
    """Start, end and inspect shopping sessions."""

    def __init__(
        self,
        sessions: ShoppingSessionRepository,
        lists: ShoppingListRepository,
        owners: ListOwnerRepository,
        items: ListItemRepository,
        sagas: SagaLog,
    ) -> None:
        self._sessions = sessions
        self._lists = lists
        self._owners = owners
        self._items = items
        self._sagas = sagas

    # -----------------------------
    # Internal helpers
    # -----------------------------

    async def _get_session(self, session_id: str) -> ShoppingSession:
        session = await self._sessions.find_by_id(session_id)
        if session is None or session.is_deleted:
            raise NotFoundError(f"session {session_id} not found")
        return session

    async def _get_active_session(self, session_id: str) -> ShoppingSession:
        session = await self._get_session(session_id)
        if not session.is_active:
            raise NotActiveError(f"session {session_id} is not active")
        return session

    async def _get_owned_session(self, session_id: str, user_id: str) -> ShoppingSession:
        session = await self._get_active_session(session_id)
        if session.user_id != user_id:
            raise ForbiddenError(f"user {user_id} does not own session {session_id}")
        return session

    async def _get_owned_list(self, list_id: str, user_id: str) -> ShoppingList:
        lst = await self._lists.find_by_id(list_id)
        if lst is None or lst.is_deleted:
            raise NotFoundError(f"list {list_id} not found")
        if not await self._owners.is_owner(lst, user_id):
            raise ForbiddenError(f"user {user_id} does not own list {list_id}")
        return lst

    async def _get_lockable_list(self, list_id: str, user_id: str) -> ShoppingList:
        lst = await self._get_owned_list(list_id, user_id)
        if lst.is_locked:
            raise AlreadyLockedError(f"list {list_id} is already locked")
        return lst

    async def _session_lists(self, session: ShoppingSession) -> list[ShoppingList]:
        """Lists of the session in membership order, the user's own lists first.

        Soft-deleted lists are kept: a finished session still reports the
        items of lists it superseded.
        """

        lists: list[ShoppingList] = []
        for list_id in await self._sessions.get_session_lists(session.id):
            lst = await self._lists.find_by_id(list_id)
            if lst is not None:
                lists.append(lst)
        # sorted() is stable, so membership order holds within each group
        return sorted(lists, key=lambda lst: lst.created_by != session.user_id)

    async def _run_create(self, user_id: str, list_ids: list[str]) -> ShoppingSession:
        # A rejected start must not cancel the running session
        for list_id in list_ids:
            await self._get_owned_list(list_id, user_id)

        existing = await self._sessions.find_active_by_user(user_id)
        if existing is not None:
            LOGGER.info(
                "Cancelling previous active session",
                extra={"domain": DOMAIN, "op": "create_session", "session_id": existing.id},
            )
            await self._run_end(existing, SessionStatus.CANCELLED, False, None)

        # Locks are read after the cancel released this user's lists
        for list_id in list_ids:
            await self._get_lockable_list(list_id, user_id)

        saga = await self._sagas.start(SAGA_CREATE_SESSION, user_id)
        try:
            session = await self._sessions.save(
                {"user_id": user_id, "started_at": utc_now(), "status": SessionStatus.ACTIVE}
            )
            saga = await self._sagas.step(saga, "session_created", session_id=session.id)
            for list_id in list_ids:
                await self._sessions.add_list_to_session(session.id, list_id)
                await self._lists.lock_list(list_id)
                saga = await self._sagas.step(saga, f"list_locked:{list_id}")
        except Exception as exc:
            await self._sagas.fail(saga, str(exc))
            raise
        await self._sagas.complete(saga)
        return session

    async def _move_unpurchased(
        self, saga: SessionSaga, session: ShoppingSession, list_ids: list[str], name: str
    ) -> tuple[SessionSaga, set[str]]:
        """Copy unpurchased items to a new list; returns the source lists deleted."""

        leftover = await self._lists.save(
            {
                "name": name,
                "description": UNPURCHASED_LIST_DESCRIPTION,
                "created_by": session.user_id,
                "is_shared": False,
                "is_locked": False,
            }
        )
        await self._owners.add_owner(leftover.id, session.user_id)
        saga = await self._sagas.step(saga, f"leftover_list_created:{leftover.id}")

        deleted: set[str] = set()
        next_order = SORT_ORDER_STEP
        for list_id in list_ids:
            unpurchased = [i for i in await self._items.find_by_list(list_id) if not i.is_purchased]
            if not unpurchased:
                continue
            copies = []
            for item in unpurchased:
                copies.append(
                    {
                        "list_id": leftover.id,
                        "name": item.name,
                        "quantity": item.quantity,
                        "unit": item.unit,
                        "is_purchased": False,
                        "sort_order": next_order,
                    }
                )
                next_order += SORT_ORDER_STEP
            await self._items.bulk_save(copies)
            for item in unpurchased:
                await self._items.soft_delete(item.id)
            # A list that still had open items is superseded by the leftover list
            await self._lists.soft_delete(list_id)
            deleted.add(list_id)
            saga = await self._sagas.step(saga, f"items_moved:{list_id}")
        return saga, deleted

    async def _run_end(
        self,
        session: ShoppingSession,
        status: SessionStatus,
        create_new_list_for_unpurchased: bool,
        new_list_name: str | None,
    ) -> ShoppingSession:
        name = DEFAULT_UNPURCHASED_LIST_NAME
        if create_new_list_for_unpurchased and new_list_name is not None:
            name = validate_list_name(new_list_name)
        saga = await self._sagas.start(SAGA_END_SESSION, session.user_id, session.id)
        try:
            list_ids = await self._sessions.get_session_lists(session.id)
            deleted: set[str] = set()
            if create_new_list_for_unpurchased:
                saga, deleted = await self._move_unpurchased(saga, session, list_ids, name)
            for list_id in list_ids:
                if list_id in deleted:
                    continue
                lst = await self._lists.find_by_id(list_id)
                if lst is None or lst.is_deleted:
                    continue
                await self._lists.unlock_list(list_id)
            saga = await self._sagas.step(saga, "lists_unlocked")
            ended = await self._sessions.end_session(session.id, status)
            saga = await self._sagas.step(saga, "session_ended")
        except Exception as exc:
            await self._sagas.fail(saga, str(exc))
            raise
        await self._sagas.complete(saga)
        LOGGER.info(
            "Session ended",
            extra={
                "domain": DOMAIN,
                "op": "end_session",
                "session_id": session.id,
                "status": status.value,
            },
        )
        return ended

    # -----------------------------
    # Public API — lifecycle
    # -----------------------------

    @result_guard("create_session")
    async def create_session(self, user_id: str, list_ids: list[str]) -> ShoppingSession:
        ids = _unique(list_ids)
        if not ids:
            raise ValidationError("a session needs at least one list")
        return await self._run_create(user_id, ids)

    @result_guard("end_session")
    async def end_session(
        self,
        session_id: str,
        user_id: str,
        status: SessionStatus | str,
        create_new_list_for_unpurchased: bool = False,
        new_list_name: str | None = None,
    ) -> ShoppingSession:
        end_status = _coerce_end_status(status)
        session = await self._get_owned_session(session_id, user_id)
        return await self._run_end(
            session, end_status, create_new_list_for_unpurchased, new_list_name
        )

    @result_guard("add_list_to_session")
    async def add_list_to_session(
        self, session_id: str, list_id: str, user_id: str
    ) -> SessionDetails:
        session = await self._get_owned_session(session_id, user_id)
        if list_id in await self._sessions.get_session_lists(session.id):
            raise AlreadyLockedError(f"list {list_id} is already part of the session")
        await self._get_lockable_list(list_id, user_id)
        await self._sessions.add_list_to_session(session.id, list_id)
        await self._lists.lock_list(list_id)
        return SessionDetails(session=session, lists=await self._session_lists(session))

    @result_guard("remove_list_from_session")
    async def remove_list_from_session(
        self, session_id: str, list_id: str, user_id: str
    ) -> SessionDetails:
        session = await self._get_owned_session(session_id, user_id)
        if list_id not in await self._sessions.get_session_lists(session.id):
            raise NotFoundError(f"list {list_id} is not part of session {session_id}")
        await self._sessions.remove_list_from_session(session.id, list_id)
        lst = await self._lists.find_by_id(list_id)
        if lst is not None and not lst.is_deleted:
            await self._lists.unlock_list(list_id)
        return SessionDetails(session=session, lists=await self._session_lists(session))

    # -----------------------------
    # Public API — queries
    # -----------------------------

    @result_guard("get_active_session")
    async def get_active_session(self, user_id: str) -> ShoppingSession | None:
        return await self._sessions.find_active_by_user(user_id)

    @result_guard("get_session_with_lists")
    async def get_session_with_lists(self, session_id: str) -> SessionDetails:
        session = await self._get_session(session_id)
        return SessionDetails(session=session, lists=await self._session_lists(session))

    @result_guard("get_consolidated_items")
    async def get_consolidated_items(self, session_id: str) -> list[ConsolidatedItem]:
        """Merge the session's items by case-insensitive (name, unit).

        Lists are walked with the session owner's lists first, items within a
        list by ``sort_order``. A key's position is fixed the first time it is
        seen; quantities are summed and the entry counts as purchased when any
        contributing item is.
        """

        session = await self._get_session(session_id)
        ordered = await self._session_lists(session)
        items = await self._items.find_by_lists([lst.id for lst in ordered])

        by_list: dict[str, list[ListItem]] = {}
        for item in items:
            by_list.setdefault(item.list_id, []).append(item)

        merged: dict[str, ConsolidatedItem] = {}
        for lst in ordered:
            for item in sorted(by_list.get(lst.id, []), key=lambda i: i.sort_order):
                key = consolidation_key(item.name, item.unit)
                entry = merged.get(key)
                if entry is None:
                    entry = ConsolidatedItem(
                        key=key,
                        name=item.name,
                        unit=item.unit,
                        quantity=0,
                        is_purchased=False,
                        appearance_order=len(merged),
                    )
                    merged[key] = entry
                entry.quantity += item.quantity
                entry.is_purchased = entry.is_purchased or item.is_purchased
                entry.sources.append(
                    ItemSource(
                        list_id=item.list_id,
                        item_id=item.id,
                        quantity=item.quantity,
                        is_purchased=item.is_purchased,
                    )
                )
        return sorted(merged.values(), key=lambda e: e.appearance_order)

    @result_guard("get_items_by_source_list")
    async def get_items_by_source_list(self, session_id: str) -> list[SourceListPurchases]:
        session = await self._get_session(session_id)
        grouped: list[SourceListPurchases] = []
        for list_id in await self._sessions.get_session_lists(session.id):
            lst = await self._lists.find_by_id(list_id)
            if lst is None:
                continue
            purchased = [i for i in await self._items.find_by_list(list_id) if i.is_purchased]
            if purchased:
                grouped.append(SourceListPurchases(list=lst, items=purchased))
        return grouped

    @result_guard("find_incomplete_sagas")
    async def find_incomplete_sagas(self) -> list[SessionSaga]:
        return await self._sagas.find_incomplete()
