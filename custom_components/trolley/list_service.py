"""Shopping list business rules.

Every public coroutine is wrapped by ``result_guard`` and returns a ``Result``;
the checks below raise typed errors which the guard translates.

Mutations on a list run their checks in a fixed order: the list must exist
(NotFound), must not be locked by an active shopping session (Locked), the
acting user must be an owner (Forbidden), then the payload is validated
(InvalidInput). Item updates on a locked list are allowed only when the sole
value that changes is ``is_purchased``.
"""

from __future__ import annotations

import logging
from typing import Any

from .const import DOMAIN, SORT_ORDER_STEP
from .exceptions import (
    AlreadyOwnerError,
    ForbiddenError,
    LockedError,
    NotFoundError,
    ValidationError,
)
from .guard import result_guard
from .models import (
    CreateListItemParams,
    CreateListParams,
    ListItem,
    ListOwner,
    ShoppingList,
    UpdateListItemParams,
    UpdateListParams,
    validate_item_name,
    validate_list_name,
    validate_quantity,
    validate_sort_order,
    validate_unit,
)
from .repository import ListItemRepository, ListOwnerRepository, ShoppingListRepository

LOGGER = logging.getLogger(__name__)

_UPDATABLE_LIST_FIELDS: tuple[str, ...] = ("name", "description", "is_shared", "community_id")
_UPDATABLE_ITEM_FIELDS: tuple[str, ...] = ("name", "quantity", "unit", "is_purchased", "sort_order")


class ListService:
    """Lists, their items and their owners."""

    def __init__(
        self,
        lists: ShoppingListRepository,
        owners: ListOwnerRepository,
        items: ListItemRepository,
    ) -> None:
        self._lists = lists
        self._owners = owners
        self._items = items

    # -----------------------------
    # Internal helpers — checks
    # -----------------------------

    async def _get_list(self, list_id: str) -> ShoppingList:
        lst = await self._lists.find_by_id(list_id)
        if lst is None or lst.is_deleted:
            raise NotFoundError(f"list {list_id} not found")
        return lst

    async def _get_item(self, item_id: str) -> ListItem:
        item = await self._items.find_by_id(item_id)
        if item is None or item.is_deleted:
            raise NotFoundError(f"item {item_id} not found")
        return item

    @staticmethod
    def _require_unlocked(lst: ShoppingList) -> None:
        if lst.is_locked:
            raise LockedError(f"list {lst.id} is locked by an active shopping session")

    async def _require_owner(self, lst: ShoppingList, user_id: str) -> None:
        if not await self._owners.is_owner(lst, user_id):
            raise ForbiddenError(f"user {user_id} does not own list {lst.id}")

    async def _next_sort_order(self, list_id: str) -> int:
        return await self._items.max_sort_order(list_id) + SORT_ORDER_STEP

    # -----------------------------
    # Public API — lists
    # -----------------------------

    @result_guard("create_list")
    async def create_list(self, params: CreateListParams, user_id: str) -> ShoppingList:
        name = validate_list_name(params.get("name"))
        lst = await self._lists.save(
            {
                "name": name,
                "description": params.get("description") or "",
                "created_by": user_id,
                "community_id": params.get("community_id"),
                "is_shared": bool(params.get("is_shared", False)),
                "is_locked": False,
            }
        )
        await self._owners.add_owner(lst.id, user_id)
        LOGGER.info(
            "List created",
            extra={"domain": DOMAIN, "op": "create_list", "list_id": lst.id},
        )
        return lst

    @result_guard("update_list")
    async def update_list(self, params: UpdateListParams, user_id: str) -> ShoppingList:
        lst = await self._get_list(str(params.get("id")))
        self._require_unlocked(lst)
        await self._require_owner(lst, user_id)

        changes: dict[str, Any] = {k: params[k] for k in _UPDATABLE_LIST_FIELDS if k in params}
        if "name" in changes:
            changes["name"] = validate_list_name(changes["name"])
        if "description" in changes and changes["description"] is None:
            changes["description"] = ""
        if "is_shared" in changes:
            changes["is_shared"] = bool(changes["is_shared"])
        return await self._lists.update(lst.id, changes)

    @result_guard("delete_list")
    async def delete_list(self, list_id: str, user_id: str) -> None:
        lst = await self._get_list(list_id)
        self._require_unlocked(lst)
        await self._require_owner(lst, user_id)
        await self._lists.soft_delete(lst.id)
        LOGGER.info(
            "List deleted",
            extra={"domain": DOMAIN, "op": "delete_list", "list_id": lst.id},
        )

    @result_guard("get_list")
    async def get_list(self, list_id: str) -> ShoppingList:
        return await self._get_list(list_id)

    @result_guard("get_user_lists")
    async def get_user_lists(self, user_id: str) -> list[ShoppingList]:
        return await self._lists.find_by_user(user_id)

    @result_guard("get_shared_lists")
    async def get_shared_lists(self, user_id: str) -> list[ShoppingList]:
        """Lists the user co-owns but did not create."""

        owned = await self._lists.find_shared_with_user(user_id)
        return [lst for lst in owned if lst.created_by != user_id]

    @result_guard("get_community_lists")
    async def get_community_lists(self, community_id: str) -> list[ShoppingList]:
        return await self._lists.find_by_community(community_id)

    # -----------------------------
    # Public API — items
    # -----------------------------

    @result_guard("get_list_items")
    async def get_list_items(self, list_id: str) -> list[ListItem]:
        await self._get_list(list_id)
        return await self._items.find_by_list(list_id)

    @result_guard("add_item")
    async def add_item_to_list(self, params: CreateListItemParams) -> ListItem:
        lst = await self._get_list(str(params.get("list_id")))
        self._require_unlocked(lst)

        name = validate_item_name(params.get("name"))
        quantity = validate_quantity(params.get("quantity", 1))
        unit = validate_unit(params.get("unit"))
        if "sort_order" in params and params["sort_order"] is not None:
            sort_order = validate_sort_order(params["sort_order"])
        else:
            sort_order = await self._next_sort_order(lst.id)

        return await self._items.save(
            {
                "list_id": lst.id,
                "name": name,
                "quantity": quantity,
                "unit": unit,
                "is_purchased": False,
                "sort_order": sort_order,
            }
        )

    @result_guard("update_item")
    async def update_list_item(self, params: UpdateListItemParams, user_id: str) -> ListItem:
        item = await self._get_item(str(params.get("id")))
        lst = await self._get_list(item.list_id)

        requested = {k: params[k] for k in _UPDATABLE_ITEM_FIELDS if k in params}
        # Compare text the way it will be stored
        for key in ("name", "unit"):
            if isinstance(requested.get(key), str):
                requested[key] = requested[key].strip()
        changed = {k for k, v in requested.items() if getattr(item, k) != v}
        if lst.is_locked and not changed <= {"is_purchased"}:
            raise LockedError(f"list {lst.id} is locked; only purchase state may change")

        changes: dict[str, Any] = {}
        if "name" in requested:
            changes["name"] = validate_item_name(requested["name"])
        if "quantity" in requested:
            changes["quantity"] = validate_quantity(requested["quantity"])
        if "unit" in requested:
            changes["unit"] = validate_unit(requested["unit"])
        if "sort_order" in requested:
            changes["sort_order"] = validate_sort_order(requested["sort_order"])
        if changes:
            item = await self._items.update(item.id, changes)

        # Purchase fields change together through the dedicated repository calls
        if "is_purchased" in changed:
            if requested["is_purchased"]:
                item = await self._items.mark_as_purchased(item.id, user_id)
            else:
                item = await self._items.mark_as_unpurchased(item.id)
        return item

    @result_guard("remove_item")
    async def remove_item_from_list(self, item_id: str) -> None:
        item = await self._get_item(item_id)
        lst = await self._get_list(item.list_id)
        self._require_unlocked(lst)
        await self._items.soft_delete(item.id)

    @result_guard("reorder_items")
    async def reorder_list_items(
        self, list_id: str, item_ids: list[str], user_id: str
    ) -> list[ListItem]:
        lst = await self._get_list(list_id)
        self._require_unlocked(lst)
        await self._require_owner(lst, user_id)
        if len(set(item_ids)) != len(item_ids):
            raise ValidationError("item_ids must not contain duplicates")
        return await self._items.reorder_items(lst.id, list(item_ids))

    # -----------------------------
    # Public API — owners
    # -----------------------------

    @result_guard("get_list_owners")
    async def get_list_owners(self, list_id: str) -> list[ListOwner]:
        await self._get_list(list_id)
        return await self._owners.find_by_list(list_id)

    @result_guard("share_list")
    async def share_list(self, list_id: str, user_id: str, acting_user_id: str) -> ListOwner:
        lst = await self._get_list(list_id)
        await self._require_owner(lst, acting_user_id)
        if lst.created_by == user_id or await self._owners.find_owner(lst.id, user_id):
            raise AlreadyOwnerError(f"user {user_id} already owns list {lst.id}")
        owner = await self._owners.add_owner(lst.id, user_id)
        LOGGER.info(
            "List shared",
            extra={"domain": DOMAIN, "op": "share_list", "list_id": lst.id, "user_id": user_id},
        )
        return owner

    @result_guard("unshare_list")
    async def unshare_list(self, list_id: str, user_id: str, acting_user_id: str) -> None:
        lst = await self._get_list(list_id)
        await self._require_owner(lst, acting_user_id)
        if lst.created_by == user_id:
            raise ForbiddenError("the list creator cannot be removed as an owner")
        owner = await self._owners.find_owner(lst.id, user_id)
        if owner is None:
            raise NotFoundError(f"user {user_id} does not own list {lst.id}")
        await self._owners.soft_delete(owner.id)
