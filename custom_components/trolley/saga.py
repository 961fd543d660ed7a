"""Step log for multi-step session orchestrations.

Creating and ending a session touch several tables without a transaction. Each
run is recorded as a ``SessionSaga``: it starts ``running``, appends the name of
every finished step and ends ``completed`` or ``failed``. A saga still
``running`` after a restart means the orchestration was interrupted and the
listed steps are the ones that took effect.
"""

from __future__ import annotations

import logging

from .const import DOMAIN
from .engine import TABLE_SAGAS, StorageEngine
from .models import SagaStatus, SessionSaga
from .repository import EntityRepository

LOGGER = logging.getLogger(__name__)

SAGA_CREATE_SESSION = "create_session"
SAGA_END_SESSION = "end_session"


class SessionSagaRepository(EntityRepository[SessionSaga]):
    entity_cls = SessionSaga
    table_name = TABLE_SAGAS


class SagaLog:
    """Record saga progress through ``SessionSagaRepository``."""

    def __init__(self, engine: StorageEngine) -> None:
        self._repo = SessionSagaRepository(engine)

    async def start(self, kind: str, user_id: str, session_id: str | None = None) -> SessionSaga:
        saga = await self._repo.save(
            {"kind": kind, "user_id": user_id, "session_id": session_id, "steps": []}
        )
        LOGGER.debug(
            "Saga started",
            extra={"domain": DOMAIN, "op": kind, "saga_id": saga.id, "session_id": session_id},
        )
        return saga

    async def step(
        self, saga: SessionSaga, name: str, *, session_id: str | None = None
    ) -> SessionSaga:
        """Append a finished step; ``session_id`` is attached once it is known."""

        changes: dict[str, object] = {"steps": [*saga.steps, name]}
        if session_id is not None:
            changes["session_id"] = session_id
        return await self._repo.update(saga.id, changes)

    async def complete(self, saga: SessionSaga) -> SessionSaga:
        return await self._repo.update(saga.id, {"status": SagaStatus.COMPLETED})

    async def fail(self, saga: SessionSaga, error: str) -> SessionSaga:
        LOGGER.warning(
            "Saga failed after steps %s",
            saga.steps,
            extra={"domain": DOMAIN, "op": saga.kind, "saga_id": saga.id, "error": error},
        )
        return await self._repo.update(saga.id, {"status": SagaStatus.FAILED, "error": error})

    async def find_incomplete(self) -> list[SessionSaga]:
        """Sagas still marked running; each one is an interrupted orchestration."""

        records = (
            await self._repo.table.where("status")
            .equals(SagaStatus.RUNNING.value)
            .and_(lambda r: r.get("deleted_at") is None)
            .to_list()
        )
        return [SessionSaga.from_record(r) for r in records]
