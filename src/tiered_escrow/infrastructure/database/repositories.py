"""Repository classes for database access.

Repositories encapsulate all SQL queries and provide a clean interface
to the service layer. They accept an AsyncSession and never manage
their own transactions (that's the caller's responsibility). None of them
enforces business rules beyond what their own storage shape requires.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from sqlalchemy import func, select

from tiered_escrow.domain.exceptions import (
    ArithmeticOverflowError,
    EscrowNotFoundError,
    NotAuthorizedError,
    ProtocolNotInitializedError,
)
from tiered_escrow.infrastructure.database.orm_models import (
    Escrow,
    EscrowEvent,
    ExtensionRequest,
    PrincipalEscrow,
    ProtocolState,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

    from tiered_escrow.domain.ports import DomainEvent

ESCROW_ID_MAX = 2**32 - 1
PROTOCOL_STATE_ID = 1


def _valid_id(escrow_id: int) -> bool:
    return 0 <= escrow_id <= ESCROW_ID_MAX


class EscrowLedger:
    """Escrow records and the per-principal index of escrow ids.

    Ids are dense: escrows are never deleted, so the row count is also the
    next id to assign.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def insert(self, escrow: Escrow) -> int:
        """Assign the next id, store the record and index both parties."""
        escrow_id = await self.count()
        if escrow_id > ESCROW_ID_MAX:
            raise ArithmeticOverflowError("escrow id space exhausted")
        escrow.id = escrow_id
        self._session.add(escrow)
        await self._session.flush()
        self._session.add_all(
            [
                PrincipalEscrow(principal=escrow.client, escrow_id=escrow_id),
                PrincipalEscrow(principal=escrow.provider, escrow_id=escrow_id),
            ]
        )
        await self._session.flush()
        return escrow_id

    async def get(self, escrow_id: int) -> Escrow | None:
        if not _valid_id(escrow_id):
            return None
        return await self._session.get(Escrow, escrow_id)

    async def update(self, escrow: Escrow) -> Escrow:
        """Overwrite a stored record in place."""
        if await self.get(escrow.id) is None:
            raise EscrowNotFoundError(escrow.id)
        escrow = await self._session.merge(escrow)
        await self._session.flush()
        return escrow

    async def escrows_of(self, principal: str) -> list[int]:
        """Ids the principal takes part in, in insertion order."""
        result = await self._session.execute(
            select(PrincipalEscrow.escrow_id)
            .where(PrincipalEscrow.principal == principal)
            .order_by(PrincipalEscrow.seq.asc())
        )
        return list(result.scalars().all())

    async def count(self) -> int:
        result = await self._session.execute(select(func.count(Escrow.id)))
        return int(result.scalar_one())

    async def scan(self, start: int, stop: int) -> list[Escrow]:
        """Records with ids in [start, stop), ascending."""
        result = await self._session.execute(
            select(Escrow)
            .where(Escrow.id >= start, Escrow.id < stop)
            .order_by(Escrow.id.asc())
        )
        return list(result.scalars().all())


class ExtensionNegotiator:
    """Pending deadline extensions: one slot per escrow.

    propose() fills or overwrites the slot; take() empties it for an
    approver who is not the requester.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def propose(
        self,
        escrow_id: int,
        requester: str,
        new_deadline: int,
        reason: str,
        requested_at: int,
    ) -> ExtensionRequest:
        request = await self.get(escrow_id)
        if request is None:
            request = ExtensionRequest(escrow_id=escrow_id)
            self._session.add(request)
        request.requester = requester
        request.new_deadline = new_deadline
        request.reason = reason
        request.requested_at = requested_at
        await self._session.flush()
        return request

    async def get(self, escrow_id: int) -> ExtensionRequest | None:
        if not _valid_id(escrow_id):
            return None
        return await self._session.get(ExtensionRequest, escrow_id)

    async def take(self, escrow_id: int, approver: str) -> ExtensionRequest:
        """Consume the pending request on behalf of ``approver``.

        Raises:
            EscrowNotFoundError: If nothing is pending for the escrow.
            NotAuthorizedError: If the approver made the request.
        """
        request = await self.get(escrow_id)
        if request is None:
            raise EscrowNotFoundError(escrow_id, what="Pending extension for escrow")
        if request.requester == approver:
            raise NotAuthorizedError(approver, "approve their own extension request")
        await self._session.delete(request)
        await self._session.flush()
        return request


class ProtocolStateRepository:
    """Access to the single protocol_state row."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self) -> ProtocolState:
        state = await self._session.get(ProtocolState, PROTOCOL_STATE_ID)
        if state is None:
            raise ProtocolNotInitializedError()
        return state

    async def get_or_create(
        self,
        owner: str,
        fee_bps: int,
        default_timelock_ms: int,
    ) -> tuple[ProtocolState, bool]:
        """Return the row, creating it on first use. The flag is True if created."""
        state = await self._session.get(ProtocolState, PROTOCOL_STATE_ID)
        if state is not None:
            return state, False
        state = ProtocolState(
            id=PROTOCOL_STATE_ID,
            owner=owner,
            total_volume=0,
            current_tier=0,
            fee_bps=fee_bps,
            paused=False,
            default_timelock_ms=default_timelock_ms,
        )
        self._session.add(state)
        await self._session.flush()
        return state, True


class EventRepository:
    """Data access for the append-only audit event log."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def record(self, event: DomainEvent) -> EscrowEvent:
        """Append a new audit event. This is the ONLY write operation allowed."""
        evt = EscrowEvent(
            escrow_id=event.escrow_id,
            event_type=event.event_type.value,
            old_status=event.old_status,
            new_status=event.new_status,
            actor=event.actor,
            metadata_json=event.data or None,
            occurred_at=event.occurred_at,
        )
        self._session.add(evt)
        await self._session.flush()
        return evt

    async def get_by_escrow(self, escrow_id: int) -> list[EscrowEvent]:
        """Fetch all events for an escrow in the order they were recorded."""
        if not _valid_id(escrow_id):
            return []
        result = await self._session.execute(
            select(EscrowEvent)
            .where(EscrowEvent.escrow_id == escrow_id)
            .order_by(EscrowEvent.id.asc())
        )
        return list(result.scalars().all())
