"""Ports the escrow core calls through.

These are Protocols (structural subtyping): concrete adapters live in
services/asset_transfer.py and infrastructure/event_sinks.py, and tests
can pass any object of the right shape.

The domain layer has ZERO imports from SQLAlchemy, Redis or FastAPI.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, NewType, Protocol, runtime_checkable

if TYPE_CHECKING:
    from contextlib import AbstractAsyncContextManager

    from tiered_escrow.domain.enums import EventType

Principal = NewType("Principal", str)
"""An opaque, already-authenticated caller identity."""


@dataclass(frozen=True)
class DomainEvent:
    """Payload handed to an EventSink after a call commits.

    Attributes:
        event_type: What happened.
        escrow_id: The escrow concerned, or None for protocol-level events.
        actor: The principal whose call produced the event.
        occurred_at: Clock reading (ms) of the call.
        old_status / new_status: Status change carried by lifecycle events.
        data: Event-specific fields (amounts, deadlines, reason, tier...).
    """

    event_type: EventType
    escrow_id: int | None
    actor: str
    occurred_at: int
    old_status: str | None = None
    new_status: str | None = None
    data: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "event_type": self.event_type.value,
            "escrow_id": self.escrow_id,
            "actor": self.actor,
            "occurred_at": self.occurred_at,
            "old_status": self.old_status,
            "new_status": self.new_status,
            "data": self.data,
        }


@runtime_checkable
class Clock(Protocol):
    """Source of the current time in milliseconds."""

    def now(self) -> int: ...


class SystemClock:
    """Wall-clock time in milliseconds since the epoch."""

    def now(self) -> int:
        return time.time_ns() // 1_000_000


@runtime_checkable
class EventSink(Protocol):
    """Best-effort receiver of committed domain events."""

    async def emit(self, event: DomainEvent) -> None: ...


@runtime_checkable
class AssetTransferPort(Protocol):
    """Moves custodied value.

    Implementations raise InsufficientBalanceError, InsufficientAllowanceError
    or TransferFailedError. ``atomic()`` scopes one service call: every
    movement made inside it is undone if the block raises.
    """

    custody_account: Principal

    async def transfer_from(self, payer: Principal, payee: Principal, amount: int) -> None: ...

    async def transfer(self, payee: Principal, amount: int) -> None: ...

    async def balance_of(self, holder: Principal) -> int: ...

    async def allowance(self, owner: Principal, spender: Principal) -> int: ...

    def atomic(self) -> AbstractAsyncContextManager[None]: ...
