"""Domain enumerations for the Tiered Escrow service.

These enums define the canonical states and types used throughout the system.
They are framework-agnostic (no SQLAlchemy, no FastAPI imports).
"""

import enum


class EscrowStatus(enum.StrEnum):
    """Lifecycle states of an escrow.

    COMPLETED and CANCELLED are terminal. DISPUTED has no way out either:
    nothing resolves a dispute, so it behaves as terminal too.
    See domain/state_machine.py for the transition table.
    """

    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    DISPUTED = "DISPUTED"


class EventType(enum.StrEnum):
    """Types of domain events, persisted in the escrow_events table and
    fanned out to the configured EventSink after commit.
    """

    # Lifecycle events
    ESCROW_CREATED = "ESCROW_CREATED"
    ESCROW_COMPLETED = "ESCROW_COMPLETED"
    ESCROW_CANCELLED = "ESCROW_CANCELLED"
    ESCROW_EXPIRED = "ESCROW_EXPIRED"
    DISPUTE_FLAGGED = "DISPUTE_FLAGGED"

    # Deadline negotiation
    EXTENSION_REQUESTED = "EXTENSION_REQUESTED"
    EXTENSION_APPROVED = "EXTENSION_APPROVED"

    # Fee schedule
    TIER_CHANGED = "TIER_CHANGED"
    FEE_RATE_UPDATED = "FEE_RATE_UPDATED"

    # Administration
    PROTOCOL_PAUSED = "PROTOCOL_PAUSED"
    PROTOCOL_UNPAUSED = "PROTOCOL_UNPAUSED"
    TIMELOCK_UPDATED = "TIMELOCK_UPDATED"
    EMERGENCY_WITHDRAWAL = "EMERGENCY_WITHDRAWAL"


class TransferMode(enum.StrEnum):
    """How custodied value is moved.

    PSP22 calls a fungible-token contract; NATIVE_ASSET moves an asset held
    by the chain's own assets pallet.
    """

    PSP22 = "psp22"
    NATIVE_ASSET = "native_asset"
