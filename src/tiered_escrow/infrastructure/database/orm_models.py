"""SQLAlchemy 2.0 ORM models for the Tiered Escrow service.

Five tables:
    1. escrows             - One row per escrow, ids dense and sequential from 0.
    2. principal_escrows   - Append-only per-principal index of escrow ids.
    3. extension_requests  - At most one pending deadline extension per escrow.
    4. protocol_state      - Single row: owner, volume/tier counters, pause flag.
    5. escrow_events       - Append-only audit log of every domain event.

Design decisions:
    - Amounts are unsigned 128-bit integers. They are stored as decimal
      strings (Uint128) so no dialect truncates or floats them.
    - Timestamps are integer milliseconds, the unit the Clock port speaks.
    - Escrow rows are never deleted; status changes happen in place.
"""

from __future__ import annotations

from typing import Any

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

from tiered_escrow.domain.fee_tiers import DEFAULT_FEE_BPS

PRINCIPAL_LENGTH = 64
# Largest value a BigInteger column (ids, ms timestamps) can hold.
BIGINT_MAX = 2**63 - 1


class Uint128(TypeDecorator):
    """Lossless storage for u128 values as base-10 strings."""

    impl = String(39)
    cache_ok = True

    def process_bind_param(self, value: int | None, dialect: Any) -> str | None:
        if value is None:
            return None
        if value < 0 or value >= 2**128:
            raise ValueError(f"value out of u128 range: {value}")
        return str(int(value))

    def process_result_value(self, value: str | None, dialect: Any) -> int | None:
        if value is None:
            return None
        return int(value)


JSONVariant = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


# ---------------------------------------------------------------------------
# 1. escrows
# ---------------------------------------------------------------------------
class Escrow(Base):
    """Value held in custody between a client and a provider."""

    __tablename__ = "escrows"

    id: Mapped[int] = mapped_column(BigInteger, primary_key=True, autoincrement=False)

    # --- Participants ---
    client: Mapped[str] = mapped_column(
        String(PRINCIPAL_LENGTH),
        nullable=False,
        comment="Depositor; the only party allowed to complete",
    )
    provider: Mapped[str] = mapped_column(
        String(PRINCIPAL_LENGTH),
        nullable=False,
        comment="Payee on completion",
    )

    # --- Financials ---
    amount: Mapped[int] = mapped_column(
        Uint128,
        nullable=False,
        comment="Custodied amount in the asset's native decimals",
    )

    # --- Status ---
    status: Mapped[str] = mapped_column(
        String(16),
        nullable=False,
        default="ACTIVE",
        comment="Current lifecycle state (guarded by EscrowStateMachine)",
    )

    # --- Timing (ms) ---
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    deadline: Mapped[int] = mapped_column(
        BigInteger,
        nullable=False,
        comment="After this instant the escrow may be processed as expired",
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('ACTIVE', 'COMPLETED', 'CANCELLED', 'DISPUTED')",
            name="ck_escrow_valid_status",
        ),
        CheckConstraint("amount <> '0'", name="ck_escrow_positive_amount"),
        CheckConstraint("deadline > created_at", name="ck_escrow_deadline_after_creation"),
        Index("idx_escrow_status", "status"),
        Index("idx_escrow_client", "client"),
        Index("idx_escrow_provider", "provider"),
    )

    @property
    def parties(self) -> tuple[str, str]:
        return (self.client, self.provider)

    def __repr__(self) -> str:
        return f"<Escrow id={self.id} status={self.status} amount={self.amount}>"


# ---------------------------------------------------------------------------
# 2. principal_escrows
# ---------------------------------------------------------------------------
class PrincipalEscrow(Base):
    """One entry of a principal's insertion-ordered escrow index."""

    __tablename__ = "principal_escrows"

    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    principal: Mapped[str] = mapped_column(String(PRINCIPAL_LENGTH), nullable=False)
    escrow_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("escrows.id"),
        nullable=False,
    )

    __table_args__ = (Index("idx_principal_escrows_principal", "principal", "seq"),)


# ---------------------------------------------------------------------------
# 3. extension_requests
# ---------------------------------------------------------------------------
class ExtensionRequest(Base):
    """A proposed deadline awaiting the counter-party's approval."""

    __tablename__ = "extension_requests"

    escrow_id: Mapped[int] = mapped_column(
        BigInteger,
        ForeignKey("escrows.id"),
        primary_key=True,
        autoincrement=False,
    )
    requester: Mapped[str] = mapped_column(String(PRINCIPAL_LENGTH), nullable=False)
    new_deadline: Mapped[int] = mapped_column(BigInteger, nullable=False)
    reason: Mapped[str] = mapped_column(Text, nullable=False, default="")
    requested_at: Mapped[int] = mapped_column(BigInteger, nullable=False)

    def __repr__(self) -> str:
        return (
            f"<ExtensionRequest escrow={self.escrow_id} by={self.requester} "
            f"to={self.new_deadline}>"
        )


# ---------------------------------------------------------------------------
# 4. protocol_state
# ---------------------------------------------------------------------------
class ProtocolState(Base):
    """Counters and switches shared by every escrow of one deployment."""

    __tablename__ = "protocol_state"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=False)
    owner: Mapped[str] = mapped_column(String(PRINCIPAL_LENGTH), nullable=False)
    total_volume: Mapped[int] = mapped_column(Uint128, nullable=False, default=0)
    current_tier: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    fee_bps: Mapped[int] = mapped_column(Integer, nullable=False, default=DEFAULT_FEE_BPS)
    paused: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    default_timelock_ms: Mapped[int] = mapped_column(BigInteger, nullable=False)

    __table_args__ = (
        CheckConstraint("current_tier IN (0, 1, 2)", name="ck_protocol_tier"),
        CheckConstraint("fee_bps >= 0 AND fee_bps <= 10000", name="ck_protocol_fee_bps"),
    )


# ---------------------------------------------------------------------------
# 5. escrow_events (Append-Only Audit Log)
# ---------------------------------------------------------------------------
class EscrowEvent(Base):
    """Immutable record of a domain event.

    This table is APPEND-ONLY. No UPDATE or DELETE operations are permitted
    at the application level. Protocol-level events have no escrow_id.
    """

    __tablename__ = "escrow_events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    escrow_id: Mapped[int | None] = mapped_column(
        BigInteger,
        ForeignKey("escrows.id"),
        nullable=True,
    )
    event_type: Mapped[str] = mapped_column(String(40), nullable=False)
    old_status: Mapped[str | None] = mapped_column(String(16), nullable=True)
    new_status: Mapped[str | None] = mapped_column(String(16), nullable=True)
    actor: Mapped[str] = mapped_column(String(PRINCIPAL_LENGTH), nullable=False)
    metadata_json: Mapped[dict | None] = mapped_column(
        "metadata",
        JSONVariant,
        nullable=True,
        default=None,
        comment="Event-specific fields; amounts are stored as strings",
    )
    occurred_at: Mapped[int] = mapped_column(BigInteger, nullable=False)

    __table_args__ = (
        Index("idx_event_escrow", "escrow_id"),
        Index("idx_event_type", "event_type"),
    )

    def __repr__(self) -> str:
        return (
            f"<EscrowEvent id={self.id} type={self.event_type} "
            f"{self.old_status}->{self.new_status}>"
        )
