"""Pydantic schemas for the Escrow API.

These schemas define the request/response shapes for the REST API. They are
separate from the ORM models to maintain clean boundaries between the API
and database layers.

Amounts are unsigned 128-bit integers. Requests accept them as JSON numbers
or decimal strings; responses always render them as decimal strings so
clients with 53-bit number types do not lose precision.
"""

from __future__ import annotations

from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer

U128 = Annotated[int, PlainSerializer(lambda value: str(value), return_type=str)]

# ---------------------------------------------------------------------------
# Request Schemas
# ---------------------------------------------------------------------------


class CreateEscrowRequest(BaseModel):
    """Request body for opening an escrow. The caller becomes the client."""

    provider: str = Field(
        ...,
        min_length=1,
        max_length=64,
        description="Principal that receives the payout on completion",
        examples=["5FHneW46xGXgs5mUiveU4sbTyGBzmstUspZC92UhjJM694ty"],
    )
    amount: int = Field(
        ...,
        description="Amount in the asset's smallest unit, pulled from the caller's approval",
        examples=[1_000_000],
    )


class FlagDisputeRequest(BaseModel):
    reason: str = Field(..., min_length=1, max_length=2000)


class RequestExtensionRequest(BaseModel):
    """Request body for proposing a later deadline."""

    new_deadline: int = Field(..., description="Proposed deadline, ms since the epoch")
    reason: str = Field(..., min_length=1, max_length=2000)


class SetFeeRateRequest(BaseModel):
    fee_bps: int = Field(..., description="Fee in basis points, 0 to 10000")


class SetTimelockRequest(BaseModel):
    duration_ms: int = Field(..., description="Lifetime of new escrows, at least one day")


class EmergencyWithdrawRequest(BaseModel):
    amount: int | None = Field(
        default=None,
        description="Amount to withdraw; omit to drain custody",
    )


# ---------------------------------------------------------------------------
# Response Schemas
# ---------------------------------------------------------------------------


class EscrowResponse(BaseModel):
    """Response schema for an escrow record."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    client: str
    provider: str
    amount: U128
    status: str
    created_at: int
    deadline: int


class ExtensionRequestResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    escrow_id: int
    requester: str
    new_deadline: int
    reason: str
    requested_at: int


class EscrowEventResponse(BaseModel):
    """Response schema for an audit event."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    escrow_id: int | None
    event_type: str
    old_status: str | None
    new_status: str | None
    actor: str
    metadata: dict | None = Field(default=None, validation_alias="metadata_json")
    occurred_at: int


class EscrowStatusResponse(BaseModel):
    """Lightweight status check response."""

    escrow_id: int
    status: str
    deadline: int
    allowed_events: list[str] = Field(
        description="Lifecycle events the state machine accepts from the current status"
    )


class PrincipalEscrowsResponse(BaseModel):
    principal: str
    escrow_ids: list[int]


class ExpiredEscrowsResponse(BaseModel):
    start: int
    limit: int
    escrow_ids: list[int]


class FeeInfoResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    total_volume: U128
    current_tier: int
    fee_bps: int
    volume_to_next_tier: U128


class ProtocolInfoResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    owner: str
    paused: bool
    default_timelock_ms: int
    transfer_mode: str | None
    escrow_count: int


class WithdrawalResponse(BaseModel):
    amount: U128


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    version: str = "0.1.0"
    database: str = "unknown"
    redis: str = "unknown"
