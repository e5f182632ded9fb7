"""Escrow REST API routes.

Every mutating route acts on behalf of the principal in the
X-Caller-Principal header. The simulation script calls the same service
layer, ensuring consistency.

Routes:
    POST   /api/v1/escrow                          - Open an escrow (caller is client)
    GET    /api/v1/escrow/protocol                 - Owner, pause flag, timelock, mode
    GET    /api/v1/escrow/fees                     - Volume, tier and current rate
    GET    /api/v1/escrow/expired                  - Ids eligible for expiry processing
    GET    /api/v1/escrow/principals/{principal}   - Escrow ids a principal is party to
    GET    /api/v1/escrow/{id}                     - Escrow record
    GET    /api/v1/escrow/{id}/status              - Status and allowed lifecycle events
    GET    /api/v1/escrow/{id}/events              - Audit trail
    GET    /api/v1/escrow/{id}/extension           - Pending extension request
    POST   /api/v1/escrow/{id}/complete            - Client releases funds to provider
    POST   /api/v1/escrow/{id}/cancel              - Either party refunds the client
    POST   /api/v1/escrow/{id}/dispute             - Either party flags a dispute
    POST   /api/v1/escrow/{id}/expire              - Anyone refunds a lapsed escrow
    POST   /api/v1/escrow/{id}/extension           - Propose a later deadline
    POST   /api/v1/escrow/{id}/extension/approve   - Counter-party accepts it
    POST   /api/v1/escrow/admin/fee-rate           - Owner overrides the fee rate
    POST   /api/v1/escrow/admin/pause              - Owner pauses value-moving calls
    POST   /api/v1/escrow/admin/unpause            - Owner resumes them
    POST   /api/v1/escrow/admin/timelock           - Owner sets the default lifetime
    POST   /api/v1/escrow/admin/emergency-withdraw - Owner drains custody
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Query

from tiered_escrow.api.deps import get_caller, get_escrow_service
from tiered_escrow.domain.ports import Principal
from tiered_escrow.logging_config import get_logger
from tiered_escrow.schemas.escrow import (
    CreateEscrowRequest,
    EmergencyWithdrawRequest,
    EscrowEventResponse,
    EscrowResponse,
    EscrowStatusResponse,
    ExpiredEscrowsResponse,
    ExtensionRequestResponse,
    FeeInfoResponse,
    FlagDisputeRequest,
    PrincipalEscrowsResponse,
    ProtocolInfoResponse,
    RequestExtensionRequest,
    SetFeeRateRequest,
    SetTimelockRequest,
    WithdrawalResponse,
)
from tiered_escrow.services.escrow_service import EscrowService

router = APIRouter(prefix="/api/v1/escrow", tags=["Escrow"])
logger = get_logger(__name__)


# ---------------------------------------------------------------------------
# Create
# ---------------------------------------------------------------------------


@router.post(
    "",
    response_model=EscrowResponse,
    status_code=201,
    summary="Open a new escrow",
)
async def create_escrow(
    request: CreateEscrowRequest,
    caller: Principal = Depends(get_caller),
    svc: EscrowService = Depends(get_escrow_service),
) -> EscrowResponse:
    """Pull the amount from the caller's approval into custody, in ACTIVE state."""
    escrow = await svc.create(caller, Principal(request.provider), request.amount)
    return EscrowResponse.model_validate(escrow)


# ---------------------------------------------------------------------------
# Protocol-wide reads
# ---------------------------------------------------------------------------


@router.get(
    "/protocol",
    response_model=ProtocolInfoResponse,
    summary="Protocol configuration",
)
async def get_protocol_info(
    svc: EscrowService = Depends(get_escrow_service),
) -> ProtocolInfoResponse:
    return ProtocolInfoResponse.model_validate(await svc.protocol_info())


@router.get(
    "/fees",
    response_model=FeeInfoResponse,
    summary="Volume, tier and fee rate",
)
async def get_fee_info(
    svc: EscrowService = Depends(get_escrow_service),
) -> FeeInfoResponse:
    return FeeInfoResponse.model_validate(await svc.fee_info())


@router.get(
    "/expired",
    response_model=ExpiredEscrowsResponse,
    summary="List escrows eligible for expiry processing",
)
async def list_expired(
    start: int = Query(default=0, ge=0),
    limit: int = Query(default=50, ge=0, le=1000),
    svc: EscrowService = Depends(get_escrow_service),
) -> ExpiredEscrowsResponse:
    """Scan ids in [start, start + limit) for ACTIVE escrows past their deadline."""
    escrow_ids = await svc.list_expired(start, limit)
    return ExpiredEscrowsResponse(start=start, limit=limit, escrow_ids=escrow_ids)


@router.get(
    "/principals/{principal}",
    response_model=PrincipalEscrowsResponse,
    summary="Escrows a principal is party to",
)
async def get_escrows_of(
    principal: str,
    svc: EscrowService = Depends(get_escrow_service),
) -> PrincipalEscrowsResponse:
    escrow_ids = await svc.escrows_of(principal)
    return PrincipalEscrowsResponse(principal=principal, escrow_ids=escrow_ids)


# ---------------------------------------------------------------------------
# Administration
# ---------------------------------------------------------------------------


@router.post("/admin/fee-rate", response_model=FeeInfoResponse, summary="Override the fee rate")
async def set_fee_rate(
    request: SetFeeRateRequest,
    caller: Principal = Depends(get_caller),
    svc: EscrowService = Depends(get_escrow_service),
) -> FeeInfoResponse:
    await svc.set_fee_rate(caller, request.fee_bps)
    return FeeInfoResponse.model_validate(await svc.fee_info())


@router.post("/admin/pause", response_model=ProtocolInfoResponse, summary="Pause the protocol")
async def pause(
    caller: Principal = Depends(get_caller),
    svc: EscrowService = Depends(get_escrow_service),
) -> ProtocolInfoResponse:
    await svc.pause(caller)
    return ProtocolInfoResponse.model_validate(await svc.protocol_info())


@router.post("/admin/unpause", response_model=ProtocolInfoResponse, summary="Resume the protocol")
async def unpause(
    caller: Principal = Depends(get_caller),
    svc: EscrowService = Depends(get_escrow_service),
) -> ProtocolInfoResponse:
    await svc.unpause(caller)
    return ProtocolInfoResponse.model_validate(await svc.protocol_info())


@router.post(
    "/admin/timelock",
    response_model=ProtocolInfoResponse,
    summary="Set the default escrow lifetime",
)
async def set_default_timelock(
    request: SetTimelockRequest,
    caller: Principal = Depends(get_caller),
    svc: EscrowService = Depends(get_escrow_service),
) -> ProtocolInfoResponse:
    await svc.set_default_timelock(caller, request.duration_ms)
    return ProtocolInfoResponse.model_validate(await svc.protocol_info())


@router.post(
    "/admin/emergency-withdraw",
    response_model=WithdrawalResponse,
    summary="Move custodied funds to the owner",
)
async def emergency_withdraw(
    request: EmergencyWithdrawRequest,
    caller: Principal = Depends(get_caller),
    svc: EscrowService = Depends(get_escrow_service),
) -> WithdrawalResponse:
    amount = await svc.emergency_withdraw(caller, request.amount)
    return WithdrawalResponse(amount=amount)


# ---------------------------------------------------------------------------
# Per-escrow reads
# ---------------------------------------------------------------------------


@router.get(
    "/{escrow_id}",
    response_model=EscrowResponse,
    summary="Get escrow details",
)
async def get_escrow(
    escrow_id: int,
    svc: EscrowService = Depends(get_escrow_service),
) -> EscrowResponse:
    return EscrowResponse.model_validate(await svc.get_escrow(escrow_id))


@router.get(
    "/{escrow_id}/status",
    response_model=EscrowStatusResponse,
    summary="Lightweight status check",
)
async def get_escrow_status(
    escrow_id: int,
    svc: EscrowService = Depends(get_escrow_service),
) -> EscrowStatusResponse:
    """Return the current status and which lifecycle events are allowed."""
    return EscrowStatusResponse(**await svc.get_status(escrow_id))


@router.get(
    "/{escrow_id}/events",
    response_model=list[EscrowEventResponse],
    summary="Get audit trail",
)
async def get_escrow_events(
    escrow_id: int,
    svc: EscrowService = Depends(get_escrow_service),
) -> list[EscrowEventResponse]:
    """Return every event recorded for the escrow, oldest first."""
    await svc.get_escrow(escrow_id)
    events = await svc.get_events(escrow_id)
    return [EscrowEventResponse.model_validate(e) for e in events]


@router.get(
    "/{escrow_id}/extension",
    response_model=ExtensionRequestResponse,
    summary="Get the pending extension request",
)
async def get_extension_request(
    escrow_id: int,
    svc: EscrowService = Depends(get_escrow_service),
) -> ExtensionRequestResponse:
    request = await svc.get_extension_request(escrow_id)
    if request is None:
        raise HTTPException(status_code=404, detail=f"No pending extension for escrow {escrow_id}")
    return ExtensionRequestResponse.model_validate(request)


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


@router.post(
    "/{escrow_id}/complete",
    response_model=EscrowResponse,
    summary="Release funds to the provider",
)
async def complete_escrow(
    escrow_id: int,
    caller: Principal = Depends(get_caller),
    svc: EscrowService = Depends(get_escrow_service),
) -> EscrowResponse:
    """Client-only. Pays the provider minus the fee and counts the volume."""
    return EscrowResponse.model_validate(await svc.complete(caller, escrow_id))


@router.post(
    "/{escrow_id}/cancel",
    response_model=EscrowResponse,
    summary="Refund the client",
)
async def cancel_escrow(
    escrow_id: int,
    caller: Principal = Depends(get_caller),
    svc: EscrowService = Depends(get_escrow_service),
) -> EscrowResponse:
    return EscrowResponse.model_validate(await svc.cancel(caller, escrow_id))


@router.post(
    "/{escrow_id}/dispute",
    response_model=EscrowResponse,
    summary="Flag a dispute",
)
async def flag_dispute(
    escrow_id: int,
    request: FlagDisputeRequest,
    caller: Principal = Depends(get_caller),
    svc: EscrowService = Depends(get_escrow_service),
) -> EscrowResponse:
    """Either party freezes the escrow as DISPUTED. No funds move."""
    escrow = await svc.flag_dispute(caller, escrow_id, request.reason)
    logger.info("api.dispute_flagged", escrow_id=escrow_id)
    return EscrowResponse.model_validate(escrow)


@router.post(
    "/{escrow_id}/expire",
    response_model=EscrowResponse,
    summary="Refund a lapsed escrow",
)
async def process_expired(
    escrow_id: int,
    caller: Principal = Depends(get_caller),
    svc: EscrowService = Depends(get_escrow_service),
) -> EscrowResponse:
    return EscrowResponse.model_validate(await svc.process_expired(caller, escrow_id))


@router.post(
    "/{escrow_id}/extension",
    response_model=ExtensionRequestResponse,
    status_code=201,
    summary="Propose a later deadline",
)
async def request_extension(
    escrow_id: int,
    request: RequestExtensionRequest,
    caller: Principal = Depends(get_caller),
    svc: EscrowService = Depends(get_escrow_service),
) -> ExtensionRequestResponse:
    pending = await svc.request_extension(
        caller,
        escrow_id,
        new_deadline=request.new_deadline,
        reason=request.reason,
    )
    return ExtensionRequestResponse.model_validate(pending)


@router.post(
    "/{escrow_id}/extension/approve",
    response_model=EscrowResponse,
    summary="Approve the pending extension",
)
async def approve_extension(
    escrow_id: int,
    caller: Principal = Depends(get_caller),
    svc: EscrowService = Depends(get_escrow_service),
) -> EscrowResponse:
    return EscrowResponse.model_validate(await svc.approve_extension(caller, escrow_id))
