"""Pydantic API schemas."""

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
    HealthResponse,
    PrincipalEscrowsResponse,
    ProtocolInfoResponse,
    RequestExtensionRequest,
    SetFeeRateRequest,
    SetTimelockRequest,
    WithdrawalResponse,
)

__all__ = [
    "CreateEscrowRequest",
    "EmergencyWithdrawRequest",
    "EscrowEventResponse",
    "EscrowResponse",
    "EscrowStatusResponse",
    "ExpiredEscrowsResponse",
    "ExtensionRequestResponse",
    "FeeInfoResponse",
    "FlagDisputeRequest",
    "HealthResponse",
    "PrincipalEscrowsResponse",
    "ProtocolInfoResponse",
    "RequestExtensionRequest",
    "SetFeeRateRequest",
    "SetTimelockRequest",
    "WithdrawalResponse",
]
