"""FastAPI dependency injection providers.

These are used with Depends() in route handlers to inject the escrow
service, the asset adapter and the caller principal.
"""

from __future__ import annotations

from fastapi import Header, Request

from tiered_escrow.domain.ports import Principal
from tiered_escrow.services.asset_transfer import AssetTransfer
from tiered_escrow.services.escrow_service import EscrowService

CALLER_HEADER = "X-Caller-Principal"


def get_escrow_service(request: Request) -> EscrowService:
    """Provide the EscrowService built during application startup."""
    return request.app.state.escrow_service


def get_asset_transfer(request: Request) -> AssetTransfer:
    """Provide the asset adapter the escrow service moves value through."""
    return request.app.state.asset_transfer


def get_caller(
    caller: str = Header(
        ...,
        alias=CALLER_HEADER,
        min_length=1,
        description="Principal authenticated by the upstream proxy",
    ),
) -> Principal:
    """Read the already-authenticated caller identity from the request headers."""
    return Principal(caller)
