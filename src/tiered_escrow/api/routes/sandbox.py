"""Sandbox routes over the in-process asset book.

The asset book stands in for chain state, so a client needs some way to
hold a balance and approve the custody account before ``create`` can pull
funds. Only mounted when APP_ENV=development.

Routes:
    POST   /api/v1/sandbox/mint              - Credit a balance
    POST   /api/v1/sandbox/approve           - Caller approves the custody account
    GET    /api/v1/sandbox/balances/{holder} - Balance and approval of a holder
"""

from __future__ import annotations

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from tiered_escrow.api.deps import get_asset_transfer, get_caller
from tiered_escrow.domain.ports import Principal
from tiered_escrow.logging_config import get_logger
from tiered_escrow.schemas.escrow import U128
from tiered_escrow.services.asset_transfer import AssetTransfer

router = APIRouter(prefix="/api/v1/sandbox", tags=["Sandbox"])
logger = get_logger(__name__)


class MintRequest(BaseModel):
    holder: str = Field(..., min_length=1, max_length=64)
    amount: int = Field(..., gt=0)


class ApproveRequest(BaseModel):
    amount: int = Field(..., ge=0)


class BalanceResponse(BaseModel):
    holder: str
    asset: str
    balance: U128
    approved_to_custody: U128


def _balance(assets: AssetTransfer, holder: str) -> BalanceResponse:
    return BalanceResponse(
        holder=holder,
        asset=assets.asset_key,
        balance=assets.book.balance(assets.asset_key, holder),
        approved_to_custody=assets.book.allowance(assets.asset_key, holder, assets.custody_account),
    )


@router.post("/mint", response_model=BalanceResponse, summary="Credit a balance")
async def mint(
    request: MintRequest,
    assets: AssetTransfer = Depends(get_asset_transfer),
) -> BalanceResponse:
    assets.book.mint(assets.asset_key, request.holder, request.amount)
    logger.info("sandbox.minted", holder=request.holder, amount=str(request.amount))
    return _balance(assets, request.holder)


@router.post("/approve", response_model=BalanceResponse, summary="Approve the custody account")
async def approve(
    request: ApproveRequest,
    caller: Principal = Depends(get_caller),
    assets: AssetTransfer = Depends(get_asset_transfer),
) -> BalanceResponse:
    """Set (not add to) the caller's approval of the custody account."""
    assets.book.approve(assets.asset_key, caller, assets.custody_account, request.amount)
    return _balance(assets, caller)


@router.get("/balances/{holder}", response_model=BalanceResponse, summary="Balance of a holder")
async def get_balance(
    holder: str,
    assets: AssetTransfer = Depends(get_asset_transfer),
) -> BalanceResponse:
    return _balance(assets, holder)
