"""Application services: the escrow use cases and their adapters."""

from tiered_escrow.services.asset_transfer import (
    AssetBook,
    AssetRoute,
    AssetTransfer,
    NativeAsset,
    Psp22Token,
    build_asset_transfer,
)
from tiered_escrow.services.escrow_service import EscrowService, FeeInfo, ProtocolInfo
from tiered_escrow.services.expiry_scanner import ExpiryScanner

__all__ = [
    "AssetBook",
    "AssetRoute",
    "AssetTransfer",
    "EscrowService",
    "ExpiryScanner",
    "FeeInfo",
    "NativeAsset",
    "ProtocolInfo",
    "Psp22Token",
    "build_asset_transfer",
]
