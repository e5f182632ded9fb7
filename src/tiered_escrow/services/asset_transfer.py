"""Asset transfer - moves custodied value for the escrow service.

The route is chosen once, at construction, from a closed set of two:

    Psp22Token(contract)   - a PSP22 fungible-token contract; payers approve
                             the custody account and the service pulls with
                             transfer_from.
    NativeAsset(asset_id)  - an asset held by the chain's assets pallet
                             (e.g. USDT id 1984 on Asset Hub); same approve /
                             transfer-approved flow, different ledger key.

Value itself moves inside an AssetBook: an in-process ledger of balances,
allowances and frozen accounts that stands in for chain state. Executing
transfers on a live chain is outside this service.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from functools import partial
from typing import TYPE_CHECKING

from tiered_escrow.domain.enums import TransferMode
from tiered_escrow.domain.exceptions import (
    InsufficientAllowanceError,
    InsufficientBalanceError,
    TransferFailedError,
)
from tiered_escrow.domain.ports import Principal
from tiered_escrow.logging_config import get_logger

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable

    from tiered_escrow.config import Settings

logger = get_logger(__name__)


@dataclass(frozen=True)
class Psp22Token:
    contract: str

    mode = TransferMode.PSP22


@dataclass(frozen=True)
class NativeAsset:
    asset_id: int

    mode = TransferMode.NATIVE_ASSET


AssetRoute = Psp22Token | NativeAsset


@dataclass
class AssetBook:
    """Balances, allowances and frozen accounts, keyed by asset."""

    balances: dict[tuple[str, str], int] = field(default_factory=dict)
    allowances: dict[tuple[str, str, str], int] = field(default_factory=dict)
    frozen: set[tuple[str, str]] = field(default_factory=set)

    def balance(self, asset: str, holder: str) -> int:
        return self.balances.get((asset, holder), 0)

    def allowance(self, asset: str, owner: str, spender: str) -> int:
        return self.allowances.get((asset, owner, spender), 0)

    def mint(self, asset: str, holder: str, amount: int) -> None:
        self.balances[(asset, holder)] = self.balance(asset, holder) + amount

    def approve(self, asset: str, owner: str, spender: str, amount: int) -> None:
        self.allowances[(asset, owner, spender)] = amount

    def freeze(self, asset: str, holder: str) -> None:
        self.frozen.add((asset, holder))

    def thaw(self, asset: str, holder: str) -> None:
        self.frozen.discard((asset, holder))

    def is_frozen(self, asset: str, holder: str) -> bool:
        return (asset, holder) in self.frozen

    def move(self, asset: str, payer: str, payee: str, amount: int) -> None:
        self.balances[(asset, payer)] = self.balance(asset, payer) - amount
        self.balances[(asset, payee)] = self.balance(asset, payee) + amount

    def adjust_allowance(self, asset: str, owner: str, spender: str, delta: int) -> None:
        self.allowances[(asset, owner, spender)] = self.allowance(asset, owner, spender) + delta


class AssetTransfer:
    """AssetTransferPort over an AssetBook for one route."""

    def __init__(self, route: AssetRoute, book: AssetBook, custody_account: str) -> None:
        self.route = route
        self.book = book
        self.custody_account = Principal(custody_account)
        self._journals: list[list[Callable[[], None]]] = []

    @property
    def mode(self) -> TransferMode:
        return self.route.mode

    @property
    def asset_key(self) -> str:
        match self.route:
            case Psp22Token(contract=contract):
                return f"psp22:{contract}"
            case NativeAsset(asset_id=asset_id):
                return f"asset:{asset_id}"
        raise TypeError(f"unknown asset route: {self.route!r}")

    def _rejected(self, holder: str) -> TransferFailedError:
        match self.route:
            case Psp22Token(contract=contract):
                return TransferFailedError(f"PSP22 {contract} rejected transfer: {holder} is blocked")
            case NativeAsset(asset_id=asset_id):
                return TransferFailedError(f"Asset {asset_id}: account {holder} is frozen")
        raise TypeError(f"unknown asset route: {self.route!r}")

    def _move(self, payer: str, payee: str, amount: int) -> None:
        if amount < 0:
            raise TransferFailedError(f"negative transfer amount: {amount}")
        for holder in (payer, payee):
            if self.book.is_frozen(self.asset_key, holder):
                raise self._rejected(holder)
        available = self.book.balance(self.asset_key, payer)
        if available < amount:
            raise InsufficientBalanceError(payer, amount, available)
        self.book.move(self.asset_key, payer, payee, amount)
        self._record(partial(self.book.move, self.asset_key, payee, payer, amount))

    async def transfer_from(self, payer: Principal, payee: Principal, amount: int) -> None:
        """Pull ``amount`` from ``payer`` using its approval of the custody account."""
        approved = self.book.allowance(self.asset_key, payer, self.custody_account)
        if approved < amount:
            raise InsufficientAllowanceError(payer, self.custody_account, amount, approved)
        self._move(payer, payee, amount)
        self.book.approve(self.asset_key, payer, self.custody_account, approved - amount)
        self._record(
            partial(self.book.adjust_allowance, self.asset_key, payer, self.custody_account, amount)
        )
        logger.debug(
            "asset.pulled",
            mode=self.mode.value,
            payer=payer,
            payee=payee,
            amount=str(amount),
        )

    async def transfer(self, payee: Principal, amount: int) -> None:
        """Pay ``amount`` out of custody."""
        self._move(self.custody_account, payee, amount)
        logger.debug("asset.paid", mode=self.mode.value, payee=payee, amount=str(amount))

    async def balance_of(self, holder: Principal) -> int:
        return self.book.balance(self.asset_key, holder)

    async def allowance(self, owner: Principal, spender: Principal) -> int:
        return self.book.allowance(self.asset_key, owner, spender)

    def _record(self, undo: Callable[[], None]) -> None:
        if self._journals:
            self._journals[-1].append(undo)

    @asynccontextmanager
    async def atomic(self) -> AsyncIterator[None]:
        """Undo the movements made in the block if it raises.

        Only this adapter's own writes are reversed, so balances and
        approvals changed by anyone else in the meantime survive. A nested
        block that succeeds hands its movements to the enclosing one.
        """
        journal: list[Callable[[], None]] = []
        self._journals.append(journal)
        try:
            yield
        except BaseException:
            for undo in reversed(journal):
                undo()
            logger.debug("asset.rolled_back", mode=self.mode.value, movements=len(journal))
            raise
        else:
            if len(self._journals) > 1:
                self._journals[-2].extend(journal)
        finally:
            self._journals.pop()


def route_from_settings(settings: Settings) -> AssetRoute:
    match TransferMode(settings.escrow_transfer_mode):
        case TransferMode.PSP22:
            return Psp22Token(contract=settings.escrow_psp22_contract)
        case TransferMode.NATIVE_ASSET:
            return NativeAsset(asset_id=settings.escrow_native_asset_id)


def build_asset_transfer(settings: Settings, book: AssetBook | None = None) -> AssetTransfer:
    """Create the transfer adapter for the configured mode."""
    route = route_from_settings(settings)
    logger.info("asset.route_selected", mode=route.mode.value, route=repr(route))
    return AssetTransfer(route, book or AssetBook(), settings.escrow_custody_account)
