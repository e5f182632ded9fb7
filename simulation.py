#!/usr/bin/env python3
"""Tiered Escrow - End-to-End Simulation.

Runs four scenarios with ClientBot and ProviderBot agents against an
in-memory SQLite database and a simulated USDT asset book:

    Scenario 1: Happy Path
        - Client opens a 1 USDT escrow and completes it
        - Provider receives 0.99, the owner collects the 0.01 fee

    Scenario 2: Cancel and Dispute
        - Provider cancels one escrow -> client refunded in full
        - Client flags a dispute on another -> funds stay in custody

    Scenario 3: Extension and Expiry
        - Provider asks for more time, client approves
        - The clock passes the new deadline, a keeper finds and expires it

    Scenario 4: Tier Crossing
        - Completions push total volume past 10M USDT
        - The fee rate drops from 100 to 80 bps for later completions

Usage:
    uv run python simulation.py
    uv run python simulation.py --scenario 3
    uv run python simulation.py --mode native_asset
"""

from __future__ import annotations

import argparse
import asyncio
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from tiered_escrow.config import ONE_DAY_MS, Settings
from tiered_escrow.domain.enums import EscrowStatus
from tiered_escrow.domain.exceptions import EscrowError
from tiered_escrow.domain.fee_tiers import SCALE, TIER_1_THRESHOLD
from tiered_escrow.domain.ports import Principal
from tiered_escrow.infrastructure.database.engine import (
    build_engine,
    build_session_factory,
    create_tables,
)
from tiered_escrow.logging_config import get_logger, setup_logging
from tiered_escrow.services.asset_transfer import AssetBook, build_asset_transfer
from tiered_escrow.services.escrow_service import EscrowService

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

    from tiered_escrow.services.asset_transfer import AssetTransfer

logger = get_logger("simulation")

OWNER = Principal("owner")
START_MS = 1_700_000_000_000


@dataclass
class SimClock:
    """Manually advanced clock so scenarios can cross deadlines instantly."""

    now_ms: int = START_MS

    def now(self) -> int:
        return self.now_ms

    def advance(self, ms: int) -> None:
        self.now_ms += ms


@dataclass
class Deployment:
    """One isolated escrow deployment: database, asset book and service."""

    engine: AsyncEngine
    service: EscrowService
    assets: AssetTransfer
    clock: SimClock = field(default_factory=SimClock)

    async def balance(self, holder: str) -> int:
        return await self.assets.balance_of(Principal(holder))


async def deploy(mode: str = "psp22") -> Deployment:
    """Stand up a fresh deployment on in-memory SQLite."""
    settings = Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        escrow_owner=OWNER,
        escrow_transfer_mode=mode,
    )
    engine = build_engine(settings.database_url, settings)
    await create_tables(engine)
    clock = SimClock()
    assets = build_asset_transfer(settings, AssetBook())
    service = EscrowService(
        build_session_factory(engine),
        assets,
        clock=clock,
        settings=settings,
    )
    await service.bootstrap()
    return Deployment(engine=engine, service=service, assets=assets, clock=clock)


# ---------------------------------------------------------------------------
# Bot Agents
# ---------------------------------------------------------------------------


@dataclass
class ClientBot:
    """Simulated client that funds escrows and releases them."""

    deployment: Deployment
    principal: Principal = Principal("client-bot")

    def fund(self, amount: int) -> None:
        """Mint ``amount`` and approve the custody account to pull it."""
        assets = self.deployment.assets
        assets.book.mint(assets.asset_key, self.principal, amount)
        current = assets.book.allowance(assets.asset_key, self.principal, assets.custody_account)
        assets.book.approve(assets.asset_key, self.principal, assets.custody_account, current + amount)

    async def open_escrow(self, provider: Principal, amount: int) -> int:
        self.fund(amount)
        escrow = await self.deployment.service.create(self.principal, provider, amount)
        logger.info("🔵 CLIENT: Escrow opened", escrow_id=escrow.id, amount=_usdt(amount))
        return escrow.id

    async def complete(self, escrow_id: int) -> None:
        await self.deployment.service.complete(self.principal, escrow_id)
        logger.info("🔵 CLIENT: Escrow completed", escrow_id=escrow_id)

    async def dispute(self, escrow_id: int, reason: str) -> None:
        await self.deployment.service.flag_dispute(self.principal, escrow_id, reason)
        logger.info("🔵 CLIENT: Dispute flagged", escrow_id=escrow_id)

    async def approve_extension(self, escrow_id: int) -> None:
        await self.deployment.service.approve_extension(self.principal, escrow_id)
        logger.info("🔵 CLIENT: Extension approved", escrow_id=escrow_id)


@dataclass
class ProviderBot:
    """Simulated provider that does the work and may ask for more time."""

    deployment: Deployment
    principal: Principal = Principal("provider-bot")

    async def cancel(self, escrow_id: int) -> None:
        await self.deployment.service.cancel(self.principal, escrow_id)
        logger.info("🟢 PROVIDER: Escrow cancelled", escrow_id=escrow_id)

    async def request_extension(self, escrow_id: int, extra_ms: int, reason: str) -> int:
        escrow = await self.deployment.service.get_escrow(escrow_id)
        new_deadline = escrow.deadline + extra_ms
        await self.deployment.service.request_extension(
            self.principal, escrow_id, new_deadline=new_deadline, reason=reason
        )
        logger.info("🟢 PROVIDER: Extension requested", escrow_id=escrow_id, new_deadline=new_deadline)
        return new_deadline


# ---------------------------------------------------------------------------
# Print helpers
# ---------------------------------------------------------------------------


def _usdt(amount: int) -> str:
    return f"{amount / SCALE:,.6f} USDT"


def banner(text: str) -> None:
    """Print a prominent banner."""
    width = 70
    print("\n" + "=" * width)
    print(f"  {text}")
    print("=" * width + "\n")


def section(text: str) -> None:
    print(f"\n--- {text} ---\n")


async def print_audit_trail(deployment: Deployment, escrow_id: int) -> None:
    """Print the full audit trail for an escrow."""
    events = await deployment.service.get_events(escrow_id)
    print("\n  📜 Audit Trail:")
    for i, evt in enumerate(events, 1):
        old = evt.old_status or "-"
        new = evt.new_status or old
        print(f"    {i}. [{evt.event_type}] {old} → {new} (by {evt.actor})")
    print()


# ===========================================================================
# Scenario 1: Happy Path
# ===========================================================================
async def scenario_1_happy_path(deployment: Deployment) -> dict:
    """Client opens and completes a 1 USDT escrow."""
    banner("SCENARIO 1: Happy Path - Complete With a 1% Fee")
    client = ClientBot(deployment)
    provider = ProviderBot(deployment)
    amount = 1 * SCALE

    section("Step 1: Client opens escrow")
    escrow_id = await client.open_escrow(provider.principal, amount)

    section("Step 2: Client completes escrow")
    await client.complete(escrow_id)

    provider_balance = await deployment.balance(provider.principal)
    owner_balance = await deployment.balance(OWNER)
    fees = await deployment.service.fee_info()
    print(f"  Provider received: {_usdt(provider_balance)}")
    print(f"  Owner fee:         {_usdt(owner_balance)}")
    print(f"  Total volume:      {_usdt(fees.total_volume)}")
    await print_audit_trail(deployment, escrow_id)

    return {
        "escrow_id": escrow_id,
        "provider_balance": provider_balance,
        "owner_balance": owner_balance,
        "total_volume": fees.total_volume,
    }


# ===========================================================================
# Scenario 2: Cancel and Dispute
# ===========================================================================
async def scenario_2_cancel_and_dispute(deployment: Deployment) -> dict:
    """One escrow is cancelled, another is frozen by a dispute."""
    banner("SCENARIO 2: Cancel and Dispute")
    client = ClientBot(deployment)
    provider = ProviderBot(deployment)

    section("Step 1: Provider cancels -> client refunded")
    cancelled_id = await client.open_escrow(provider.principal, 5 * SCALE)
    await provider.cancel(cancelled_id)
    refunded = await deployment.balance(client.principal)
    print(f"  Client balance after refund: {_usdt(refunded)}")

    section("Step 2: Client disputes a second escrow")
    disputed_id = await client.open_escrow(provider.principal, 3 * SCALE)
    await client.dispute(disputed_id, "Deliverable does not match the agreed scope")

    section("Step 3: Completing a disputed escrow is rejected")
    rejected_code = None
    try:
        await client.complete(disputed_id)
    except EscrowError as exc:
        rejected_code = exc.code
        print(f"  ❌ Rejected: {exc.code} - {exc.message}")

    custody = await deployment.balance(deployment.assets.custody_account)
    print(f"  Still in custody: {_usdt(custody)}")
    await print_audit_trail(deployment, disputed_id)

    return {
        "cancelled_id": cancelled_id,
        "disputed_id": disputed_id,
        "client_balance": refunded,
        "custody_balance": custody,
        "rejected_code": rejected_code,
    }


# ===========================================================================
# Scenario 3: Extension and Expiry
# ===========================================================================
async def scenario_3_extension_and_expiry(deployment: Deployment) -> dict:
    """Deadline is extended by handshake, then lapses and is reclaimed."""
    banner("SCENARIO 3: Extension and Expiry")
    client = ClientBot(deployment)
    provider = ProviderBot(deployment)
    keeper = Principal("keeper-bot")
    amount = 2 * SCALE

    section("Step 1: Open escrow, provider asks for 7 more days")
    escrow_id = await client.open_escrow(provider.principal, amount)
    new_deadline = await provider.request_extension(escrow_id, 7 * ONE_DAY_MS, "Waiting on upstream data")
    await client.approve_extension(escrow_id)

    section("Step 2: Clock passes the extended deadline")
    deployment.clock.now_ms = new_deadline + 1
    count = await deployment.service.escrow_count()
    expired = await deployment.service.list_expired(0, count)
    print(f"  Expired escrows found by keeper: {expired}")

    section("Step 3: Keeper processes expiry")
    for expired_id in expired:
        await deployment.service.process_expired(keeper, expired_id)
        logger.info("🟡 KEEPER: Escrow expired", escrow_id=expired_id)

    escrow = await deployment.service.get_escrow(escrow_id)
    client_balance = await deployment.balance(client.principal)
    print(f"  Final status: {escrow.status}")
    print(f"  Client balance: {_usdt(client_balance)}")
    await print_audit_trail(deployment, escrow_id)

    return {
        "escrow_id": escrow_id,
        "deadline": escrow.deadline,
        "expired": expired,
        "status": escrow.status,
        "client_balance": client_balance,
    }


# ===========================================================================
# Scenario 4: Tier Crossing
# ===========================================================================
async def scenario_4_tier_crossing(deployment: Deployment) -> dict:
    """Large completions move the protocol into tier 1."""
    banner("SCENARIO 4: Tier Crossing - 100 bps -> 80 bps")
    client = ClientBot(deployment)
    provider = ProviderBot(deployment)

    fees = await deployment.service.fee_info()
    print(f"  Tier {fees.current_tier}, {fees.fee_bps} bps, {_usdt(fees.volume_to_next_tier)} to next tier")

    section("Step 1: Complete enough volume to cross 10M USDT")
    remaining = TIER_1_THRESHOLD - fees.total_volume
    big_id = await client.open_escrow(provider.principal, remaining)
    await client.complete(big_id)
    fees = await deployment.service.fee_info()
    print(f"  Now tier {fees.current_tier} at {fees.fee_bps} bps")

    section("Step 2: Next completion pays the lower rate")
    owner_before = await deployment.balance(OWNER)
    next_id = await client.open_escrow(provider.principal, 1_000 * SCALE)
    await client.complete(next_id)
    fee_paid = await deployment.balance(OWNER) - owner_before
    print(f"  Fee on 1,000 USDT: {_usdt(fee_paid)}")

    return {
        "tier": fees.current_tier,
        "fee_bps": fees.fee_bps,
        "fee_paid": fee_paid,
    }


# ===========================================================================
# Main
# ===========================================================================
SCENARIOS = {
    1: scenario_1_happy_path,
    2: scenario_2_cancel_and_dispute,
    3: scenario_3_extension_and_expiry,
    4: scenario_4_tier_crossing,
}


async def run_scenarios(numbers: list[int], mode: str = "psp22") -> dict[int, dict]:
    """Run the given scenarios, each against its own fresh deployment."""
    results: dict[int, dict] = {}
    for num in numbers:
        deployment = await deploy(mode)
        try:
            results[num] = await SCENARIOS[num](deployment)
        finally:
            await deployment.engine.dispose()
    return results


async def run_all(mode: str = "psp22") -> dict[int, dict]:
    print("\n" + "🚀" * 35)
    print("  TIERED ESCROW - SIMULATION")
    print(f"  Transfer mode: {mode}")
    print("🚀" * 35 + "\n")

    results = await run_scenarios(sorted(SCENARIOS), mode)

    print("\n" + "=" * 70)
    print("  ✅ ALL SCENARIOS COMPLETED SUCCESSFULLY")
    print("=" * 70 + "\n")
    return results


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Tiered Escrow Simulation")
    parser.add_argument(
        "--scenario",
        type=int,
        default=0,
        help="Run a specific scenario (1-4). Default: run all.",
    )
    parser.add_argument(
        "--mode",
        choices=["psp22", "native_asset"],
        default="psp22",
        help="Asset transfer route to simulate.",
    )
    args = parser.parse_args()

    setup_logging(log_level="INFO", json_logs=False)

    if args.scenario == 0:
        asyncio.run(run_all(mode=args.mode))
    elif args.scenario not in SCENARIOS:
        print(f"Unknown scenario {args.scenario}. Available: {', '.join(map(str, SCENARIOS))}")
    else:
        asyncio.run(run_scenarios([args.scenario], mode=args.mode))
