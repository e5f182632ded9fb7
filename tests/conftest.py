"""Shared test fixtures for the Tiered Escrow test suite.

Provides:
    - An in-memory SQLite database with the schema created
    - A frozen clock and a recording event sink
    - An asset book plus a PSP22 transfer adapter over it
    - A bootstrapped EscrowService and a helper to fund principals
"""

from __future__ import annotations

from dataclasses import dataclass, field

import pytest
import pytest_asyncio

from tiered_escrow.config import ONE_DAY_MS, Settings
from tiered_escrow.domain.ports import DomainEvent, Principal
from tiered_escrow.infrastructure.database.engine import (
    build_engine,
    build_session_factory,
    create_tables,
)
from tiered_escrow.services.asset_transfer import AssetBook, AssetTransfer, Psp22Token
from tiered_escrow.services.escrow_service import EscrowService

OWNER = Principal("owner")
CLIENT = Principal("alice")
PROVIDER = Principal("bob")
STRANGER = Principal("mallory")
CUSTODY = Principal("escrow-custody")

T0 = 1_700_000_000_000
DEFAULT_TIMELOCK_MS = 30 * ONE_DAY_MS


@dataclass
class FrozenClock:
    """Clock that only moves when a test moves it."""

    now_ms: int = T0

    def now(self) -> int:
        return self.now_ms

    def advance(self, ms: int) -> None:
        self.now_ms += ms


@dataclass
class RecordingEventSink:
    """Keeps every emitted event for assertions."""

    events: list[DomainEvent] = field(default_factory=list)

    async def emit(self, event: DomainEvent) -> None:
        self.events.append(event)

    @property
    def types(self) -> list[str]:
        return [e.event_type.value for e in self.events]

    def clear(self) -> None:
        self.events.clear()


# ---------------------------------------------------------------------------
# Infrastructure Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings() -> Settings:
    return Settings(
        app_env="development",
        database_url="sqlite+aiosqlite:///:memory:",
        escrow_owner=OWNER,
        escrow_custody_account=CUSTODY,
        escrow_transfer_mode="psp22",
        escrow_psp22_contract="psp22-usdt",
        escrow_default_timelock_ms=DEFAULT_TIMELOCK_MS,
        escrow_initial_fee_bps=100,
    )


@pytest_asyncio.fixture
async def engine(settings: Settings):
    engine = build_engine(settings.database_url, settings)
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


@pytest.fixture
def sink() -> RecordingEventSink:
    return RecordingEventSink()


@pytest.fixture
def book() -> AssetBook:
    return AssetBook()


@pytest.fixture
def assets(book: AssetBook) -> AssetTransfer:
    return AssetTransfer(Psp22Token(contract="psp22-usdt"), book, CUSTODY)


# ---------------------------------------------------------------------------
# Service Fixtures
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture
async def service(session_factory, assets, clock, sink, settings) -> EscrowService:
    svc = EscrowService(session_factory, assets, clock=clock, events=sink, settings=settings)
    await svc.bootstrap()
    return svc


@pytest.fixture
def fund(assets: AssetTransfer):
    """Mint to a principal and approve the custody account for the same amount."""

    def _fund(principal: str, amount: int, approve: int | None = None) -> None:
        assets.book.mint(assets.asset_key, principal, amount)
        assets.book.approve(
            assets.asset_key,
            principal,
            CUSTODY,
            amount if approve is None else approve,
        )

    return _fund


@pytest.fixture
def balance(assets: AssetTransfer):
    def _balance(holder: str) -> int:
        return assets.book.balance(assets.asset_key, holder)

    return _balance


@pytest_asyncio.fixture
async def active_escrow(service: EscrowService, fund, sink: RecordingEventSink):
    """A 1 USDT escrow from CLIENT to PROVIDER, with the sink cleared afterwards."""
    fund(CLIENT, 1_000_000)
    escrow = await service.create(CLIENT, PROVIDER, 1_000_000)
    sink.clear()
    return escrow
