"""Database infrastructure - engine, ORM models, and repositories."""

from tiered_escrow.infrastructure.database.engine import (
    build_engine,
    build_session_factory,
    close_db,
    create_tables,
    get_session_factory,
    init_db,
)
from tiered_escrow.infrastructure.database.orm_models import (
    Base,
    Escrow,
    EscrowEvent,
    ExtensionRequest,
    PrincipalEscrow,
    ProtocolState,
)
from tiered_escrow.infrastructure.database.repositories import (
    EscrowLedger,
    EventRepository,
    ExtensionNegotiator,
    ProtocolStateRepository,
)

__all__ = [
    "Base",
    "Escrow",
    "EscrowEvent",
    "ExtensionRequest",
    "PrincipalEscrow",
    "ProtocolState",
    "EscrowLedger",
    "EventRepository",
    "ExtensionNegotiator",
    "ProtocolStateRepository",
    "build_engine",
    "build_session_factory",
    "create_tables",
    "get_session_factory",
    "init_db",
    "close_db",
]
