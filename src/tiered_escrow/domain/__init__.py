"""Domain layer - pure business logic with zero framework dependencies."""

from tiered_escrow.domain.enums import (
    EscrowStatus,
    EventType,
    TransferMode,
)
from tiered_escrow.domain.exceptions import (
    AlreadyDisputedError,
    ArithmeticOverflowError,
    EscrowError,
    EscrowNotFoundError,
    InsufficientAllowanceError,
    InsufficientBalanceError,
    InvalidAmountError,
    InvalidExtensionError,
    InvalidFeeError,
    InvalidStatusError,
    InvalidTimelockError,
    NotAuthorizedError,
    ProtocolNotInitializedError,
    SystemPausedError,
    TransferError,
    TransferFailedError,
)
from tiered_escrow.domain.ports import (
    AssetTransferPort,
    Clock,
    DomainEvent,
    EventSink,
    Principal,
    SystemClock,
)
from tiered_escrow.domain.state_machine import (
    EscrowStateMachine,
    validate_transition,
)

__all__ = [
    "EscrowStatus",
    "EventType",
    "TransferMode",
    "AlreadyDisputedError",
    "ArithmeticOverflowError",
    "EscrowError",
    "EscrowNotFoundError",
    "InsufficientAllowanceError",
    "InsufficientBalanceError",
    "InvalidAmountError",
    "InvalidExtensionError",
    "InvalidFeeError",
    "InvalidStatusError",
    "InvalidTimelockError",
    "NotAuthorizedError",
    "ProtocolNotInitializedError",
    "SystemPausedError",
    "TransferError",
    "TransferFailedError",
    "AssetTransferPort",
    "Clock",
    "DomainEvent",
    "EventSink",
    "Principal",
    "SystemClock",
    "EscrowStateMachine",
    "validate_transition",
]
