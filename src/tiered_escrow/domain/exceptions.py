"""Domain exceptions for the Tiered Escrow service.

These exceptions are framework-agnostic and represent business rule violations.
Every public service operation raises one of these (and nothing is committed)
when it refuses a call. The API layer's middleware translates them to HTTP
responses.
"""


class EscrowError(Exception):
    """Base exception for all domain errors."""

    def __init__(self, message: str, code: str = "ESCROW_ERROR") -> None:
        self.message = message
        self.code = code
        super().__init__(self.message)


# --- Authorization ---


class NotAuthorizedError(EscrowError):
    """Raised when the caller lacks the role the operation requires."""

    def __init__(self, caller: str, action: str) -> None:
        super().__init__(
            message=f"Caller {caller} is not authorized to {action}",
            code="NOT_AUTHORIZED",
        )
        self.caller = caller
        self.action = action


# --- Lookup ---


class EscrowNotFoundError(EscrowError):
    """Raised when an escrow id does not exist, or has no pending extension."""

    def __init__(self, escrow_id: int, what: str = "Escrow") -> None:
        super().__init__(
            message=f"{what} not found: {escrow_id}",
            code="ESCROW_NOT_FOUND",
        )
        self.escrow_id = escrow_id


class ProtocolNotInitializedError(EscrowError):
    """Raised when the protocol_state row has not been bootstrapped."""

    def __init__(self) -> None:
        super().__init__(
            message="Protocol state missing. Call EscrowService.bootstrap() first.",
            code="PROTOCOL_NOT_INITIALIZED",
        )


# --- State Machine ---


class InvalidStatusError(EscrowError):
    """Raised when an operation is illegal for the escrow's current status.

    Also covers "not yet expired" for process_expired.
    """

    def __init__(self, escrow_id: int, status: str, action: str) -> None:
        super().__init__(
            message=f"Cannot {action} escrow {escrow_id} in status {status}",
            code="INVALID_STATUS",
        )
        self.escrow_id = escrow_id
        self.status = status
        self.action = action


class AlreadyDisputedError(InvalidStatusError):
    """Raised when flagging a dispute on an escrow that is already DISPUTED."""

    def __init__(self, escrow_id: int) -> None:
        super().__init__(escrow_id, "DISPUTED", "flag_dispute")
        self.message = f"Escrow {escrow_id} is already disputed"
        self.args = (self.message,)
        self.code = "ALREADY_DISPUTED"


class SystemPausedError(EscrowError):
    """Raised by pause-gated operations while the protocol is paused."""

    def __init__(self, action: str) -> None:
        super().__init__(
            message=f"Protocol is paused; {action} is unavailable",
            code="SYSTEM_PAUSED",
        )


# --- Validation ---


class InvalidAmountError(EscrowError):
    """Raised for a zero amount or one that does not fit in 128 bits."""

    def __init__(self, amount: int) -> None:
        super().__init__(
            message=f"Invalid amount: {amount}",
            code="INVALID_AMOUNT",
        )
        self.amount = amount


class InvalidTimelockError(EscrowError):
    """Raised when a default timelock is below the one-day floor or too long
    for deadlines to stay storable.
    """

    def __init__(self, duration_ms: int, minimum_ms: int, maximum_ms: int) -> None:
        super().__init__(
            message=f"Timelock {duration_ms}ms is outside {minimum_ms}..{maximum_ms}ms",
            code="INVALID_TIMELOCK",
        )


class InvalidExtensionError(EscrowError):
    """Raised when a proposed deadline is not in the future or not later
    than the current deadline.
    """

    def __init__(self, escrow_id: int, new_deadline: int, reason: str) -> None:
        super().__init__(
            message=f"Invalid extension for escrow {escrow_id} to {new_deadline}: {reason}",
            code="INVALID_EXTENSION",
        )
        self.escrow_id = escrow_id
        self.new_deadline = new_deadline


class InvalidFeeError(EscrowError):
    """Raised when a fee rate outside 0..10000 bps is set."""

    def __init__(self, fee_bps: int) -> None:
        super().__init__(
            message=f"Fee rate must be between 0 and 10000 bps, got {fee_bps}",
            code="INVALID_FEE",
        )


class ArithmeticOverflowError(EscrowError):
    """Raised when a counter would leave its fixed-width range."""

    def __init__(self, what: str) -> None:
        super().__init__(message=f"Arithmetic overflow: {what}", code="ARITHMETIC_OVERFLOW")


# --- Transfer Errors ---


class TransferError(EscrowError):
    """Base for failures reported by the asset transfer port."""

    def __init__(self, message: str, code: str = "TRANSFER_FAILED") -> None:
        super().__init__(message=message, code=code)


class InsufficientBalanceError(TransferError):
    """Raised when the payer holds less than the amount to move."""

    def __init__(self, holder: str, required: int, available: int) -> None:
        super().__init__(
            message=f"Insufficient balance for {holder}: required {required}, available {available}",
            code="INSUFFICIENT_BALANCE",
        )
        self.required = required
        self.available = available


class InsufficientAllowanceError(TransferError):
    """Raised when the payer has not pre-authorized enough for the spender."""

    def __init__(self, owner: str, spender: str, required: int, available: int) -> None:
        super().__init__(
            message=(
                f"Insufficient allowance from {owner} to {spender}: "
                f"required {required}, approved {available}"
            ),
            code="INSUFFICIENT_ALLOWANCE",
        )
        self.required = required
        self.available = available


class TransferFailedError(TransferError):
    """Raised when the transfer backend rejects a movement for any other reason."""

    def __init__(self, message: str) -> None:
        super().__init__(message=message, code="TRANSFER_FAILED")
