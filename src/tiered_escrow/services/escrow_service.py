"""Escrow Service - core business logic for the escrow lifecycle.

This is the application layer that coordinates between:
    - Domain state machine (transition guard)
    - Fee tiers (rate lookup, volume accounting)
    - Repositories (ledger, extension requests, protocol state, event log)
    - Asset transfer port (value movement)
    - Event sink (post-commit notifications)

Every public mutating operation runs as one call: a single database
transaction plus an asset-port journal. If anything inside the call raises,
both are rolled back and no event is published. Events are handed to the
sink only after commit.

Both REST routes and the simulation call into this service,
ensuring a single source of truth for all business rules.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from statemachine.exceptions import TransitionNotAllowed

from tiered_escrow.config import MAX_TIMELOCK_MS, ONE_DAY_MS, get_settings
from tiered_escrow.domain.enums import EscrowStatus, EventType
from tiered_escrow.domain.exceptions import (
    AlreadyDisputedError,
    ArithmeticOverflowError,
    EscrowError,
    EscrowNotFoundError,
    InvalidAmountError,
    InvalidExtensionError,
    InvalidFeeError,
    InvalidStatusError,
    InvalidTimelockError,
    NotAuthorizedError,
    SystemPausedError,
)
from tiered_escrow.domain.fee_tiers import (
    BPS_DENOMINATOR,
    U128_MAX,
    apply_volume,
    compute_fee,
    volume_to_next_tier,
)
from tiered_escrow.domain.ports import DomainEvent, Principal, SystemClock
from tiered_escrow.domain.state_machine import EscrowStateMachine
from tiered_escrow.infrastructure.database.orm_models import BIGINT_MAX, Escrow
from tiered_escrow.infrastructure.database.repositories import (
    EscrowLedger,
    EventRepository,
    ExtensionNegotiator,
    ProtocolStateRepository,
)
from tiered_escrow.infrastructure.event_sinks import LoggingEventSink
from tiered_escrow.logging_config import call_context, get_logger
from tiered_escrow.services.expiry_scanner import ExpiryScanner

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

    from tiered_escrow.config import Settings
    from tiered_escrow.domain.ports import AssetTransferPort, Clock, EventSink
    from tiered_escrow.infrastructure.database.orm_models import (
        EscrowEvent,
        ExtensionRequest,
        ProtocolState,
    )

logger = get_logger(__name__)


@dataclass(frozen=True)
class FeeInfo:
    total_volume: int
    current_tier: int
    fee_bps: int
    volume_to_next_tier: int


@dataclass(frozen=True)
class ProtocolInfo:
    owner: str
    paused: bool
    default_timelock_ms: int
    transfer_mode: str | None
    escrow_count: int


@dataclass
class _Call:
    """Everything one in-flight call works against."""

    session: AsyncSession
    actor: str
    now: int
    ledger: EscrowLedger
    negotiator: ExtensionNegotiator
    protocol: ProtocolStateRepository
    event_log: EventRepository
    pending: list[DomainEvent] = field(default_factory=list)

    async def record(
        self,
        event_type: EventType,
        escrow_id: int | None,
        old_status: str | None = None,
        new_status: str | None = None,
        **data: Any,
    ) -> None:
        event = DomainEvent(
            event_type=event_type,
            escrow_id=escrow_id,
            actor=self.actor,
            occurred_at=self.now,
            old_status=old_status,
            new_status=new_status,
            data=data,
        )
        await self.event_log.record(event)
        self.pending.append(event)


class EscrowService:
    """Manages the escrow lifecycle for one deployment."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        assets: AssetTransferPort,
        clock: Clock | None = None,
        events: EventSink | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._assets = assets
        self._clock = clock or SystemClock()
        self._events = events or LoggingEventSink()
        self._settings = settings or get_settings()
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Bootstrap
    # ------------------------------------------------------------------

    async def bootstrap(self, owner: str | None = None) -> ProtocolState:
        """Create the protocol_state row if it does not exist yet."""
        owner = owner or self._settings.escrow_owner
        async with self._session_factory() as session, session.begin():
            state, created = await ProtocolStateRepository(session).get_or_create(
                owner=owner,
                fee_bps=self._settings.escrow_initial_fee_bps,
                default_timelock_ms=self._settings.escrow_default_timelock_ms,
            )
        if created:
            logger.info(
                "protocol.bootstrapped",
                owner=owner,
                fee_bps=state.fee_bps,
                timelock_ms=state.default_timelock_ms,
            )
        return state

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create(self, caller: Principal, provider: Principal, amount: int) -> Escrow:
        """Take ``amount`` from the caller into custody for ``provider``.

        The caller must have approved the custody account beforehand. Any
        approval left over after the pull is reported, never reset.
        """
        async with self._call("create", caller) as call:
            if amount <= 0 or amount > U128_MAX:
                raise InvalidAmountError(amount)
            state = await call.protocol.get()
            self._ensure_not_paused(state, "create")

            deadline = call.now + state.default_timelock_ms
            if deadline > BIGINT_MAX:
                raise ArithmeticOverflowError("deadline")

            custody = self._assets.custody_account
            await self._assets.transfer_from(caller, custody, amount)
            residual_allowance = await self._assets.allowance(caller, custody)

            escrow = Escrow(
                client=caller,
                provider=provider,
                amount=amount,
                status=EscrowStatus.ACTIVE.value,
                created_at=call.now,
                deadline=deadline,
            )
            await call.ledger.insert(escrow)

            await call.record(
                EventType.ESCROW_CREATED,
                escrow.id,
                old_status=None,
                new_status=EscrowStatus.ACTIVE,
                client=caller,
                provider=provider,
                amount=str(amount),
                deadline=escrow.deadline,
                residual_allowance=str(residual_allowance),
            )

        if residual_allowance:
            logger.warning(
                "escrow.allowance_residual",
                escrow_id=escrow.id,
                client=caller,
                residual=str(residual_allowance),
            )
        logger.info("escrow.created", escrow_id=escrow.id, amount=str(amount), provider=provider)
        return escrow

    # ------------------------------------------------------------------
    # Settlement
    # ------------------------------------------------------------------

    async def complete(self, caller: Principal, escrow_id: int) -> Escrow:
        """Release the escrow to the provider, minus the fee.

        The fee uses the rate in force when the call starts. The completed
        amount then counts towards total volume, which may move the tier
        and so the rate for later completions.
        """
        async with self._call("complete", caller) as call:
            state = await call.protocol.get()
            self._ensure_not_paused(state, "complete")
            escrow = await self._load(call, escrow_id)
            if caller != escrow.client:
                raise NotAuthorizedError(caller, f"complete escrow {escrow_id}")

            old_status = escrow.status
            escrow.status = self._fire(escrow, "release", "complete")
            quote = compute_fee(escrow.amount, state.fee_bps)
            await call.ledger.update(escrow)

            await self._assets.transfer(escrow.provider, quote.provider_amount)
            if quote.fee > 0:
                await self._assets.transfer(state.owner, quote.fee)

            try:
                total_volume, tier_change = apply_volume(
                    state.total_volume, state.current_tier, escrow.amount
                )
            except OverflowError as err:
                raise ArithmeticOverflowError("total_volume") from err
            state.total_volume = total_volume
            if tier_change is not None:
                state.current_tier = tier_change.new_tier
                state.fee_bps = tier_change.fee_bps
            await call.session.flush()

            await call.record(
                EventType.ESCROW_COMPLETED,
                escrow.id,
                old_status=old_status,
                new_status=escrow.status,
                provider=escrow.provider,
                provider_amount=str(quote.provider_amount),
                fee=str(quote.fee),
                fee_bps=quote.fee_bps,
            )
            if tier_change is not None:
                await call.record(
                    EventType.TIER_CHANGED,
                    None,
                    old_tier=tier_change.old_tier,
                    new_tier=tier_change.new_tier,
                    fee_bps=tier_change.fee_bps,
                    total_volume=str(tier_change.total_volume),
                )

        logger.info(
            "escrow.completed",
            escrow_id=escrow_id,
            provider_amount=str(quote.provider_amount),
            fee=str(quote.fee),
        )
        if tier_change is not None:
            logger.info(
                "fee.tier_changed",
                new_tier=tier_change.new_tier,
                fee_bps=tier_change.fee_bps,
                total_volume=str(tier_change.total_volume),
            )
        return escrow

    async def cancel(self, caller: Principal, escrow_id: int) -> Escrow:
        """Either party cancels; the client gets the full amount back."""
        async with self._call("cancel", caller) as call:
            state = await call.protocol.get()
            self._ensure_not_paused(state, "cancel")
            escrow = await self._load(call, escrow_id)
            self._require_party(escrow, caller, "cancel")

            old_status = escrow.status
            escrow.status = self._fire(escrow, "refund", "cancel")
            await call.ledger.update(escrow)
            await self._assets.transfer(escrow.client, escrow.amount)

            await call.record(
                EventType.ESCROW_CANCELLED,
                escrow.id,
                old_status=old_status,
                new_status=escrow.status,
                refunded=str(escrow.amount),
            )

        logger.info("escrow.cancelled", escrow_id=escrow_id, by=caller)
        return escrow

    async def process_expired(self, caller: Principal, escrow_id: int) -> Escrow:
        """Refund a lapsed escrow to its client. Anyone may call this."""
        async with self._call("process_expired", caller) as call:
            state = await call.protocol.get()
            self._ensure_not_paused(state, "process_expired")
            escrow = await self._load(call, escrow_id)
            if escrow.status == EscrowStatus.ACTIVE and call.now <= escrow.deadline:
                raise InvalidStatusError(escrow.id, escrow.status, "expire (deadline not reached)")

            old_status = escrow.status
            escrow.status = self._fire(escrow, "expire", "process_expired")
            await call.ledger.update(escrow)
            await self._assets.transfer(escrow.client, escrow.amount)

            await call.record(
                EventType.ESCROW_EXPIRED,
                escrow.id,
                old_status=old_status,
                new_status=escrow.status,
                refunded=str(escrow.amount),
                deadline=escrow.deadline,
            )

        logger.info("escrow.expired", escrow_id=escrow_id, processed_by=caller)
        return escrow

    # ------------------------------------------------------------------
    # Disputes
    # ------------------------------------------------------------------

    async def flag_dispute(self, caller: Principal, escrow_id: int, reason: str) -> Escrow:
        """Freeze the escrow as DISPUTED. No funds move."""
        async with self._call("flag_dispute", caller) as call:
            escrow = await self._load(call, escrow_id)
            self._require_party(escrow, caller, "flag a dispute on")
            if escrow.status == EscrowStatus.DISPUTED:
                raise AlreadyDisputedError(escrow.id)

            old_status = escrow.status
            escrow.status = self._fire(escrow, "dispute", "flag_dispute")
            await call.ledger.update(escrow)

            await call.record(
                EventType.DISPUTE_FLAGGED,
                escrow.id,
                old_status=old_status,
                new_status=escrow.status,
                reason=reason,
                flagged_by=caller,
            )

        logger.info("escrow.dispute_flagged", escrow_id=escrow_id, by=caller)
        return escrow

    # ------------------------------------------------------------------
    # Deadline extension handshake
    # ------------------------------------------------------------------

    async def request_extension(
        self,
        caller: Principal,
        escrow_id: int,
        new_deadline: int,
        reason: str,
    ) -> ExtensionRequest:
        """Propose a later deadline. Replaces any proposal still pending."""
        async with self._call("request_extension", caller) as call:
            escrow = await self._load(call, escrow_id)
            self._require_party(escrow, caller, "request an extension on")
            self._fire(escrow, "extend", "request_extension")
            if new_deadline <= call.now:
                raise InvalidExtensionError(escrow.id, new_deadline, "deadline must be in the future")
            if new_deadline > BIGINT_MAX:
                raise InvalidExtensionError(escrow.id, new_deadline, "deadline is not representable")
            if new_deadline <= escrow.deadline:
                raise InvalidExtensionError(
                    escrow.id, new_deadline, f"must be later than current deadline {escrow.deadline}"
                )

            request = await call.negotiator.propose(
                escrow_id=escrow.id,
                requester=caller,
                new_deadline=new_deadline,
                reason=reason,
                requested_at=call.now,
            )

            await call.record(
                EventType.EXTENSION_REQUESTED,
                escrow.id,
                requested_by=caller,
                current_deadline=escrow.deadline,
                new_deadline=new_deadline,
                reason=reason,
            )

        logger.info("escrow.extension_requested", escrow_id=escrow_id, new_deadline=new_deadline)
        return request

    async def approve_extension(self, caller: Principal, escrow_id: int) -> Escrow:
        """The counter-party accepts the pending proposal."""
        async with self._call("approve_extension", caller) as call:
            escrow = await self._load(call, escrow_id)
            self._require_party(escrow, caller, "approve an extension on")
            request = await call.negotiator.take(escrow.id, approver=caller)
            self._fire(escrow, "extend", "approve_extension")

            old_deadline = escrow.deadline
            escrow.deadline = request.new_deadline
            await call.ledger.update(escrow)

            await call.record(
                EventType.EXTENSION_APPROVED,
                escrow.id,
                approved_by=caller,
                requested_by=request.requester,
                old_deadline=old_deadline,
                new_deadline=escrow.deadline,
            )

        logger.info(
            "escrow.extension_approved",
            escrow_id=escrow_id,
            old_deadline=old_deadline,
            new_deadline=escrow.deadline,
        )
        return escrow

    # ------------------------------------------------------------------
    # Administration (owner only)
    # ------------------------------------------------------------------

    async def set_fee_rate(self, caller: Principal, fee_bps: int) -> None:
        """Override the rate. The next tier change replaces it again."""
        async with self._call("set_fee_rate", caller) as call:
            state = await call.protocol.get()
            self._require_owner(state, caller, "set the fee rate")
            if not 0 <= fee_bps <= BPS_DENOMINATOR:
                raise InvalidFeeError(fee_bps)
            old_fee_bps = state.fee_bps
            state.fee_bps = fee_bps
            await call.session.flush()
            await call.record(
                EventType.FEE_RATE_UPDATED, None, old_fee_bps=old_fee_bps, fee_bps=fee_bps
            )
        logger.info("fee.rate_updated", old_fee_bps=old_fee_bps, fee_bps=fee_bps)

    async def pause(self, caller: Principal) -> None:
        await self._set_paused(caller, True)

    async def unpause(self, caller: Principal) -> None:
        await self._set_paused(caller, False)

    async def set_default_timelock(self, caller: Principal, duration_ms: int) -> None:
        """Change the lifetime given to escrows created from now on."""
        async with self._call("set_default_timelock", caller) as call:
            state = await call.protocol.get()
            self._require_owner(state, caller, "set the default timelock")
            too_long = duration_ms > MAX_TIMELOCK_MS or call.now + duration_ms > BIGINT_MAX
            if duration_ms < ONE_DAY_MS or too_long:
                raise InvalidTimelockError(duration_ms, ONE_DAY_MS, MAX_TIMELOCK_MS)
            old_duration = state.default_timelock_ms
            state.default_timelock_ms = duration_ms
            await call.session.flush()
            await call.record(
                EventType.TIMELOCK_UPDATED,
                None,
                old_timelock_ms=old_duration,
                timelock_ms=duration_ms,
            )
        logger.info("protocol.timelock_updated", timelock_ms=duration_ms)

    async def emergency_withdraw(self, caller: Principal, amount: int | None = None) -> int:
        """Move custodied value to the owner; everything when ``amount`` is None.

        Escrow records are left untouched.
        """
        async with self._call("emergency_withdraw", caller) as call:
            state = await call.protocol.get()
            self._require_owner(state, caller, "withdraw custodied funds")
            if amount is None:
                amount = await self._assets.balance_of(self._assets.custody_account)
            if amount <= 0:
                raise InvalidAmountError(amount)
            await self._assets.transfer(Principal(state.owner), amount)
            await call.record(EventType.EMERGENCY_WITHDRAWAL, None, amount=str(amount))
        logger.warning("protocol.emergency_withdrawal", amount=str(amount), owner=caller)
        return amount

    # ------------------------------------------------------------------
    # Read helpers
    # ------------------------------------------------------------------

    async def get_escrow(self, escrow_id: int) -> Escrow:
        async with self._session_factory() as session:
            escrow = await EscrowLedger(session).get(escrow_id)
        if escrow is None:
            raise EscrowNotFoundError(escrow_id)
        return escrow

    async def escrows_of(self, principal: str) -> list[int]:
        async with self._session_factory() as session:
            return await EscrowLedger(session).escrows_of(principal)

    async def escrow_count(self) -> int:
        async with self._session_factory() as session:
            return await EscrowLedger(session).count()

    async def get_extension_request(self, escrow_id: int) -> ExtensionRequest | None:
        async with self._session_factory() as session:
            return await ExtensionNegotiator(session).get(escrow_id)

    async def get_status(self, escrow_id: int) -> dict:
        """Status plus the lifecycle events the guard would still accept."""
        escrow = await self.get_escrow(escrow_id)
        sm = EscrowStateMachine(current_status=escrow.status)
        return {
            "escrow_id": escrow.id,
            "status": escrow.status,
            "deadline": escrow.deadline,
            "allowed_events": sm.get_allowed_events(),
        }

    async def get_events(self, escrow_id: int) -> list[EscrowEvent]:
        async with self._session_factory() as session:
            return await EventRepository(session).get_by_escrow(escrow_id)

    async def fee_info(self) -> FeeInfo:
        async with self._session_factory() as session:
            state = await ProtocolStateRepository(session).get()
        return FeeInfo(
            total_volume=state.total_volume,
            current_tier=state.current_tier,
            fee_bps=state.fee_bps,
            volume_to_next_tier=volume_to_next_tier(state.total_volume, state.current_tier),
        )

    async def protocol_info(self) -> ProtocolInfo:
        async with self._session_factory() as session:
            state = await ProtocolStateRepository(session).get()
            count = await EscrowLedger(session).count()
        mode = getattr(self._assets, "mode", None)
        return ProtocolInfo(
            owner=state.owner,
            paused=state.paused,
            default_timelock_ms=state.default_timelock_ms,
            transfer_mode=mode.value if mode is not None else None,
            escrow_count=count,
        )

    async def list_expired(self, start: int, limit: int) -> list[int]:
        """Ids in the window that process_expired would currently accept."""
        async with self._session_factory() as session:
            scanner = ExpiryScanner(EscrowLedger(session))
            return await scanner.list_expired(start, limit, now=self._clock.now())

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _call(self, operation: str, caller: str) -> AsyncIterator[_Call]:
        """Run one public operation atomically and publish its events after commit."""
        async with self._lock:
            with call_context(operation, caller):
                try:
                    async with self._session_factory() as session:
                        async with self._assets.atomic(), session.begin():
                            call = _Call(
                                session=session,
                                actor=caller,
                                now=self._clock.now(),
                                ledger=EscrowLedger(session),
                                negotiator=ExtensionNegotiator(session),
                                protocol=ProtocolStateRepository(session),
                                event_log=EventRepository(session),
                            )
                            yield call
                except EscrowError as exc:
                    logger.info("escrow.call_rejected", code=exc.code, error=exc.message)
                    raise
                await self._publish(call.pending)

    async def _publish(self, events: list[DomainEvent]) -> None:
        for event in events:
            try:
                await self._events.emit(event)
            except Exception as exc:
                logger.warning(
                    "event.delivery_failed",
                    event_type=event.event_type.value,
                    escrow_id=event.escrow_id,
                    error=str(exc),
                )

    async def _set_paused(self, caller: Principal, paused: bool) -> None:
        operation = "pause" if paused else "unpause"
        async with self._call(operation, caller) as call:
            state = await call.protocol.get()
            self._require_owner(state, caller, operation)
            state.paused = paused
            await call.session.flush()
            await call.record(
                EventType.PROTOCOL_PAUSED if paused else EventType.PROTOCOL_UNPAUSED, None
            )
        logger.warning("protocol.paused" if paused else "protocol.unpaused", by=caller)

    @staticmethod
    async def _load(call: _Call, escrow_id: int) -> Escrow:
        escrow = await call.ledger.get(escrow_id)
        if escrow is None:
            raise EscrowNotFoundError(escrow_id)
        return escrow

    @staticmethod
    def _ensure_not_paused(state: ProtocolState, action: str) -> None:
        if state.paused:
            raise SystemPausedError(action)

    @staticmethod
    def _require_party(escrow: Escrow, caller: str, action: str) -> None:
        if caller not in escrow.parties:
            raise NotAuthorizedError(caller, f"{action} escrow {escrow.id}")

    @staticmethod
    def _require_owner(state: ProtocolState, caller: str, action: str) -> None:
        if caller != state.owner:
            raise NotAuthorizedError(caller, action)

    @staticmethod
    def _fire(escrow: Escrow, event_name: str, action: str) -> str:
        """Validate a lifecycle event against the guard and return the new status.

        Raises InvalidStatusError if the escrow's status does not allow it.
        """
        sm = EscrowStateMachine(current_status=escrow.status)
        try:
            getattr(sm, event_name)()
        except TransitionNotAllowed as err:
            raise InvalidStatusError(escrow.id, escrow.status, action) from err
        return sm.status
