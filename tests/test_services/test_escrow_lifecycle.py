"""Tests for EscrowService lifecycle operations.

Runs against in-memory SQLite with a frozen clock, a PSP22 asset book and a
recording event sink (see conftest.py).
"""

from __future__ import annotations

import pytest
from conftest import CLIENT, CUSTODY, DEFAULT_TIMELOCK_MS, OWNER, PROVIDER, STRANGER, T0

from tiered_escrow.config import ONE_DAY_MS
from tiered_escrow.domain.exceptions import (
    AlreadyDisputedError,
    EscrowNotFoundError,
    InsufficientAllowanceError,
    InsufficientBalanceError,
    InvalidAmountError,
    InvalidExtensionError,
    InvalidStatusError,
    NotAuthorizedError,
    SystemPausedError,
)
from tiered_escrow.domain.fee_tiers import U128_MAX
from tiered_escrow.infrastructure.database.orm_models import BIGINT_MAX

# ---------------------------------------------------------------------------
# create
# ---------------------------------------------------------------------------


class TestCreate:
    @pytest.mark.asyncio
    async def test_create_and_get_round_trip(self, service, fund, balance, sink) -> None:
        fund(CLIENT, 1_000_000)

        escrow = await service.create(CLIENT, PROVIDER, 1_000_000)
        stored = await service.get_escrow(escrow.id)

        assert escrow.id == 0
        assert stored.client == CLIENT
        assert stored.provider == PROVIDER
        assert stored.amount == 1_000_000
        assert stored.status == "ACTIVE"
        assert stored.created_at == T0
        assert stored.deadline == T0 + DEFAULT_TIMELOCK_MS
        assert balance(CUSTODY) == 1_000_000
        assert balance(CLIENT) == 0
        assert sink.types == ["ESCROW_CREATED"]

    @pytest.mark.asyncio
    async def test_ids_are_dense_and_indexed(self, service, fund) -> None:
        fund(CLIENT, 3_000)
        for _ in range(3):
            await service.create(CLIENT, PROVIDER, 1_000)

        assert await service.escrow_count() == 3
        assert await service.escrows_of(CLIENT) == [0, 1, 2]
        assert await service.escrows_of(PROVIDER) == [0, 1, 2]
        assert await service.escrows_of(STRANGER) == []

    @pytest.mark.asyncio
    async def test_zero_amount_rejected(self, service, fund, sink) -> None:
        fund(CLIENT, 1_000)

        with pytest.raises(InvalidAmountError):
            await service.create(CLIENT, PROVIDER, 0)

        assert await service.escrow_count() == 0
        assert sink.events == []

    @pytest.mark.asyncio
    async def test_amount_above_u128_rejected(self, service) -> None:
        with pytest.raises(InvalidAmountError):
            await service.create(CLIENT, PROVIDER, U128_MAX + 1)

    @pytest.mark.asyncio
    async def test_amount_checked_before_pause(self, service) -> None:
        await service.pause(OWNER)
        with pytest.raises(InvalidAmountError):
            await service.create(CLIENT, PROVIDER, 0)

    @pytest.mark.asyncio
    async def test_paused(self, service, fund) -> None:
        fund(CLIENT, 1_000)
        await service.pause(OWNER)

        with pytest.raises(SystemPausedError):
            await service.create(CLIENT, PROVIDER, 1_000)

    @pytest.mark.asyncio
    async def test_insufficient_allowance(self, service, fund, balance) -> None:
        fund(CLIENT, 1_000, approve=500)

        with pytest.raises(InsufficientAllowanceError):
            await service.create(CLIENT, PROVIDER, 1_000)

        assert await service.escrow_count() == 0
        assert balance(CLIENT) == 1_000

    @pytest.mark.asyncio
    async def test_insufficient_balance_keeps_allowance(self, service, fund, assets) -> None:
        fund(CLIENT, 500, approve=1_000)

        with pytest.raises(InsufficientBalanceError):
            await service.create(CLIENT, PROVIDER, 1_000)

        assert await assets.allowance(CLIENT, CUSTODY) == 1_000
        assert await service.escrow_count() == 0

    @pytest.mark.asyncio
    async def test_residual_allowance_is_reported_not_reset(self, service, fund, assets, sink) -> None:
        fund(CLIENT, 1_000, approve=1_500)

        await service.create(CLIENT, PROVIDER, 1_000)

        assert await assets.allowance(CLIENT, CUSTODY) == 500
        assert sink.events[0].data["residual_allowance"] == "500"

    @pytest.mark.asyncio
    async def test_client_may_be_provider(self, service, fund) -> None:
        fund(CLIENT, 1_000)
        await service.create(CLIENT, CLIENT, 1_000)
        assert await service.escrows_of(CLIENT) == [0, 0]

    @pytest.mark.asyncio
    async def test_deadline_uses_current_default_timelock(self, service, fund, clock) -> None:
        fund(CLIENT, 2_000)
        await service.set_default_timelock(OWNER, 2 * ONE_DAY_MS)
        clock.advance(500)

        escrow = await service.create(CLIENT, PROVIDER, 1_000)

        assert escrow.deadline == T0 + 500 + 2 * ONE_DAY_MS


# ---------------------------------------------------------------------------
# complete
# ---------------------------------------------------------------------------


class TestComplete:
    @pytest.mark.asyncio
    async def test_end_to_end_payout(self, service, active_escrow, balance, sink) -> None:
        escrow = await service.complete(CLIENT, active_escrow.id)

        assert escrow.status == "COMPLETED"
        assert balance(PROVIDER) == 990_000
        assert balance(OWNER) == 10_000
        assert balance(CUSTODY) == 0
        assert (await service.fee_info()).total_volume == 1_000_000
        assert sink.types == ["ESCROW_COMPLETED"]
        assert sink.events[0].data["fee"] == "10000"
        assert sink.events[0].data["provider_amount"] == "990000"

    @pytest.mark.asyncio
    async def test_only_client_may_complete(self, service, active_escrow, balance) -> None:
        for caller in (PROVIDER, STRANGER, OWNER):
            with pytest.raises(NotAuthorizedError):
                await service.complete(caller, active_escrow.id)

        assert (await service.get_escrow(active_escrow.id)).status == "ACTIVE"
        assert balance(CUSTODY) == 1_000_000

    @pytest.mark.asyncio
    async def test_terminal_completion_is_idempotent(self, service, active_escrow, balance) -> None:
        await service.complete(CLIENT, active_escrow.id)

        with pytest.raises(InvalidStatusError):
            await service.complete(CLIENT, active_escrow.id)

        assert balance(PROVIDER) == 990_000
        assert (await service.fee_info()).total_volume == 1_000_000

    @pytest.mark.asyncio
    async def test_unknown_escrow(self, service) -> None:
        with pytest.raises(EscrowNotFoundError):
            await service.complete(CLIENT, 42)

    @pytest.mark.asyncio
    async def test_pause_checked_before_lookup(self, service) -> None:
        await service.pause(OWNER)
        with pytest.raises(SystemPausedError):
            await service.complete(CLIENT, 42)

    @pytest.mark.asyncio
    async def test_zero_fee_skips_owner_payout(self, service, active_escrow, balance) -> None:
        await service.set_fee_rate(OWNER, 0)

        await service.complete(CLIENT, active_escrow.id)

        assert balance(PROVIDER) == 1_000_000
        assert balance(OWNER) == 0

    @pytest.mark.asyncio
    async def test_small_amount_fee_truncates_to_zero(self, service, fund, balance) -> None:
        fund(CLIENT, 99)
        escrow = await service.create(CLIENT, PROVIDER, 99)

        await service.complete(CLIENT, escrow.id)

        assert balance(PROVIDER) == 99
        assert balance(OWNER) == 0


# ---------------------------------------------------------------------------
# cancel
# ---------------------------------------------------------------------------


class TestCancel:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("caller", [CLIENT, PROVIDER])
    async def test_either_party_cancels(self, service, active_escrow, balance, sink, caller) -> None:
        escrow = await service.cancel(caller, active_escrow.id)

        assert escrow.status == "CANCELLED"
        assert balance(CLIENT) == 1_000_000
        assert balance(CUSTODY) == 0
        assert sink.types == ["ESCROW_CANCELLED"]

    @pytest.mark.asyncio
    async def test_stranger_cannot_cancel(self, service, active_escrow) -> None:
        with pytest.raises(NotAuthorizedError):
            await service.cancel(STRANGER, active_escrow.id)

    @pytest.mark.asyncio
    async def test_cannot_cancel_completed(self, service, active_escrow, balance) -> None:
        await service.complete(CLIENT, active_escrow.id)

        with pytest.raises(InvalidStatusError):
            await service.cancel(PROVIDER, active_escrow.id)

        assert balance(CLIENT) == 0

    @pytest.mark.asyncio
    async def test_paused(self, service, active_escrow) -> None:
        await service.pause(OWNER)
        with pytest.raises(SystemPausedError):
            await service.cancel(CLIENT, active_escrow.id)

    @pytest.mark.asyncio
    async def test_cancel_does_not_count_volume(self, service, active_escrow) -> None:
        await service.cancel(CLIENT, active_escrow.id)
        assert (await service.fee_info()).total_volume == 0


# ---------------------------------------------------------------------------
# flag_dispute
# ---------------------------------------------------------------------------


class TestDispute:
    @pytest.mark.asyncio
    async def test_flag_freezes_without_moving_funds(self, service, active_escrow, balance, sink) -> None:
        escrow = await service.flag_dispute(PROVIDER, active_escrow.id, "client unreachable")

        assert escrow.status == "DISPUTED"
        assert balance(CUSTODY) == 1_000_000
        assert sink.types == ["DISPUTE_FLAGGED"]
        assert sink.events[0].data == {"reason": "client unreachable", "flagged_by": PROVIDER}

    @pytest.mark.asyncio
    async def test_second_flag_is_already_disputed(self, service, active_escrow) -> None:
        await service.flag_dispute(CLIENT, active_escrow.id, "late")

        with pytest.raises(AlreadyDisputedError) as exc_info:
            await service.flag_dispute(PROVIDER, active_escrow.id, "also late")

        assert isinstance(exc_info.value, InvalidStatusError)
        assert exc_info.value.code == "ALREADY_DISPUTED"

    @pytest.mark.asyncio
    async def test_completed_escrow_is_invalid_status(self, service, active_escrow) -> None:
        await service.complete(CLIENT, active_escrow.id)

        with pytest.raises(InvalidStatusError) as exc_info:
            await service.flag_dispute(CLIENT, active_escrow.id, "too late")

        assert not isinstance(exc_info.value, AlreadyDisputedError)

    @pytest.mark.asyncio
    async def test_stranger_cannot_flag(self, service, active_escrow) -> None:
        with pytest.raises(NotAuthorizedError):
            await service.flag_dispute(STRANGER, active_escrow.id, "nosy")

    @pytest.mark.asyncio
    async def test_not_gated_by_pause(self, service, active_escrow) -> None:
        await service.pause(OWNER)
        escrow = await service.flag_dispute(CLIENT, active_escrow.id, "paused anyway")
        assert escrow.status == "DISPUTED"

    @pytest.mark.asyncio
    async def test_disputed_escrow_has_no_way_out(self, service, active_escrow, clock) -> None:
        await service.flag_dispute(CLIENT, active_escrow.id, "stuck")
        clock.now_ms = active_escrow.deadline + 1

        with pytest.raises(InvalidStatusError):
            await service.complete(CLIENT, active_escrow.id)
        with pytest.raises(InvalidStatusError):
            await service.cancel(CLIENT, active_escrow.id)
        with pytest.raises(InvalidStatusError):
            await service.process_expired(STRANGER, active_escrow.id)

        status = await service.get_status(active_escrow.id)
        assert status["allowed_events"] == []


# ---------------------------------------------------------------------------
# process_expired
# ---------------------------------------------------------------------------


class TestProcessExpired:
    @pytest.mark.asyncio
    async def test_before_deadline_rejected(self, service, active_escrow) -> None:
        with pytest.raises(InvalidStatusError):
            await service.process_expired(STRANGER, active_escrow.id)

    @pytest.mark.asyncio
    async def test_at_deadline_still_rejected(self, service, active_escrow, clock) -> None:
        clock.now_ms = active_escrow.deadline
        with pytest.raises(InvalidStatusError):
            await service.process_expired(STRANGER, active_escrow.id)

    @pytest.mark.asyncio
    async def test_anyone_reclaims_after_deadline_once(self, service, active_escrow, clock, balance, sink) -> None:
        clock.now_ms = active_escrow.deadline + 1

        escrow = await service.process_expired(STRANGER, active_escrow.id)

        assert escrow.status == "CANCELLED"
        assert balance(CLIENT) == 1_000_000
        assert balance(OWNER) == 0
        assert sink.types == ["ESCROW_EXPIRED"]
        with pytest.raises(InvalidStatusError):
            await service.process_expired(STRANGER, active_escrow.id)
        assert balance(CLIENT) == 1_000_000

    @pytest.mark.asyncio
    async def test_paused(self, service, active_escrow, clock) -> None:
        clock.now_ms = active_escrow.deadline + 1
        await service.pause(OWNER)
        with pytest.raises(SystemPausedError):
            await service.process_expired(STRANGER, active_escrow.id)

    @pytest.mark.asyncio
    async def test_unknown_escrow(self, service) -> None:
        with pytest.raises(EscrowNotFoundError):
            await service.process_expired(STRANGER, 3)


# ---------------------------------------------------------------------------
# request_extension / approve_extension
# ---------------------------------------------------------------------------


class TestExtensionHandshake:
    @pytest.mark.asyncio
    async def test_request_then_counterparty_approves(self, service, active_escrow, sink) -> None:
        new_deadline = active_escrow.deadline + ONE_DAY_MS

        pending = await service.request_extension(PROVIDER, active_escrow.id, new_deadline, "more time")
        assert pending.requester == PROVIDER
        assert pending.new_deadline == new_deadline

        escrow = await service.approve_extension(CLIENT, active_escrow.id)

        assert escrow.deadline == new_deadline
        assert await service.get_extension_request(active_escrow.id) is None
        assert sink.types == ["EXTENSION_REQUESTED", "EXTENSION_APPROVED"]
        approved = sink.events[1].data
        assert approved["old_deadline"] == active_escrow.deadline
        assert approved["new_deadline"] == new_deadline

    @pytest.mark.asyncio
    async def test_self_approval_rejected(self, service, active_escrow) -> None:
        await service.request_extension(CLIENT, active_escrow.id, active_escrow.deadline + 1, "mine")

        with pytest.raises(NotAuthorizedError):
            await service.approve_extension(CLIENT, active_escrow.id)

        assert await service.get_extension_request(active_escrow.id) is not None

    @pytest.mark.asyncio
    async def test_approve_without_pending_request(self, service, active_escrow) -> None:
        with pytest.raises(EscrowNotFoundError):
            await service.approve_extension(CLIENT, active_escrow.id)

    @pytest.mark.asyncio
    async def test_second_approval_finds_nothing(self, service, active_escrow) -> None:
        await service.request_extension(PROVIDER, active_escrow.id, active_escrow.deadline + 1, "x")
        await service.approve_extension(CLIENT, active_escrow.id)

        with pytest.raises(EscrowNotFoundError):
            await service.approve_extension(CLIENT, active_escrow.id)

    @pytest.mark.asyncio
    async def test_new_request_overwrites_pending(self, service, active_escrow) -> None:
        await service.request_extension(CLIENT, active_escrow.id, active_escrow.deadline + 10, "first")
        await service.request_extension(PROVIDER, active_escrow.id, active_escrow.deadline + 20, "second")

        pending = await service.get_extension_request(active_escrow.id)
        assert pending.requester == PROVIDER
        assert pending.reason == "second"

        escrow = await service.approve_extension(CLIENT, active_escrow.id)
        assert escrow.deadline == active_escrow.deadline + 20

    @pytest.mark.asyncio
    async def test_deadline_must_move_later(self, service, active_escrow) -> None:
        with pytest.raises(InvalidExtensionError):
            await service.request_extension(PROVIDER, active_escrow.id, active_escrow.deadline, "same")

    @pytest.mark.asyncio
    async def test_deadline_must_be_in_the_future(self, service, active_escrow, clock) -> None:
        clock.now_ms = active_escrow.deadline + 100
        with pytest.raises(InvalidExtensionError):
            await service.request_extension(PROVIDER, active_escrow.id, active_escrow.deadline + 50, "past")

    @pytest.mark.asyncio
    async def test_stranger_cannot_request_or_approve(self, service, active_escrow) -> None:
        with pytest.raises(NotAuthorizedError):
            await service.request_extension(STRANGER, active_escrow.id, active_escrow.deadline + 1, "x")

        await service.request_extension(PROVIDER, active_escrow.id, active_escrow.deadline + 1, "x")
        with pytest.raises(NotAuthorizedError):
            await service.approve_extension(STRANGER, active_escrow.id)

    @pytest.mark.asyncio
    async def test_request_on_closed_escrow(self, service, active_escrow) -> None:
        await service.cancel(CLIENT, active_escrow.id)
        with pytest.raises(InvalidStatusError):
            await service.request_extension(PROVIDER, active_escrow.id, active_escrow.deadline + 1, "x")

    @pytest.mark.asyncio
    async def test_approve_after_escrow_closed(self, service, active_escrow) -> None:
        await service.request_extension(PROVIDER, active_escrow.id, active_escrow.deadline + 1, "x")
        await service.cancel(CLIENT, active_escrow.id)

        with pytest.raises(InvalidStatusError):
            await service.approve_extension(CLIENT, active_escrow.id)

        assert await service.get_extension_request(active_escrow.id) is not None

    @pytest.mark.asyncio
    async def test_not_gated_by_pause(self, service, active_escrow) -> None:
        await service.pause(OWNER)

        await service.request_extension(PROVIDER, active_escrow.id, active_escrow.deadline + 1, "x")
        escrow = await service.approve_extension(CLIENT, active_escrow.id)

        assert escrow.deadline == active_escrow.deadline + 1

    @pytest.mark.asyncio
    async def test_extension_postpones_expiry(self, service, active_escrow, clock) -> None:
        old_deadline = active_escrow.deadline
        await service.request_extension(PROVIDER, active_escrow.id, old_deadline + ONE_DAY_MS, "x")
        await service.approve_extension(CLIENT, active_escrow.id)

        clock.now_ms = old_deadline + 1
        with pytest.raises(InvalidStatusError):
            await service.process_expired(STRANGER, active_escrow.id)

        clock.now_ms = old_deadline + ONE_DAY_MS + 1
        escrow = await service.process_expired(STRANGER, active_escrow.id)
        assert escrow.status == "CANCELLED"


# ---------------------------------------------------------------------------
# out-of-range inputs
# ---------------------------------------------------------------------------


class TestOutOfRangeInputs:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("escrow_id", [-1, 2**32, 2**63, 2**64])
    async def test_unknown_ids_are_not_found(self, service, escrow_id: int) -> None:
        with pytest.raises(EscrowNotFoundError):
            await service.cancel(CLIENT, escrow_id)
        with pytest.raises(EscrowNotFoundError):
            await service.get_escrow(escrow_id)

        assert await service.get_extension_request(escrow_id) is None
        assert await service.get_events(escrow_id) == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("new_deadline", [BIGINT_MAX + 1, 2**64])
    async def test_unstorable_extension_deadline(self, service, active_escrow, new_deadline: int) -> None:
        with pytest.raises(InvalidExtensionError):
            await service.request_extension(PROVIDER, active_escrow.id, new_deadline, "forever")

        assert await service.get_extension_request(active_escrow.id) is None


# ---------------------------------------------------------------------------
# terminal states
# ---------------------------------------------------------------------------


async def _close(service, escrow_id: int, status: str) -> None:
    if status == "COMPLETED":
        await service.complete(CLIENT, escrow_id)
    elif status == "CANCELLED":
        await service.cancel(PROVIDER, escrow_id)
    else:
        await service.flag_dispute(CLIENT, escrow_id, "work not delivered")


async def _attempt(service, escrow, operation: str) -> None:
    if operation == "complete":
        await service.complete(CLIENT, escrow.id)
    elif operation == "cancel":
        await service.cancel(CLIENT, escrow.id)
    elif operation == "process_expired":
        await service.process_expired(STRANGER, escrow.id)
    elif operation == "flag_dispute":
        await service.flag_dispute(PROVIDER, escrow.id, "again")
    elif operation == "request_extension":
        await service.request_extension(PROVIDER, escrow.id, escrow.deadline + 2 * ONE_DAY_MS, "later")
    else:
        await service.approve_extension(CLIENT, escrow.id)


class TestTerminalStates:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("status", ["COMPLETED", "CANCELLED", "DISPUTED"])
    @pytest.mark.parametrize(
        "operation",
        [
            "complete",
            "cancel",
            "process_expired",
            "flag_dispute",
            "request_extension",
            "approve_extension",
        ],
    )
    async def test_no_operation_leaves_a_closed_escrow(
        self, service, active_escrow, clock, balance, sink, status: str, operation: str
    ) -> None:
        await service.request_extension(
            PROVIDER, active_escrow.id, active_escrow.deadline + ONE_DAY_MS, "more time"
        )
        await _close(service, active_escrow.id, status)
        clock.now_ms = active_escrow.deadline + 1
        holders = (CLIENT, PROVIDER, OWNER, CUSTODY)
        balances = [balance(holder) for holder in holders]
        volume = (await service.fee_info()).total_volume
        sink.clear()

        with pytest.raises(InvalidStatusError):
            await _attempt(service, active_escrow, operation)

        stored = await service.get_escrow(active_escrow.id)
        assert stored.status == status
        assert stored.deadline == active_escrow.deadline
        assert [balance(holder) for holder in holders] == balances
        assert (await service.fee_info()).total_volume == volume
        assert sink.events == []
