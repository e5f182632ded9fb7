"""Volume-based fee tiers.

Pure functions over the cumulative completed volume. Amounts are scaled
integers in the asset's native decimals (6 for USDT).

    tier 0:  volume < 10M      -> 100 bps (1.0%)
    tier 1:  10M <= v < 100M   ->  80 bps (0.8%)
    tier 2:  volume >= 100M    ->  50 bps (0.5%)
"""

from __future__ import annotations

from dataclasses import dataclass

SCALE = 10**6
TIER_1_THRESHOLD = 10_000_000 * SCALE
TIER_2_THRESHOLD = 100_000_000 * SCALE

BPS_DENOMINATOR = 10_000
DEFAULT_FEE_BPS = 100

_TIER_RATES = {0: 100, 1: 80, 2: 50}
_TIER_CEILINGS = {0: TIER_1_THRESHOLD, 1: TIER_2_THRESHOLD}

U128_MAX = 2**128 - 1


@dataclass(frozen=True)
class FeeQuote:
    """Split of a completed escrow's amount between provider and fee."""

    amount: int
    fee_bps: int
    fee: int
    provider_amount: int


@dataclass(frozen=True)
class TierChange:
    """A crossing of a tier boundary caused by a volume increment."""

    old_tier: int
    new_tier: int
    fee_bps: int
    total_volume: int


def tier_for_volume(total_volume: int) -> int:
    if total_volume >= TIER_2_THRESHOLD:
        return 2
    if total_volume >= TIER_1_THRESHOLD:
        return 1
    return 0


def fee_bps_for_tier(tier: int) -> int:
    """Return the rate for ``tier``; unknown tiers get the tier-0 rate."""
    return _TIER_RATES.get(tier, DEFAULT_FEE_BPS)


def volume_to_next_tier(total_volume: int, current_tier: int) -> int:
    """Volume still needed to reach the next tier; 0 once at the top tier."""
    ceiling = _TIER_CEILINGS.get(current_tier)
    if ceiling is None:
        return 0
    return max(ceiling - total_volume, 0)


def compute_fee(amount: int, fee_bps: int) -> FeeQuote:
    """Split ``amount`` at ``fee_bps``.

    The fee is truncated, never rounded: provider payouts are exact to the
    unit and always favour the provider by the remainder.
    """
    fee = amount * fee_bps // BPS_DENOMINATOR
    return FeeQuote(amount=amount, fee_bps=fee_bps, fee=fee, provider_amount=amount - fee)


def apply_volume(total_volume: int, current_tier: int, amount: int) -> tuple[int, TierChange | None]:
    """Add ``amount`` to the running volume and recompute the tier.

    Returns the new volume and, when a boundary was crossed, the TierChange
    carrying the new tier's rate.

    Raises:
        OverflowError: If the volume would exceed 128 bits.
    """
    new_volume = total_volume + amount
    if new_volume > U128_MAX:
        raise OverflowError("total_volume exceeds u128")
    new_tier = tier_for_volume(new_volume)
    if new_tier == current_tier:
        return new_volume, None
    return new_volume, TierChange(
        old_tier=current_tier,
        new_tier=new_tier,
        fee_bps=fee_bps_for_tier(new_tier),
        total_volume=new_volume,
    )
