"""Runs the developer simulation end to end and checks its outcomes."""

from __future__ import annotations

import pytest

import simulation
from tiered_escrow.domain.fee_tiers import SCALE


class TestSimulation:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("mode", ["psp22", "native_asset"])
    async def test_all_scenarios(self, mode: str) -> None:
        results = await simulation.run_scenarios(sorted(simulation.SCENARIOS), mode=mode)

        happy = results[1]
        assert happy["provider_balance"] == 990_000
        assert happy["owner_balance"] == 10_000
        assert happy["total_volume"] == 1_000_000

        dispute = results[2]
        assert dispute["client_balance"] == 5 * SCALE
        assert dispute["custody_balance"] == 3 * SCALE
        assert dispute["rejected_code"] == "INVALID_STATUS"

        expiry = results[3]
        assert expiry["expired"] == [expiry["escrow_id"]]
        assert expiry["status"] == "CANCELLED"
        assert expiry["client_balance"] == 2 * SCALE

        tiers = results[4]
        assert (tiers["tier"], tiers["fee_bps"]) == (1, 80)
        assert tiers["fee_paid"] == 8 * SCALE
