"""Expiry scanner - finds escrows a keeper may reclaim.

Read only. Reclaiming goes back through EscrowService.process_expired.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from tiered_escrow.domain.enums import EscrowStatus

if TYPE_CHECKING:
    from tiered_escrow.infrastructure.database.repositories import EscrowLedger


class ExpiryScanner:
    """Pages through the ledger by id looking for lapsed ACTIVE escrows."""

    def __init__(self, ledger: EscrowLedger) -> None:
        self._ledger = ledger

    async def list_expired(self, start: int, limit: int, now: int) -> list[int]:
        """Ids in [start, start + limit) that are ACTIVE with deadline < now.

        The window is clamped to the ids that exist; an empty window gives
        an empty list rather than an error.
        """
        if start < 0 or limit < 0:
            raise ValueError(f"start and limit must be non-negative, got {start}, {limit}")
        stop = min(start + limit, await self._ledger.count())
        if limit == 0 or start >= stop:
            return []
        return [
            escrow.id
            for escrow in await self._ledger.scan(start, stop)
            if escrow.status == EscrowStatus.ACTIVE and escrow.deadline < now
        ]
