# outreach/core/claims.py
"""
Row claimer.

A claim is a single conditional write (pending -> calling). Losing the race
is normal when several processes serve the same run and is not an error.
"""
from __future__ import annotations

from datetime import datetime
from typing import Callable, Optional

from outreach.core.domain import Row, utc_now
from outreach.core.ports import RowRepository
from outreach.infra.logging_config import get_logger
from outreach.infra.metrics import DispatchMetrics

logger = get_logger(__name__)


class RowClaimer:
    def __init__(
            self,
            rows: RowRepository,
            processor_id: str,
            now: Callable[[], datetime] = utc_now,
    ):
        self._rows = rows
        self._processor_id = processor_id
        self._now = now

    async def claim(self, row: Row) -> Optional[Row]:
        """Returns the claimed row, or None if another claimer got it first."""
        claimed = await self._rows.claim(row.id, self._processor_id, self._now())
        if claimed is None:
            DispatchMetrics.claim_missed()
            logger.debug(f"Claim missed: row={row.id[:8]} (no longer pending)")
        return claimed

    async def release(self, row: Row, reason: str) -> bool:
        """Return a claimed row to pending without spending a retry."""
        released = await self._rows.release(row.id, reason, self._now())
        if not released:
            logger.warning(f"Release skipped: row={row.id[:8]} is no longer calling")
        return released
