# outreach/infra/pg_row_repo_async.py
"""
Async PostgreSQL run-row repository (asyncpg).

The claim is a single conditional UPDATE (``WHERE status = 'pending'``):
whichever writer Postgres serializes first wins and every other claimer
sees zero rows. No explicit locks or transactions are taken.

Row metadata (the audit trail) is patched with ``metadata || jsonb`` so
concurrent writers only touch the keys they own.
"""
from __future__ import annotations

from datetime import datetime
from typing import Optional, Sequence

from outreach.core.domain import Row, RowAudit, RowStats, RowStatus
from outreach.infra.db_async import load_json
from outreach.infra.db_resilience_async import retry_on_transient_error, safe_db_conn
from outreach.infra.logging_config import get_logger

logger = get_logger(__name__)

MAX_RETRIES_REASON = "max retries exceeded"
STUCK_RESET_ERROR = "Reset from stuck 'calling' state"


def _row_to_row(row) -> Row:
    """Convert an asyncpg Record to a Row."""
    return Row(
        id=str(row["id"]),
        run_id=str(row["run_id"]),
        org_id=str(row["org_id"]),
        patient_id=str(row["patient_id"]) if row["patient_id"] else None,
        sort_index=row["sort_index"],
        priority=row["priority"] or 0,
        status=RowStatus(row["status"]),
        variables=load_json(row["variables"], {}),
        retry_count=row["retry_count"],
        call_attempts=row["call_attempts"],
        retell_call_id=row["retell_call_id"],
        error=row["error"],
        metadata=RowAudit.from_dict(load_json(row["metadata"], {})),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _affected(result: str | None) -> int:
    return int(result.split()[-1]) if result else 0


class AsyncPostgresRowRepository:
    """run_rows access: selection, claim/release and terminal stamping."""

    async def select_claimable(self, run_id: str, limit: int, exclude_ids: Sequence[str] = ()) -> list[Row]:
        """Pending rows, highest priority first, then by sort index."""
        if limit <= 0:
            return []
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM run_rows
                WHERE run_id = $1
                  AND status = 'pending'
                  AND id <> ALL($3::uuid[])
                ORDER BY priority DESC, sort_index ASC
                LIMIT $2
                """,
                run_id,
                limit,
                list(exclude_ids),
            )
            return [_row_to_row(row) for row in rows]

    async def claim(self, row_id: str, processor_id: str, claimed_at: datetime) -> Optional[Row]:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                """
                UPDATE run_rows
                SET status = 'calling',
                    call_attempts = call_attempts + 1,
                    updated_at = $3,
                    metadata = metadata || jsonb_build_object(
                        'claimed_at', $4::text,
                        'processor_id', $2::text,
                        'status_reset', false
                    )
                WHERE id = $1
                  AND status = 'pending'
                RETURNING *
                """,
                row_id,
                processor_id,
                claimed_at,
                claimed_at.isoformat(),
            )
            return _row_to_row(row) if row else None

    async def release(self, row_id: str, reason: str, at: datetime) -> bool:
        async with safe_db_conn() as conn:
            result = await conn.execute(
                """
                UPDATE run_rows
                SET status = 'pending',
                    updated_at = $3,
                    metadata = metadata || jsonb_build_object(
                        'last_skip_reason', $2::text,
                        'last_skip_at', $4::text
                    )
                WHERE id = $1
                  AND status = 'calling'
                """,
                row_id,
                reason,
                at,
                at.isoformat(),
            )
            return _affected(result) == 1

    async def mark_dispatched(self, row_id: str, vendor_call_id: Optional[str], at: datetime) -> None:
        async with safe_db_conn() as conn:
            await conn.execute(
                """
                UPDATE run_rows
                SET retell_call_id = $2,
                    error = NULL,
                    updated_at = $3,
                    metadata = metadata || jsonb_build_object('dispatched_at', $4::text)
                WHERE id = $1
                """,
                row_id,
                vendor_call_id,
                at,
                at.isoformat(),
            )

    async def record_failure(self, row_id: str, error: str, max_retries: int, at: datetime) -> Optional[Row]:
        """
        Spend one retry.

        retry_count + 1 >= max_retries -> 'failed' (permanently)
        otherwise                      -> back to 'pending'
        """
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                """
                UPDATE run_rows
                SET retry_count = retry_count + 1,
                    error = $2,
                    status = CASE
                      WHEN retry_count + 1 >= $3 THEN 'failed'
                      ELSE 'pending'
                    END,
                    updated_at = $4,
                    metadata = metadata
                      || jsonb_build_object('last_error', $2::text, 'last_error_at', $5::text)
                      || CASE
                           WHEN retry_count + 1 >= $3
                             THEN jsonb_build_object('failure_reason', $6::text)
                           ELSE '{}'::jsonb
                         END
                WHERE id = $1
                  AND status = 'calling'
                RETURNING *
                """,
                row_id,
                error[:2000],
                max_retries,
                at,
                at.isoformat(),
                MAX_RETRIES_REASON,
            )
            return _row_to_row(row) if row else None

    @retry_on_transient_error(max_retries=3)
    async def count_outstanding(self, run_id: str) -> int:
        async with safe_db_conn() as conn:
            count = await conn.fetchval(
                """
                SELECT count(*)::int FROM run_rows
                WHERE run_id = $1 AND status IN ('pending', 'calling')
                """,
                run_id,
            )
            return count or 0

    @retry_on_transient_error(max_retries=3)
    async def stats(self, run_id: str) -> RowStats:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                """
                SELECT
                  count(*)::int AS total,
                  (count(*) FILTER (WHERE status = 'completed'))::int AS completed,
                  (count(*) FILTER (WHERE status = 'failed'))::int AS failed,
                  (count(*) FILTER (WHERE status = 'skipped'))::int AS skipped,
                  (count(*) FILTER (WHERE status IN ('pending', 'calling')))::int AS outstanding
                FROM run_rows
                WHERE run_id = $1
                """,
                run_id,
            )
            return RowStats(
                total=row["total"],
                completed=row["completed"],
                failed=row["failed"],
                skipped=row["skipped"],
                outstanding=row["outstanding"],
            )

    async def reset_calling(self, run_id: str, at: datetime) -> int:
        """Every 'calling' row of the run back to pending (run start/restart)."""
        async with safe_db_conn() as conn:
            result = await conn.execute(
                """
                UPDATE run_rows
                SET status = 'pending',
                    updated_at = $2,
                    metadata = metadata || jsonb_build_object(
                        'status_reset', true,
                        'status_reset_at', $3::text
                    )
                WHERE run_id = $1
                  AND status = 'calling'
                """,
                run_id,
                at,
                at.isoformat(),
            )
            return _affected(result)

    async def reset_stuck(self, run_id: str, older_than_seconds: int, at: datetime) -> int:
        """Safety net: 'calling' rows not updated within the timeout go back to pending."""
        async with safe_db_conn() as conn:
            result = await conn.execute(
                """
                UPDATE run_rows
                SET status = 'pending',
                    error = $4,
                    updated_at = $3,
                    metadata = metadata || jsonb_build_object(
                        'stuck_reset_count', COALESCE((metadata->>'stuck_reset_count')::int, 0) + 1,
                        'last_stuck_reset_at', $5::text
                    )
                WHERE run_id = $1
                  AND status = 'calling'
                  AND updated_at < $3 - make_interval(secs => $2)
                """,
                run_id,
                float(older_than_seconds),
                at,
                STUCK_RESET_ERROR,
                at.isoformat(),
            )
            count = _affected(result)
            if count > 0:
                logger.warning(
                    f"Reset {count} stuck rows (calling > {older_than_seconds}s)",
                    extra={"run_id": run_id},
                )
            return count

    async def resolve(self, row_id: str, status: RowStatus, reason: str, at: datetime) -> bool:
        async with safe_db_conn() as conn:
            result = await conn.execute(
                """
                UPDATE run_rows
                SET status = $2,
                    updated_at = $4,
                    metadata = metadata || jsonb_build_object(
                        'fix_reason', $3::text,
                        'fixed_at', $5::text
                    )
                WHERE id = $1
                  AND status = 'calling'
                """,
                row_id,
                status.value,
                reason,
                at,
                at.isoformat(),
            )
            return _affected(result) == 1


# Global singleton
_row_repo: AsyncPostgresRowRepository | None = None


def get_row_repo() -> AsyncPostgresRowRepository:
    """Get the global run-row repository instance."""
    global _row_repo
    if _row_repo is None:
        _row_repo = AsyncPostgresRowRepository()
    return _row_repo
