# outreach/infra/pg_call_repo_async.py
"""
Async PostgreSQL call repository (asyncpg).

The engine creates one Call per successful dispatch and otherwise only
reads calls: active counts for the slot allocator, and terminal calls for
rows still marked 'calling'. Status updates belong to the webhook side.
"""
from __future__ import annotations

import json
from datetime import datetime
from typing import Optional

from outreach.core.domain import ActiveCallCounts, Call, CallOutcome, CallStatus
from outreach.infra.db_async import load_json
from outreach.infra.db_resilience_async import retry_on_transient_error, safe_db_conn
from outreach.infra.logging_config import get_logger

logger = get_logger(__name__)


def _row_to_call(row) -> Call:
    """Convert an asyncpg Record to a Call."""
    return Call(
        id=str(row["id"]),
        org_id=str(row["org_id"]),
        run_id=str(row["run_id"]) if row["run_id"] else None,
        row_id=str(row["row_id"]) if row["row_id"] else None,
        patient_id=str(row["patient_id"]) if row["patient_id"] else None,
        campaign_id=str(row["campaign_id"]) if row["campaign_id"] else None,
        agent_id=row["agent_id"],
        direction=row["direction"],
        status=row["status"],
        to_number=row["to_number"],
        from_number=row["from_number"],
        retell_call_id=row["retell_call_id"],
        analysis=load_json(row["analysis"], {}),
        metadata=load_json(row["metadata"], {}),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class AsyncPostgresCallRepository:

    async def create(self, call: Call) -> Call:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO calls (
                    id, org_id, run_id, row_id, patient_id, campaign_id, agent_id,
                    direction, status, to_number, from_number, retell_call_id,
                    analysis, metadata, created_at
                )
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12,
                        $13::jsonb, $14::jsonb, COALESCE($15, now()))
                RETURNING *
                """,
                call.id,
                call.org_id,
                call.run_id,
                call.row_id,
                call.patient_id,
                call.campaign_id,
                call.agent_id,
                call.direction.value,
                call.status.value,
                call.to_number,
                call.from_number,
                call.retell_call_id,
                json.dumps(call.analysis),
                json.dumps(call.metadata),
                call.created_at,
            )
            return _row_to_call(row)

    @retry_on_transient_error(max_retries=3)
    async def count_active(self, run_id: str, org_id: str) -> ActiveCallCounts:
        """Pending + in-progress calls for the run and for the whole organization."""
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                """
                SELECT
                  (count(*) FILTER (WHERE run_id = $1))::int AS run_active,
                  count(*)::int AS org_active
                FROM calls
                WHERE org_id = $2
                  AND status IN ('pending', 'in-progress')
                """,
                run_id,
                org_id,
            )
            return ActiveCallCounts(run=row["run_active"], org=row["org_active"])

    @retry_on_transient_error(max_retries=3)
    async def find_recent_for_row(self, row_id: str, since: datetime) -> Optional[Call]:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                """
                SELECT * FROM calls
                WHERE row_id = $1
                  AND created_at >= $2
                ORDER BY created_at DESC
                LIMIT 1
                """,
                row_id,
                since,
            )
            return _row_to_call(row) if row else None

    @retry_on_transient_error(max_retries=3)
    async def finished_for_calling_rows(self, run_id: str) -> list[CallOutcome]:
        """
        Rows still 'calling' whose latest call (placed after the current
        claim) has already reached a terminal status.
        """
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                """
                SELECT row_id, call_id, call_status FROM (
                    SELECT DISTINCT ON (r.id)
                      r.id AS row_id, c.id AS call_id, c.status AS call_status
                    FROM run_rows r
                    JOIN calls c ON c.row_id = r.id
                    WHERE r.run_id = $1
                      AND r.status = 'calling'
                      AND c.created_at >= COALESCE((r.metadata->>'claimed_at')::timestamptz, '-infinity')
                    ORDER BY r.id, c.created_at DESC
                ) latest
                WHERE call_status IN ('completed', 'failed', 'voicemail', 'no-answer')
                """,
                run_id,
            )
            return [
                CallOutcome(
                    row_id=str(row["row_id"]),
                    call_id=str(row["call_id"]),
                    status=CallStatus(row["call_status"]),
                )
                for row in rows
            ]


# Global singleton
_call_repo: AsyncPostgresCallRepository | None = None


def get_call_repo() -> AsyncPostgresCallRepository:
    """Get the global call repository instance."""
    global _call_repo
    if _call_repo is None:
        _call_repo = AsyncPostgresCallRepository()
    return _call_repo
