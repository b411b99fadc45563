# outreach/infra/pg_run_repo_async.py
"""
Async PostgreSQL run repository (asyncpg).

Every write is conditional: status transitions on the current status,
metrics writes on the ``updated_at`` value the caller read. ``updated_at``
is set from ``clock_timestamp()`` so two writes in one transaction still
produce distinct versions.
"""
from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Optional, Sequence

from outreach.core.domain import Run, RunConfig, RunMetrics, RunStatus
from outreach.infra.db_async import load_json
from outreach.infra.db_resilience_async import retry_on_transient_error, safe_db_conn
from outreach.infra.logging_config import get_logger

logger = get_logger(__name__)


def _row_to_run(row) -> Run:
    """Convert an asyncpg Record to a Run."""
    return Run(
        id=str(row["id"]),
        org_id=str(row["org_id"]),
        campaign_id=str(row["campaign_id"]),
        status=RunStatus(row["status"]),
        name=row["name"] or "",
        scheduled_at=row["scheduled_at"],
        custom_prompt=row["custom_prompt"],
        config=RunConfig.from_dict(load_json(row["config"], {})),
        metrics=RunMetrics.from_dict(load_json(row["metrics"], {})),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class AsyncPostgresRunRepository:
    """Runs table access for the dispatch engine."""

    @retry_on_transient_error(max_retries=3)
    async def get(self, run_id: str, org_id: Optional[str] = None) -> Optional[Run]:
        async with safe_db_conn() as conn:
            if org_id:
                row = await conn.fetchrow(
                    "SELECT * FROM runs WHERE id = $1 AND org_id = $2",
                    run_id,
                    org_id,
                )
            else:
                row = await conn.fetchrow("SELECT * FROM runs WHERE id = $1", run_id)
            return _row_to_run(row) if row else None

    @retry_on_transient_error(max_retries=3)
    async def list_by_status(self, status: RunStatus) -> list[Run]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                "SELECT * FROM runs WHERE status = $1 ORDER BY updated_at",
                status.value,
            )
            return [_row_to_run(row) for row in rows]

    @retry_on_transient_error(max_retries=3)
    async def list_due_scheduled(self, now: datetime) -> list[Run]:
        async with safe_db_conn() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM runs
                WHERE status = 'scheduled'
                  AND scheduled_at IS NOT NULL
                  AND scheduled_at <= $1
                ORDER BY scheduled_at
                """,
                now,
            )
            return [_row_to_run(row) for row in rows]

    async def mark_scheduled(self, run_id: str, scheduled_at: datetime, metrics: RunMetrics) -> Optional[Run]:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                """
                UPDATE runs
                SET status = 'scheduled',
                    scheduled_at = $2,
                    metrics = $3::jsonb,
                    updated_at = clock_timestamp()
                WHERE id = $1
                  AND status NOT IN ('running', 'completed')
                RETURNING *
                """,
                run_id,
                scheduled_at,
                json.dumps(metrics.to_dict()),
            )
            return _row_to_run(row) if row else None

    async def transition(
        self,
        run_id: str,
        to_status: RunStatus,
        from_statuses: Optional[Sequence[RunStatus]] = None,
        metrics: Optional[RunMetrics] = None,
        expected_updated_at: Optional[datetime] = None,
    ) -> Optional[Run]:
        """
        Conditional status change. None when the guard did not match.
        """
        assignments = ["status = $2", "updated_at = clock_timestamp()"]
        conditions = ["id = $1"]
        params: list[Any] = [run_id, to_status.value]
        idx = 3

        if metrics is not None:
            assignments.append(f"metrics = ${idx}::jsonb")
            params.append(json.dumps(metrics.to_dict()))
            idx += 1

        if from_statuses is not None:
            conditions.append(f"status = ANY(${idx}::text[])")
            params.append([s.value for s in from_statuses])
            idx += 1

        if expected_updated_at is not None:
            conditions.append(f"updated_at = ${idx}")
            params.append(expected_updated_at)
            idx += 1

        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                f"UPDATE runs SET {', '.join(assignments)} "
                f"WHERE {' AND '.join(conditions)} RETURNING *",
                *params,
            )

        if row is None:
            logger.debug(
                f"Run transition to {to_status.value} not applied (guard mismatch)",
                extra={"run_id": run_id},
            )
            return None
        return _row_to_run(row)

    async def write_metrics(
        self,
        run_id: str,
        metrics: RunMetrics,
        expected_updated_at: Optional[datetime],
    ) -> Optional[Run]:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                """
                UPDATE runs
                SET metrics = $2::jsonb,
                    updated_at = clock_timestamp()
                WHERE id = $1
                  AND updated_at IS NOT DISTINCT FROM $3
                RETURNING *
                """,
                run_id,
                json.dumps(metrics.to_dict()),
                expected_updated_at,
            )
            return _row_to_run(row) if row else None


# Global singleton
_run_repo: AsyncPostgresRunRepository | None = None


def get_run_repo() -> AsyncPostgresRunRepository:
    """Get the global run repository instance."""
    global _run_repo
    if _run_repo is None:
        _run_repo = AsyncPostgresRunRepository()
    return _run_repo
