# outreach/infra/pg_directory_async.py
"""Read-only organization/campaign lookups (asyncpg)."""
from __future__ import annotations

from typing import Optional

from outreach.core.domain import Campaign, Organization
from outreach.infra.db_async import load_json
from outreach.infra.db_resilience_async import retry_on_transient_error, safe_db_conn


class AsyncPostgresDirectory:

    @retry_on_transient_error(max_retries=3)
    async def get_organization(self, org_id: str) -> Optional[Organization]:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                """
                SELECT id, name, phone, timezone, office_hours, concurrent_call_limit
                FROM organizations
                WHERE id = $1
                """,
                org_id,
            )
        if row is None:
            return None
        return Organization(
            id=str(row["id"]),
            name=row["name"] or "",
            phone=row["phone"],
            timezone=row["timezone"],
            office_hours=Organization.parse_office_hours(load_json(row["office_hours"])),
            concurrent_call_limit=row["concurrent_call_limit"],
        )

    @retry_on_transient_error(max_retries=3)
    async def get_campaign(self, campaign_id: str, org_id: str) -> Optional[Campaign]:
        async with safe_db_conn() as conn:
            row = await conn.fetchrow(
                """
                SELECT id, org_id, name, agent_id
                FROM campaigns
                WHERE id = $1 AND org_id = $2
                """,
                campaign_id,
                org_id,
            )
        if row is None:
            return None
        return Campaign(
            id=str(row["id"]),
            org_id=str(row["org_id"]),
            name=row["name"] or "",
            agent_id=row["agent_id"] or "",
        )


_directory: AsyncPostgresDirectory | None = None


def get_directory() -> AsyncPostgresDirectory:
    global _directory
    if _directory is None:
        _directory = AsyncPostgresDirectory()
    return _directory
