# outreach/transport/schemas.py
"""Request bodies for the ops endpoints."""
from pydantic import BaseModel, Field


class OrgScopedRequest(BaseModel):
    org_id: str = Field(min_length=1)


class ScheduleRunRequest(OrgScopedRequest):
    scheduled_at: str = Field(min_length=1, description="ISO-8601 timestamp; naive values are UTC")


class IncrementMetricRequest(BaseModel):
    path: str = Field(min_length=1, description='Dotted metric path, e.g. "calls.completed"')
    amount: int = 1
