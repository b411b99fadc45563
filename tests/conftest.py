# tests/conftest.py
"""Pytest configuration and fixtures"""
import sys
from datetime import datetime, timezone
from pathlib import Path

import pytest

# Add project root (and this directory, for the in-memory fakes) to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))
sys.path.insert(0, str(Path(__file__).parent))

from fakes import make_engine  # noqa: E402
from outreach.core.domain import DayHours, Organization  # noqa: E402
from outreach.infra.metrics import get_metrics_collector  # noqa: E402


@pytest.fixture(autouse=True)
def reset_metrics():
    """Process-local counters are global; start every test from zero."""
    get_metrics_collector().reset()
    yield
    get_metrics_collector().reset()


@pytest.fixture
def engine():
    """Scheduler + dispatch loop over in-memory repositories, zero waits"""
    return make_engine()


@pytest.fixture
def weekday_hours():
    """Mon-Fri 09:00-17:00, closed weekends"""
    hours = {day: DayHours("09:00", "17:00") for day in ("monday", "tuesday", "wednesday", "thursday", "friday")}
    hours["saturday"] = None
    hours["sunday"] = None
    return hours


@pytest.fixture
def clinic(weekday_hours):
    return Organization(
        id="org-1",
        name="Sunrise Clinic",
        phone="+15550001111",
        timezone="America/New_York",
        office_hours=weekday_hours,
        concurrent_call_limit=5,
    )


@pytest.fixture
def tuesday_noon_ny():
    """2026-03-10 is a Tuesday; 16:00 UTC is 12:00 in New York (EDT)"""
    return datetime(2026, 3, 10, 16, 0, tzinfo=timezone.utc)
