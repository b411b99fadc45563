# tests/test_domain.py
import pytest

from outreach.core.domain import (
    CallStatus,
    DayHours,
    Organization,
    Row,
    RowAudit,
    RowStatus,
    Run,
    RunConfig,
    RunMetrics,
    RunStatus,
)


class TestRunMetrics:
    def test_increment_known_counter(self):
        metrics = RunMetrics()
        assert metrics.increment("calls.completed") == 1
        assert metrics.increment("calls.completed", 2) == 3
        assert metrics.calls.completed == 3

    def test_unknown_path_goes_to_extras(self):
        metrics = RunMetrics()
        metrics.increment("calls.transferred")
        metrics.increment("outcomes.booked", 2)
        assert metrics.extras == {"calls.transferred": 1, "outcomes.booked": 2}
        assert metrics.get("outcomes.booked") == 2

    def test_monotonic_counters_reject_negative(self):
        with pytest.raises(ValueError):
            RunMetrics().increment("calls.completed", -1)

    def test_transient_counters_clamp_at_zero(self):
        metrics = RunMetrics()
        metrics.increment("calls.calling")
        assert metrics.increment("calls.calling", -3) == 0

    def test_roundtrip_keeps_unknown_sections_out(self):
        raw = {
            "calls": {"completed": 4, "bogus": 1},
            "run": {"start_time": "2026-01-01T00:00:00+00:00"},
            "extras": {"x.y": 1},
        }
        metrics = RunMetrics.from_dict(raw)
        assert metrics.calls.completed == 4
        assert metrics.run.start_time == "2026-01-01T00:00:00+00:00"
        assert metrics.to_dict()["extras"] == {"x.y": 1}

    def test_copy_is_independent(self):
        metrics = RunMetrics()
        clone = metrics.copy()
        clone.increment("calls.failed")
        assert metrics.calls.failed == 0


class TestRunConfig:
    def test_from_dict_ignores_unknown_and_null(self):
        config = RunConfig.from_dict({"calls_per_minute": 5, "batch_size": None, "voice": "alloy"})
        assert config.calls_per_minute == 5
        assert config.batch_size is None

    def test_defaults(self):
        config = RunConfig.from_dict(None)
        assert config.call_start_hour == 8
        assert config.call_end_hour == 20
        assert config.respect_patient_timezone is False


class TestRow:
    @pytest.mark.parametrize("key", ["phone", "primaryPhone", "phoneNumber", "primary_phone", "phone_number"])
    def test_phone_number_keys(self, key):
        row = Row(id="r", run_id="x", org_id="o", sort_index=0, variables={key: "+15551234567"})
        assert row.phone_number == "+15551234567"

    def test_phone_number_precedence(self):
        row = Row(
            id="r", run_id="x", org_id="o", sort_index=0,
            variables={"phone": "", "phoneNumber": "+1999", "primaryPhone": "+1888"},
        )
        assert row.phone_number == "+1888"

    def test_missing_phone(self):
        assert Row(id="r", run_id="x", org_id="o", sort_index=0).phone_number is None

    def test_status_coerced(self):
        assert Row(id="r", run_id="x", org_id="o", sort_index=0, status="calling").status == RowStatus.CALLING


class TestRowAudit:
    def test_unknown_keys_kept_as_extras(self):
        audit = RowAudit.from_dict({"claimed_at": "t", "source": "import"})
        assert audit.claimed_at == "t"
        assert audit.extras == {"source": "import"}


class TestOrganization:
    def test_parse_office_hours(self):
        hours = Organization.parse_office_hours({
            "Monday": {"start": "09:00", "end": "17:00"},
            "sunday": None,
        })
        assert hours["monday"] == DayHours("09:00", "17:00")
        assert hours["sunday"] is None

    def test_parse_empty(self):
        assert Organization.parse_office_hours({}) is None


def test_enums_accept_wire_values():
    assert Run(id="r", org_id="o", campaign_id="c", status="running").status == RunStatus.RUNNING
    assert CallStatus("no-answer") == CallStatus.NO_ANSWER
