# outreach/core/domain.py
from __future__ import annotations

from dataclasses import dataclass, field, fields, asdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Dict


# ============================================================================
# STATUS ENUMS
# ============================================================================

class RunStatus(str, Enum):
    DRAFT = "draft"
    PROCESSING = "processing"
    READY = "ready"
    SCHEDULED = "scheduled"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"


class RowStatus(str, Enum):
    PENDING = "pending"
    CALLING = "calling"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    CALLBACK = "callback"


class CallStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED = "failed"
    VOICEMAIL = "voicemail"
    NO_ANSWER = "no-answer"


class CallDirection(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


ACTIVE_CALL_STATUSES = (CallStatus.PENDING, CallStatus.IN_PROGRESS)
TERMINAL_CALL_STATUSES = (
    CallStatus.COMPLETED,
    CallStatus.FAILED,
    CallStatus.VOICEMAIL,
    CallStatus.NO_ANSWER,
)
OUTSTANDING_ROW_STATUSES = (RowStatus.PENDING, RowStatus.CALLING)


def _coerce(enum_cls, value):
    return value if isinstance(value, enum_cls) else enum_cls(value)


# ============================================================================
# RUN CONFIGURATION
# ============================================================================

@dataclass
class RunConfig:
    """
    User-configured dispatch settings for one run.

    ``None`` means "use the engine default" (see DispatchTuning).
    """
    calls_per_minute: Optional[int] = None
    batch_size: Optional[int] = None          # User cap on batch size
    max_retries: Optional[int] = None
    respect_patient_timezone: bool = False
    call_start_hour: int = 8
    call_end_hour: int = 20

    @classmethod
    def from_dict(cls, raw: Dict[str, Any] | None) -> "RunConfig":
        raw = raw or {}
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in raw.items() if k in known and v is not None})

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ============================================================================
# RUN METRICS (versioned, typed)
# ============================================================================

METRICS_VERSION = 1

# Counters that move between each other as rows are claimed and released.
_TRANSIENT_COUNTERS = {"calls.calling", "calls.pending"}


@dataclass
class CallCounts:
    total: int = 0
    completed: int = 0
    failed: int = 0
    calling: int = 0
    pending: int = 0
    skipped: int = 0
    voicemail: int = 0
    connected: int = 0
    converted: int = 0
    retried: int = 0


@dataclass
class RowCounts:
    total: int = 0
    invalid: int = 0
    reset_from_stuck: int = 0
    reconciled: int = 0


@dataclass
class RunTimeline:
    """Run-phase timestamps (ISO-8601 strings) and run-level status notes."""
    scheduled_time: Optional[str] = None
    start_time: Optional[str] = None
    restart_count: int = 0
    last_call_time: Optional[str] = None
    last_paused_at: Optional[str] = None
    paused_outside_hours: bool = False
    end_time: Optional[str] = None
    duration: Optional[int] = None             # Seconds
    completion_status: Optional[str] = None
    error: Optional[str] = None
    error_stack: Optional[str] = None
    error_time: Optional[str] = None


@dataclass
class RunMetrics:
    """
    Counters and timeline for a run.

    ``extras`` is an open-ended side channel for counters this version
    does not model (e.g. vendor-specific outcomes reported by webhooks).
    """
    version: int = METRICS_VERSION
    calls: CallCounts = field(default_factory=CallCounts)
    rows: RowCounts = field(default_factory=RowCounts)
    run: RunTimeline = field(default_factory=RunTimeline)
    extras: Dict[str, Any] = field(default_factory=dict)

    def increment(self, path: str, amount: int = 1) -> int:
        """
        Increment the counter at a dotted path ("calls.completed").

        Unknown paths land in ``extras`` under the full dotted key.
        Returns the new value.
        """
        if amount < 0 and path not in _TRANSIENT_COUNTERS:
            raise ValueError(f"Counter {path} is monotonic; cannot add {amount}")

        section_name, _, counter = path.partition(".")
        section = getattr(self, section_name, None) if section_name in ("calls", "rows") else None
        if section is not None and counter in {f.name for f in fields(section)}:
            value = max(0, getattr(section, counter) + amount)
            setattr(section, counter, value)
            return value

        value = int(self.extras.get(path, 0)) + amount
        self.extras[path] = value
        return value

    def get(self, path: str) -> Any:
        section_name, _, counter = path.partition(".")
        section = getattr(self, section_name, None) if section_name in ("calls", "rows", "run") else None
        if section is not None and hasattr(section, counter):
            return getattr(section, counter)
        return self.extras.get(path, 0)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any] | None) -> "RunMetrics":
        raw = raw or {}

        def _section(section_cls, data):
            known = {f.name for f in fields(section_cls)}
            return section_cls(**{k: v for k, v in (data or {}).items() if k in known})

        return cls(
            version=raw.get("version", METRICS_VERSION),
            calls=_section(CallCounts, raw.get("calls")),
            rows=_section(RowCounts, raw.get("rows")),
            run=_section(RunTimeline, raw.get("run")),
            extras=dict(raw.get("extras") or {}),
        )

    def copy(self) -> "RunMetrics":
        return RunMetrics.from_dict(self.to_dict())


# ============================================================================
# ROW AUDIT TRAIL
# ============================================================================

@dataclass
class RowAudit:
    """Audit trail carried on each row (stored as the row's metadata)."""
    claimed_at: Optional[str] = None
    processor_id: Optional[str] = None
    dispatched_at: Optional[str] = None
    last_error: Optional[str] = None
    last_error_at: Optional[str] = None
    last_skip_reason: Optional[str] = None
    last_skip_at: Optional[str] = None
    failure_reason: Optional[str] = None
    status_reset: bool = False                 # Reset from 'calling' when the run (re)started
    status_reset_at: Optional[str] = None
    stuck_reset_count: int = 0
    last_stuck_reset_at: Optional[str] = None
    fix_reason: Optional[str] = None
    fixed_at: Optional[str] = None
    extras: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any] | None) -> "RowAudit":
        raw = dict(raw or {})
        known = {f.name for f in fields(cls)} - {"extras"}
        values = {k: raw.pop(k) for k in list(raw) if k in known}
        extras = dict(raw.pop("extras", None) or {})
        extras.update(raw)
        return cls(**values, extras=extras)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ============================================================================
# ENTITIES
# ============================================================================

_PHONE_KEYS = ("phone", "primaryPhone", "phoneNumber", "primary_phone", "phone_number")


@dataclass
class Run:
    id: str
    org_id: str
    campaign_id: str
    status: RunStatus = RunStatus.DRAFT
    name: str = ""
    scheduled_at: Optional[datetime] = None
    custom_prompt: Optional[str] = None
    config: RunConfig = field(default_factory=RunConfig)
    metrics: RunMetrics = field(default_factory=RunMetrics)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        self.status = _coerce(RunStatus, self.status)


@dataclass
class Row:
    id: str
    run_id: str
    org_id: str
    sort_index: int
    status: RowStatus = RowStatus.PENDING
    variables: Dict[str, Any] = field(default_factory=dict)
    patient_id: Optional[str] = None
    priority: int = 0
    retry_count: int = 0
    call_attempts: int = 0
    retell_call_id: Optional[str] = None
    error: Optional[str] = None
    metadata: RowAudit = field(default_factory=RowAudit)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        self.status = _coerce(RowStatus, self.status)

    @property
    def phone_number(self) -> Optional[str]:
        for key in _PHONE_KEYS:
            value = self.variables.get(key)
            if value not in (None, ""):
                return str(value)
        return None

    @property
    def timezone(self) -> Optional[str]:
        value = self.variables.get("timezone")
        return str(value) if value else None


@dataclass
class Call:
    id: str
    org_id: str
    agent_id: str
    to_number: str
    from_number: str
    direction: CallDirection = CallDirection.OUTBOUND
    status: CallStatus = CallStatus.PENDING
    run_id: Optional[str] = None
    row_id: Optional[str] = None
    patient_id: Optional[str] = None
    campaign_id: Optional[str] = None
    retell_call_id: Optional[str] = None
    analysis: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self):
        self.status = _coerce(CallStatus, self.status)
        self.direction = _coerce(CallDirection, self.direction)


@dataclass(frozen=True)
class DayHours:
    start: str   # "HH:MM"
    end: str     # "HH:MM"


@dataclass
class Organization:
    id: str
    name: str = ""
    phone: Optional[str] = None
    timezone: Optional[str] = None
    office_hours: Optional[Dict[str, Optional[DayHours]]] = None
    concurrent_call_limit: Optional[int] = None

    @staticmethod
    def parse_office_hours(raw: Dict[str, Any] | None) -> Optional[Dict[str, Optional[DayHours]]]:
        if not raw:
            return None
        parsed: Dict[str, Optional[DayHours]] = {}
        for day, hours in raw.items():
            if isinstance(hours, DayHours):
                parsed[day.lower()] = hours
            elif isinstance(hours, dict):
                parsed[day.lower()] = DayHours(
                    start=str(hours.get("start") or ""),
                    end=str(hours.get("end") or ""),
                )
            else:
                parsed[day.lower()] = None
        return parsed


@dataclass
class Campaign:
    id: str
    org_id: str
    name: str
    agent_id: str


# ============================================================================
# QUERY RESULTS
# ============================================================================

@dataclass(frozen=True)
class ActiveCallCounts:
    """Active (pending + in-progress) calls scoped to a run and to its org."""
    run: int
    org: int


@dataclass(frozen=True)
class RowStats:
    total: int = 0
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    outstanding: int = 0   # pending + calling


@dataclass(frozen=True)
class CallOutcome:
    """A row still 'calling' whose Call has already reached a terminal status."""
    row_id: str
    call_id: str
    status: CallStatus


@dataclass(frozen=True)
class DispatchResult:
    ok: bool
    call_id: Optional[str] = None
    error: Optional[str] = None


def utc_now() -> datetime:
    return datetime.now(timezone.utc)
