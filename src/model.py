"""
model.py

Domain models for the Care-Plan Consistency & Versioning Engine.

Entities
--------
- CarePlan
- CareGoal
- CarePlanNeed
- CarePlanService
- WeeklySchedule / WeeklyServiceEntry
- CarePlanHistoryEntry
- Client
- MonitoringRecord
- SupportRecord
- ServiceMeetingRecord

Value objects
-------------
- ValidationResult
- FlatGoals
- CertificationStatus
- MonitoringStatus
- ClientDashboardItem / DashboardSummary
- SaveMessage

All models use Python dataclasses for clean, framework-agnostic definitions.
Identifiers are opaque strings: a plan that has never been saved carries the
empty id "", and historical data may still contain hard-coded literal ids.
Timestamps are always stored in UTC; milestone dates are plain calendar dates.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum, IntEnum
from typing import List, Optional


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class CarePlanStatus(str, Enum):
    """
    Lifecycle status of a care plan.

    Advancement is expected to be monotonic (draft → review → consented →
    active) but is not enforced by this engine.
    """
    DRAFT = "draft"
    REVIEW = "review"
    CONSENTED = "consented"
    ACTIVE = "active"


class GoalStatus(str, Enum):
    """Progress status of a single short-term goal."""
    NOT_STARTED = "not_started"
    IN_PROGRESS = "in_progress"
    ACHIEVED = "achieved"
    DISCONTINUED = "discontinued"


class DayOfWeek(str, Enum):
    MON = "mon"
    TUE = "tue"
    WED = "wed"
    THU = "thu"
    FRI = "fri"
    SAT = "sat"
    SUN = "sun"


class DeadlineUrgency(str, Enum):
    """Urgency band of a certification expiry date."""
    EXPIRED = "expired"
    CRITICAL = "critical"   # 0 – 30 days remaining
    WARNING = "warning"     # 31 – 60 days remaining
    SAFE = "safe"
    UNKNOWN = "unknown"     # No or unparsable expiry date


class SaveMessageType(str, Enum):
    SUCCESS = "success"
    ERROR = "error"


class UrgencyPriority(IntEnum):
    """
    Fixed dashboard precedence; lower values need attention first.
    NONE marks a client with nothing to act on.
    """
    CERTIFICATION_EXPIRED = 0
    CERTIFICATION_CRITICAL = 1
    MONITORING_NOT_DONE = 2
    CERTIFICATION_WARNING = 3
    PLAN_NEEDS_REVISION = 4
    NONE = 99


# ---------------------------------------------------------------------------
# Care plan entities
# ---------------------------------------------------------------------------


@dataclass
class CareGoal:
    """A short-term goal.  Shared by the flat list and the grouped needs."""
    id: str = field(default_factory=_new_id)
    content: str = ""
    status: GoalStatus = GoalStatus.NOT_STARTED
    start_date: Optional[date] = None
    end_date: Optional[date] = None


@dataclass
class CarePlanService:
    """A service line attached to a need (content, provider type, frequency)."""
    id: str = field(default_factory=_new_id)
    content: str = ""
    type: str = ""
    frequency: str = ""


@dataclass
class CarePlanNeed:
    """
    One life-need with its own long-term goal, short-term goals and services.

    When a plan carries needs, they are the authoritative goal data; the
    plan's flat long_term_goal / short_term_goals are a derived mirror.
    """
    id: str = field(default_factory=_new_id)
    content: str = ""
    long_term_goal: str = ""
    long_term_goal_start_date: Optional[date] = None
    long_term_goal_end_date: Optional[date] = None
    short_term_goals: List[CareGoal] = field(default_factory=list)
    services: List[CarePlanService] = field(default_factory=list)


@dataclass
class WeeklyServiceEntry:
    """One row of the weekly service grid.  Stored, never validated here."""
    id: str = field(default_factory=_new_id)
    service_type: str = ""
    provider: str = ""
    content: str = ""
    days: List[DayOfWeek] = field(default_factory=list)
    start_time: str = ""    # "HH:MM"
    end_time: str = ""      # "HH:MM"
    frequency: str = ""
    notes: str = ""


@dataclass
class WeeklySchedule:
    entries: List[WeeklyServiceEntry] = field(default_factory=list)
    main_activities: str = ""
    weekly_note: str = ""   # Services not on a weekly cadence


@dataclass
class CarePlan:
    """
    One care plan instance for one client.

    `id` is empty until the first successful save assigns a UUID, and is
    immutable afterwards.  Milestone dates follow the golden thread:
    assessment ≤ draft ≤ meeting ≤ consent.
    """
    id: str = ""
    client_id: str = ""
    status: CarePlanStatus = CarePlanStatus.DRAFT

    # Milestone dates
    assessment_date: Optional[date] = None
    draft_date: Optional[date] = None
    meeting_date: Optional[date] = None
    consent_date: Optional[date] = None
    delivery_date: Optional[date] = None

    # Flat (legacy) goal fields; mirror of needs when needs is set
    long_term_goal: str = ""
    long_term_goal_start_date: Optional[date] = None
    long_term_goal_end_date: Optional[date] = None
    short_term_goals: List[CareGoal] = field(default_factory=list)

    # Grouped representation
    needs: Optional[List[CarePlanNeed]] = None

    # Narrative fields
    total_direction_policy: Optional[str] = None
    user_intention: Optional[str] = None
    family_intention: Optional[str] = None

    weekly_schedule: Optional[WeeklySchedule] = None

    # Set on save
    assessment_id: Optional[str] = None   # FK → assessment the plan was drafted from
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class CarePlanHistoryEntry:
    """
    Immutable snapshot of a plan captured immediately before it was overwritten.

    Entries are append-only and keyed under the plan they were taken from.
    """
    id: str = field(default_factory=_new_id)
    plan_id: str = ""                   # FK → CarePlan.id
    client_id: str = ""
    saved_at: datetime = field(default_factory=_utcnow)
    status: CarePlanStatus = CarePlanStatus.DRAFT
    short_term_goal_count: int = 0
    short_term_goals: List[CareGoal] = field(default_factory=list)
    needs: Optional[List[CarePlanNeed]] = None
    long_term_goal: str = ""


# ---------------------------------------------------------------------------
# Collaborator entities (only the fields this engine reads)
# ---------------------------------------------------------------------------


@dataclass
class Client:
    id: str = field(default_factory=_new_id)
    name: str = ""
    # Kept as raw text: upstream data may be blank or malformed
    certification_expiry: Optional[str] = None


@dataclass
class MonitoringRecord:
    """Monthly monitoring visit record; back-references the plan it reviewed."""
    id: str = field(default_factory=_new_id)
    client_id: str = ""
    care_plan_id: str = ""              # FK → CarePlan.id
    visit_date: Optional[date] = None
    needs_plan_revision: bool = False
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class SupportRecord:
    """Support-progress log entry; the plan link is optional."""
    id: str = field(default_factory=_new_id)
    client_id: str = ""
    care_plan_id: Optional[str] = None
    record_date: Optional[date] = None
    content: str = ""
    created_at: datetime = field(default_factory=_utcnow)


@dataclass
class ServiceMeetingRecord:
    """Service coordination meeting minutes; the plan link is optional."""
    id: str = field(default_factory=_new_id)
    client_id: str = ""
    care_plan_id: Optional[str] = None
    meeting_date: Optional[date] = None
    summary: str = ""
    created_at: datetime = field(default_factory=_utcnow)


# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------


@dataclass
class ValidationResult:
    """
    Outcome of a validation pass.  Never raised, always returned.

    errors   – block the "legally compliant" state
    warnings – advisory only; never block saving
    """
    is_valid: bool = True
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


@dataclass
class FlatGoals:
    long_term_goal: str = ""
    short_term_goals: List[CareGoal] = field(default_factory=list)


@dataclass
class CertificationStatus:
    urgency: DeadlineUrgency = DeadlineUrgency.UNKNOWN
    days_remaining: Optional[int] = None
    label: str = ""


@dataclass
class MonitoringStatus:
    is_current_month_done: bool = False
    last_visit_date: Optional[date] = None
    days_since_last_visit: Optional[int] = None


@dataclass
class ClientDashboardItem:
    """
    Per-client dashboard row.

    `monitoring_status` is None when the client's monitoring records could
    not be fetched; the row is still shown.
    """
    client: Client
    certification_status: CertificationStatus
    monitoring_status: Optional[MonitoringStatus] = None
    needs_plan_revision: bool = False


@dataclass
class DashboardSummary:
    total_clients: int = 0
    monitoring_done: int = 0
    monitoring_remaining: int = 0
    certification_alerts: int = 0      # expired + critical + warning
    plan_revision_needed: int = 0


@dataclass
class SaveMessage:
    """Transient save outcome; callers clear it once expires_at has passed."""
    type: SaveMessageType
    text: str
    expires_at: Optional[datetime] = None
