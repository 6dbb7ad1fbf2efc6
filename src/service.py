"""
service.py

Service layer for the Care-Plan Consistency & Versioning Engine.

Responsibilities
----------------
Each service class encapsulates the pure business logic for its concern.
Services receive and return domain model instances (from model.py).
No persistence is handled here; the application layer loads and stores
models through repositories.

Services
--------
- ValidationService   – golden-thread date chain and needs/goals consistency
- NeedsSyncService    – derives the flat goal mirror from grouped needs and
                        applies every grouped-structure mutation
- DeadlineService     – certification-expiry urgency and monthly monitoring status
- DashboardService    – urgency priority, action-list filtering, summary counts
- HistoryService      – point-in-time snapshots of a plan and history ordering

Design notes
------------
- Validation outcomes are returned as ValidationResult, never raised.
- Mutations on the grouped structure return a new CarePlan; the input plan is
  left untouched.  Every mutation re-derives long_term_goal and
  short_term_goals before returning.
- Date inputs may be date objects or ISO "YYYY-MM-DD" strings; blank or
  unparsable values are treated as absent.
- Business rule violations on mutations raise ValueError / KeyError with a
  descriptive message.
"""

from __future__ import annotations

import copy
import dataclasses
from datetime import date, datetime
from typing import Iterable, List, Optional, Union

from model import (
    CareGoal,
    CarePlan,
    CarePlanHistoryEntry,
    CarePlanNeed,
    CarePlanService,
    CertificationStatus,
    ClientDashboardItem,
    DashboardSummary,
    DeadlineUrgency,
    FlatGoals,
    GoalStatus,
    MonitoringStatus,
    UrgencyPriority,
    ValidationResult,
)

DateLike = Union[date, datetime, str, None]


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

def parse_date(value: DateLike) -> Optional[date]:
    """Coerce a date-like value to a calendar date, or None if absent/invalid."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    text = str(value).strip()
    if not text:
        return None
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        return None


def _blank(text: Optional[str]) -> bool:
    return text is None or text.strip() == ""


# ---------------------------------------------------------------------------
# ValidationService
# ---------------------------------------------------------------------------

class ValidationService:
    """
    Checks a plan snapshot against the golden-thread rules.

    All methods are pure and synchronous, so they can run after every edit
    for live feedback.  Re-running them on an unchanged plan yields an equal
    result.
    """

    def __init__(self, assessment_gap_warning_days: int = 30):
        self.assessment_gap_warning_days = assessment_gap_warning_days
        self._sync = NeedsSyncService()

    def validate_date_chain(self, plan: CarePlan) -> ValidationResult:
        """
        Enforce assessment ≤ draft ≤ meeting ≤ consent pairwise.

        A draft without an assessment is an error.  An assessment-to-draft
        gap longer than the configured number of days is a warning.
        """
        errors: List[str] = []
        warnings: List[str] = []

        assessment = parse_date(plan.assessment_date)
        draft = parse_date(plan.draft_date)
        meeting = parse_date(plan.meeting_date)
        consent = parse_date(plan.consent_date)

        if assessment and draft:
            if assessment > draft:
                errors.append(
                    "Date order violation: draft date precedes assessment date; "
                    "the draft must be prepared on or after the assessment."
                )
        elif draft and not assessment:
            errors.append("Date order violation: draft requires an assessment date.")

        if draft and meeting and draft > meeting:
            errors.append(
                "Date order violation: meeting date precedes draft date; "
                "the care team meeting must follow the draft."
            )

        if meeting and consent and meeting > consent:
            errors.append(
                "Date order violation: consent date precedes meeting date; "
                "client consent must follow the care team meeting."
            )

        if assessment and draft:
            gap_days = abs((draft - assessment).days)
            if gap_days > self.assessment_gap_warning_days:
                warnings.append(
                    f"Notice: more than {self.assessment_gap_warning_days} days between "
                    f"assessment and draft ({gap_days} days); confirm the client's "
                    "situation has not changed."
                )

        return ValidationResult(is_valid=not errors, errors=errors, warnings=warnings)

    def validate_needs_goal_consistency(self, plan: CarePlan) -> ValidationResult:
        """
        Check each need's content and goals, then the flat mirror.

        Per need: empty content, unset long-term goal and zero short-term
        goals are errors; zero services is only a warning.  Plans without a
        grouped structure are valid with a single advisory warning.
        """
        errors: List[str] = []
        warnings: List[str] = []

        needs = plan.needs
        if not needs:
            warnings.append(
                "Recommendation: grouped needs structure recommended; organise "
                "goals and services by need."
            )
            return ValidationResult(is_valid=True, errors=errors, warnings=warnings)

        for index, need in enumerate(needs, start=1):
            label = f"Need {index}"
            if _blank(need.content):
                errors.append(f"{label}: need content empty.")
            if _blank(need.long_term_goal):
                errors.append(f"{label}: long-term goal unset.")
            if not need.short_term_goals:
                errors.append(f"{label}: no short-term goals set.")
            if not need.services:
                warnings.append(f"{label}: no services set.")

        # Top-level long-term goal must mirror need 1
        first_goal = needs[0].long_term_goal
        if plan.long_term_goal and first_goal and plan.long_term_goal != first_goal:
            warnings.append(
                "Notice: plan long-term goal does not match need 1 long-term goal."
            )

        need_goal_ids = {g.id for n in needs for g in n.short_term_goals}
        orphaned = [g for g in plan.short_term_goals if g.id not in need_goal_ids]
        if orphaned:
            warnings.append(
                f"Notice: {len(orphaned)} orphaned short-term goal(s) not linked to "
                f"any need ({', '.join(g.content for g in orphaned)})."
            )
        elif plan.short_term_goals != self._sync.needs_to_flat(needs).short_term_goals:
            warnings.append(
                "Notice: plan short-term goals are out of sync with the goals "
                "listed under its needs."
            )

        return ValidationResult(is_valid=not errors, errors=errors, warnings=warnings)

    def validate_care_plan_full(self, plan: CarePlan) -> ValidationResult:
        """Union of the date-chain and needs/goals results."""
        dates = self.validate_date_chain(plan)
        needs = self.validate_needs_goal_consistency(plan)
        errors = dates.errors + needs.errors
        return ValidationResult(
            is_valid=not errors,
            errors=errors,
            warnings=dates.warnings + needs.warnings,
        )

    def is_legally_compliant(self, plan: CarePlan) -> bool:
        return self.validate_care_plan_full(plan).is_valid


# ---------------------------------------------------------------------------
# NeedsSyncService
# ---------------------------------------------------------------------------

class NeedsSyncService:
    """
    Keeps the flat legacy goal fields a derived projection of the needs.

    The grouped structure is the only source of truth: every mutation goes
    through _with_needs(), which recomputes the flat mirror.
    """

    def needs_to_flat(self, needs: Iterable[CarePlanNeed]) -> FlatGoals:
        """
        long_term_goal is need 1's long-term goal ('' when there are no needs);
        short_term_goals concatenates each need's goals in need order, then
        goal order.  Goals are copied, so the mirror never aliases the needs.
        """
        needs = list(needs)
        return FlatGoals(
            long_term_goal=needs[0].long_term_goal if needs else "",
            short_term_goals=[
                copy.deepcopy(goal) for need in needs for goal in need.short_term_goals
            ],
        )

    def sync_plan(self, plan: CarePlan) -> CarePlan:
        """Re-derive the mirror of a plan; plans without needs are returned as-is."""
        if plan.needs is None:
            return plan
        return self._with_needs(plan, plan.needs)

    # --- Needs --------------------------------------------------------------

    def add_need(
        self,
        plan: CarePlan,
        content: str = "",
        long_term_goal: str = "",
    ) -> CarePlan:
        """Append a new need (fresh id, no goals or services yet)."""
        needs = list(plan.needs or [])
        needs.append(CarePlanNeed(content=content, long_term_goal=long_term_goal))
        return self._with_needs(plan, needs)

    def update_need(self, plan: CarePlan, need_id: str, **changes) -> CarePlan:
        if "id" in changes:
            raise ValueError("A need's id cannot be changed.")
        needs = [
            dataclasses.replace(n, **changes) if n.id == need_id else n
            for n in self._needs_or_raise(plan, need_id)
        ]
        return self._with_needs(plan, needs)

    def remove_need(self, plan: CarePlan, need_id: str) -> CarePlan:
        needs = [n for n in self._needs_or_raise(plan, need_id) if n.id != need_id]
        return self._with_needs(plan, needs)

    # --- Short-term goals ---------------------------------------------------

    def add_goal(self, plan: CarePlan, need_id: str, content: str) -> CarePlan:
        if _blank(content):
            raise ValueError("Goal content must not be empty.")
        goal = CareGoal(content=content.strip(), status=GoalStatus.NOT_STARTED)
        return self._edit_need(
            plan, need_id, lambda n: dataclasses.replace(
                n, short_term_goals=[*n.short_term_goals, goal]
            )
        )

    def update_goal(self, plan: CarePlan, need_id: str, goal_id: str, **changes) -> CarePlan:
        if "id" in changes:
            raise ValueError("A goal's id cannot be changed.")

        def apply(need: CarePlanNeed) -> CarePlanNeed:
            self._require_member(need.short_term_goals, goal_id, "Goal")
            return dataclasses.replace(need, short_term_goals=[
                dataclasses.replace(g, **changes) if g.id == goal_id else g
                for g in need.short_term_goals
            ])

        return self._edit_need(plan, need_id, apply)

    def remove_goal(self, plan: CarePlan, need_id: str, goal_id: str) -> CarePlan:
        def apply(need: CarePlanNeed) -> CarePlanNeed:
            self._require_member(need.short_term_goals, goal_id, "Goal")
            return dataclasses.replace(
                need, short_term_goals=[g for g in need.short_term_goals if g.id != goal_id]
            )

        return self._edit_need(plan, need_id, apply)

    # --- Services -----------------------------------------------------------

    def add_service(
        self,
        plan: CarePlan,
        need_id: str,
        content: str,
        type: str = "",
        frequency: str = "",
    ) -> CarePlan:
        if _blank(content):
            raise ValueError("Service content must not be empty.")
        svc = CarePlanService(
            content=content.strip(), type=type.strip(), frequency=frequency.strip()
        )
        return self._edit_need(
            plan, need_id, lambda n: dataclasses.replace(n, services=[*n.services, svc])
        )

    def update_service(self, plan: CarePlan, need_id: str, service_id: str, **changes) -> CarePlan:
        if "id" in changes:
            raise ValueError("A service's id cannot be changed.")

        def apply(need: CarePlanNeed) -> CarePlanNeed:
            self._require_member(need.services, service_id, "Service")
            return dataclasses.replace(need, services=[
                dataclasses.replace(s, **changes) if s.id == service_id else s
                for s in need.services
            ])

        return self._edit_need(plan, need_id, apply)

    def remove_service(self, plan: CarePlan, need_id: str, service_id: str) -> CarePlan:
        def apply(need: CarePlanNeed) -> CarePlanNeed:
            self._require_member(need.services, service_id, "Service")
            return dataclasses.replace(
                need, services=[s for s in need.services if s.id != service_id]
            )

        return self._edit_need(plan, need_id, apply)

    # --- Internals ----------------------------------------------------------

    def _with_needs(self, plan: CarePlan, needs: List[CarePlanNeed]) -> CarePlan:
        needs = copy.deepcopy(needs)
        flat = self.needs_to_flat(needs)
        return dataclasses.replace(
            plan,
            needs=needs,
            long_term_goal=flat.long_term_goal,
            short_term_goals=flat.short_term_goals,
        )

    def _edit_need(self, plan: CarePlan, need_id: str, fn) -> CarePlan:
        needs = [fn(n) if n.id == need_id else n for n in self._needs_or_raise(plan, need_id)]
        return self._with_needs(plan, needs)

    @staticmethod
    def _needs_or_raise(plan: CarePlan, need_id: str) -> List[CarePlanNeed]:
        needs = plan.needs or []
        if not any(n.id == need_id for n in needs):
            raise KeyError(f"Need {need_id} not found in plan.")
        return needs

    @staticmethod
    def _require_member(items, item_id: str, kind: str) -> None:
        if not any(i.id == item_id for i in items):
            raise KeyError(f"{kind} {item_id} not found in need.")


# ---------------------------------------------------------------------------
# DeadlineService
# ---------------------------------------------------------------------------

class DeadlineService:
    """
    Certification-expiry urgency and monthly monitoring cadence.

    Day differences are whole calendar days; time of day never matters.
    """

    def __init__(self, critical_days: int = 30, warning_days: int = 60):
        self.critical_days = critical_days
        self.warning_days = warning_days

    def certification_status(
        self, expiry: DateLike, today: Optional[DateLike] = None
    ) -> CertificationStatus:
        """
        expired  – expiry is in the past
        critical – 0 to critical_days remaining
        warning  – up to warning_days remaining
        safe     – more than warning_days remaining
        unknown  – no or unparsable expiry date (empty label)
        """
        expiry_date = parse_date(expiry)
        if expiry_date is None:
            return CertificationStatus(urgency=DeadlineUrgency.UNKNOWN)

        days = (expiry_date - self._today(today)).days
        if days < 0:
            return CertificationStatus(DeadlineUrgency.EXPIRED, days, "expired")
        label = f"{days} day remaining" if days == 1 else f"{days} days remaining"
        if days <= self.critical_days:
            return CertificationStatus(DeadlineUrgency.CRITICAL, days, label)
        if days <= self.warning_days:
            return CertificationStatus(DeadlineUrgency.WARNING, days, label)
        return CertificationStatus(DeadlineUrgency.SAFE, days, label)

    def monitoring_status(
        self, visit_dates: Iterable[DateLike], today: Optional[DateLike] = None
    ) -> MonitoringStatus:
        """Summarise visit dates against the calendar month of `today`."""
        dates = sorted(
            (d for d in (parse_date(v) for v in visit_dates or []) if d is not None),
            reverse=True,
        )
        if not dates:
            return MonitoringStatus()

        today_date = self._today(today)
        last_visit = dates[0]
        return MonitoringStatus(
            is_current_month_done=any(
                d.year == today_date.year and d.month == today_date.month for d in dates
            ),
            last_visit_date=last_visit,
            days_since_last_visit=(today_date - last_visit).days,
        )

    @staticmethod
    def _today(today: Optional[DateLike]) -> date:
        return parse_date(today) or date.today()


# ---------------------------------------------------------------------------
# DashboardService
# ---------------------------------------------------------------------------

_ALERT_URGENCIES = {
    DeadlineUrgency.EXPIRED,
    DeadlineUrgency.CRITICAL,
    DeadlineUrgency.WARNING,
}


class DashboardService:
    """Ranks dashboard rows and aggregates the summary cards."""

    def urgency_priority(self, item: ClientDashboardItem) -> int:
        urgency = item.certification_status.urgency
        if urgency == DeadlineUrgency.EXPIRED:
            return UrgencyPriority.CERTIFICATION_EXPIRED
        if urgency == DeadlineUrgency.CRITICAL:
            return UrgencyPriority.CERTIFICATION_CRITICAL
        # A failed fetch (None) gives no evidence either way
        if item.monitoring_status is not None and not item.monitoring_status.is_current_month_done:
            return UrgencyPriority.MONITORING_NOT_DONE
        if urgency == DeadlineUrgency.WARNING:
            return UrgencyPriority.CERTIFICATION_WARNING
        if item.needs_plan_revision:
            return UrgencyPriority.PLAN_NEEDS_REVISION
        return UrgencyPriority.NONE

    def filter_action_items(
        self, items: Iterable[ClientDashboardItem]
    ) -> List[ClientDashboardItem]:
        """Rows needing action, most urgent first.  Stable; input is not mutated."""
        ranked = [(self.urgency_priority(item), item) for item in items]
        ranked = [pair for pair in ranked if pair[0] < UrgencyPriority.NONE]
        return [item for _, item in sorted(ranked, key=lambda pair: pair[0])]

    def compute_summary(self, items: Iterable[ClientDashboardItem]) -> DashboardSummary:
        items = list(items)
        total = len(items)
        done = sum(
            1 for i in items
            if i.monitoring_status is not None and i.monitoring_status.is_current_month_done
        )
        return DashboardSummary(
            total_clients=total,
            monitoring_done=done,
            monitoring_remaining=total - done,
            certification_alerts=sum(
                1 for i in items if i.certification_status.urgency in _ALERT_URGENCIES
            ),
            plan_revision_needed=sum(1 for i in items if i.needs_plan_revision),
        )


# ---------------------------------------------------------------------------
# HistoryService
# ---------------------------------------------------------------------------

class HistoryService:
    """Point-in-time copies of a plan, taken just before it is overwritten."""

    def snapshot(self, plan: CarePlan, saved_at: Optional[datetime] = None) -> CarePlanHistoryEntry:
        if not plan.id:
            raise ValueError("Only a persisted plan can be snapshotted.")
        entry = CarePlanHistoryEntry(
            plan_id=plan.id,
            client_id=plan.client_id,
            status=plan.status,
            short_term_goal_count=len(plan.short_term_goals),
            short_term_goals=copy.deepcopy(plan.short_term_goals),
            needs=copy.deepcopy(plan.needs),
            long_term_goal=plan.long_term_goal,
        )
        if saved_at is not None:
            entry.saved_at = saved_at
        return entry

    def latest(
        self, entries: Iterable[CarePlanHistoryEntry], limit: int
    ) -> List[CarePlanHistoryEntry]:
        """Newest first, at most `limit` entries."""
        ordered = sorted(entries, key=lambda e: e.saved_at, reverse=True)
        return ordered[:max(limit, 0)]
