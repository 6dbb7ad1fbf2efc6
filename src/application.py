"""
application.py

Application layer for the Care-Plan Consistency & Versioning Engine.

Overview
--------
The application layer sits between the presentation layer (API / UI) and the
domain / service layer.  It is responsible for:

  1. Defining clean output DTOs (dataclasses) that carry only the data the
     presentation layer needs.
  2. Declaring abstract Repository interfaces so that the application layer
     remains fully persistence-agnostic (implementations live in
     infrastructure.py).
  3. Declaring the UnitOfWork abstraction: all writes made inside one
     `with uow:` block are committed as a single all-or-nothing batch.
  4. Implementing Use Case handlers (one class per operation) that
     orchestrate service calls and repository reads/writes.
  5. Providing the stateful CarePlanController (one editing session) and the
     DashboardAggregator (concurrent per-client fan-out).

Structure
---------
DTOs
    CareGoalDTO, CarePlanServiceDTO, CarePlanNeedDTO, CarePlanDTO
    CarePlanSummaryDTO, CarePlanHistoryEntryDTO, ValidationResultDTO
    SaveCarePlanResultDTO, DashboardItemDTO, DashboardSummaryDTO, DashboardDTO

Repository interfaces
    AbstractCarePlanRepository
    AbstractCarePlanHistoryRepository
    AbstractMonitoringRecordRepository
    AbstractSupportRecordRepository
    AbstractServiceMeetingRecordRepository

Unit of Work
    AbstractUnitOfWork

Use Cases
    ListCarePlansUseCase
    GetCarePlanUseCase
    SaveCarePlanUseCase
    GetCarePlanHistoryUseCase
    MigrateLegacyCarePlanUseCase
    ValidateCarePlanUseCase

Orchestrators
    CarePlanController
    DashboardAggregator

Design notes
------------
- Persistence faults are wrapped in OperationFailedError (operation name +
  underlying cause).  Use cases raise; CarePlanController converts every
  ApplicationError into a transient SaveMessage and never raises.
- History snapshots are best-effort: a failed snapshot is logged and the
  save proceeds.
- Concurrent editors are not coordinated: the last write wins, and the
  superseded state survives in the plan history.
"""

from __future__ import annotations

import abc
import asyncio
import dataclasses
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterator, List, Optional

import structlog

from config import CarePlanSettings, get_settings
from model import (
    CareGoal,
    CarePlan,
    CarePlanHistoryEntry,
    CarePlanNeed,
    CarePlanService,
    Client,
    ClientDashboardItem,
    MonitoringRecord,
    MonitoringStatus,
    SaveMessage,
    SaveMessageType,
    ServiceMeetingRecord,
    SupportRecord,
    ValidationResult,
    WeeklySchedule,
)
from service import (
    DashboardService,
    DeadlineService,
    HistoryService,
    NeedsSyncService,
    ValidationService,
)

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ApplicationError(Exception):
    """Raised when a use case cannot complete due to a business rule violation."""


class NotFoundError(ApplicationError):
    """Raised when a requested entity does not exist."""


class MissingPrerequisiteError(ApplicationError):
    """Raised when a user-correctable precondition is unmet (e.g. no assessment)."""


class OperationFailedError(ApplicationError):
    """Raised when the persistence layer fails underneath a use case."""

    def __init__(self, operation: str, cause: BaseException):
        super().__init__(f"{operation} failed: {cause}")
        self.operation = operation
        self.cause = cause


class ConcurrentModificationError(ApplicationError):
    """Raised on commit when a record the batch removes was already removed by another writer."""


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _fmt(dt: Optional[datetime]) -> Optional[str]:
    """Convert a datetime to an ISO-8601 UTC string, or None."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.isoformat()


def _fmt_date(d: Optional[date]) -> Optional[str]:
    return d.isoformat() if d else None


@contextmanager
def _operation(name: str) -> Iterator[None]:
    """Wrap unexpected persistence faults in OperationFailedError."""
    try:
        yield
    except ApplicationError:
        raise
    except Exception as exc:
        raise OperationFailedError(name, exc) from exc


# ===========================================================================
# DTO DEFINITIONS
# ===========================================================================

# ---------------------------------------------------------------------------
# Care plan DTOs
# ---------------------------------------------------------------------------

@dataclass
class CareGoalDTO:
    id: str
    content: str
    status: str
    start_date: Optional[str]
    end_date: Optional[str]


@dataclass
class CarePlanServiceDTO:
    id: str
    content: str
    type: str
    frequency: str


@dataclass
class CarePlanNeedDTO:
    id: str
    content: str
    long_term_goal: str
    long_term_goal_start_date: Optional[str]
    long_term_goal_end_date: Optional[str]
    short_term_goals: List[CareGoalDTO]
    services: List[CarePlanServiceDTO]


@dataclass
class CarePlanDTO:
    id: str
    client_id: str
    status: str
    assessment_date: Optional[str]
    draft_date: Optional[str]
    meeting_date: Optional[str]
    consent_date: Optional[str]
    delivery_date: Optional[str]
    long_term_goal: str
    long_term_goal_start_date: Optional[str]
    long_term_goal_end_date: Optional[str]
    short_term_goals: List[CareGoalDTO]
    needs: Optional[List[CarePlanNeedDTO]]
    total_direction_policy: Optional[str]
    user_intention: Optional[str]
    family_intention: Optional[str]
    weekly_schedule: Optional[Dict[str, Any]]
    assessment_id: Optional[str]
    created_at: Optional[str]
    updated_at: Optional[str]


@dataclass
class CarePlanSummaryDTO:
    """Projection of a persisted plan for list views."""
    id: str
    status: str
    updated_at: Optional[str]
    created_at: Optional[str]
    long_term_goal: str


@dataclass
class CarePlanHistoryEntryDTO:
    id: str
    plan_id: str
    saved_at: str
    status: str
    short_term_goal_count: int
    short_term_goals: List[CareGoalDTO]
    needs: Optional[List[CarePlanNeedDTO]]
    long_term_goal: str


@dataclass
class ValidationResultDTO:
    is_valid: bool
    errors: List[str]
    warnings: List[str]


@dataclass
class SaveCarePlanResultDTO:
    plan: CarePlanDTO
    validation: ValidationResultDTO


# ---------------------------------------------------------------------------
# Dashboard DTOs
# ---------------------------------------------------------------------------

@dataclass
class DashboardItemDTO:
    client_id: str
    client_name: str
    certification_urgency: str
    certification_days_remaining: Optional[int]
    certification_label: str
    monitoring_available: bool
    monitoring_current_month_done: Optional[bool]
    last_visit_date: Optional[str]
    days_since_last_visit: Optional[int]
    needs_plan_revision: bool
    priority: int


@dataclass
class DashboardSummaryDTO:
    total_clients: int
    monitoring_done: int
    monitoring_remaining: int
    certification_alerts: int
    plan_revision_needed: int


@dataclass
class DashboardDTO:
    items: List[DashboardItemDTO]
    action_items: List[DashboardItemDTO]
    summary: DashboardSummaryDTO


# ===========================================================================
# DTO ASSEMBLERS
# ===========================================================================

class _Assembler:
    """Converts domain model instances into DTOs."""

    @staticmethod
    def goal(g: CareGoal) -> CareGoalDTO:
        return CareGoalDTO(
            id=g.id,
            content=g.content,
            status=g.status.value,
            start_date=_fmt_date(g.start_date),
            end_date=_fmt_date(g.end_date),
        )

    @staticmethod
    def service(s: CarePlanService) -> CarePlanServiceDTO:
        return CarePlanServiceDTO(id=s.id, content=s.content, type=s.type, frequency=s.frequency)

    @staticmethod
    def need(n: CarePlanNeed) -> CarePlanNeedDTO:
        return CarePlanNeedDTO(
            id=n.id,
            content=n.content,
            long_term_goal=n.long_term_goal,
            long_term_goal_start_date=_fmt_date(n.long_term_goal_start_date),
            long_term_goal_end_date=_fmt_date(n.long_term_goal_end_date),
            short_term_goals=[_Assembler.goal(g) for g in n.short_term_goals],
            services=[_Assembler.service(s) for s in n.services],
        )

    @staticmethod
    def weekly_schedule(ws: Optional[WeeklySchedule]) -> Optional[Dict[str, Any]]:
        if ws is None:
            return None
        return {
            "entries": [
                {**dataclasses.asdict(e), "days": [d.value for d in e.days]}
                for e in ws.entries
            ],
            "main_activities": ws.main_activities,
            "weekly_note": ws.weekly_note,
        }

    @staticmethod
    def care_plan(p: CarePlan) -> CarePlanDTO:
        return CarePlanDTO(
            id=p.id,
            client_id=p.client_id,
            status=p.status.value,
            assessment_date=_fmt_date(p.assessment_date),
            draft_date=_fmt_date(p.draft_date),
            meeting_date=_fmt_date(p.meeting_date),
            consent_date=_fmt_date(p.consent_date),
            delivery_date=_fmt_date(p.delivery_date),
            long_term_goal=p.long_term_goal,
            long_term_goal_start_date=_fmt_date(p.long_term_goal_start_date),
            long_term_goal_end_date=_fmt_date(p.long_term_goal_end_date),
            short_term_goals=[_Assembler.goal(g) for g in p.short_term_goals],
            needs=[_Assembler.need(n) for n in p.needs] if p.needs is not None else None,
            total_direction_policy=p.total_direction_policy,
            user_intention=p.user_intention,
            family_intention=p.family_intention,
            weekly_schedule=_Assembler.weekly_schedule(p.weekly_schedule),
            assessment_id=p.assessment_id,
            created_at=_fmt(p.created_at),
            updated_at=_fmt(p.updated_at),
        )

    @staticmethod
    def summary(p: CarePlan) -> CarePlanSummaryDTO:
        return CarePlanSummaryDTO(
            id=p.id,
            status=p.status.value,
            updated_at=_fmt(p.updated_at),
            created_at=_fmt(p.created_at),
            long_term_goal=p.long_term_goal or "",
        )

    @staticmethod
    def history_entry(e: CarePlanHistoryEntry) -> CarePlanHistoryEntryDTO:
        return CarePlanHistoryEntryDTO(
            id=e.id,
            plan_id=e.plan_id,
            saved_at=_fmt(e.saved_at),
            status=e.status.value,
            short_term_goal_count=e.short_term_goal_count,
            short_term_goals=[_Assembler.goal(g) for g in e.short_term_goals],
            needs=[_Assembler.need(n) for n in e.needs] if e.needs is not None else None,
            long_term_goal=e.long_term_goal,
        )

    @staticmethod
    def validation(r: ValidationResult) -> ValidationResultDTO:
        return ValidationResultDTO(
            is_valid=r.is_valid, errors=list(r.errors), warnings=list(r.warnings)
        )

    @staticmethod
    def dashboard_item(item: ClientDashboardItem, priority: int) -> DashboardItemDTO:
        cert = item.certification_status
        mon = item.monitoring_status
        return DashboardItemDTO(
            client_id=item.client.id,
            client_name=item.client.name,
            certification_urgency=cert.urgency.value,
            certification_days_remaining=cert.days_remaining,
            certification_label=cert.label,
            monitoring_available=mon is not None,
            monitoring_current_month_done=mon.is_current_month_done if mon else None,
            last_visit_date=_fmt_date(mon.last_visit_date) if mon else None,
            days_since_last_visit=mon.days_since_last_visit if mon else None,
            needs_plan_revision=item.needs_plan_revision,
            priority=int(priority),
        )


# ===========================================================================
# REPOSITORY INTERFACES
# ===========================================================================

class AbstractCarePlanRepository(abc.ABC):
    @abc.abstractmethod
    def get(self, client_id: str, plan_id: str) -> Optional[CarePlan]: ...
    @abc.abstractmethod
    def list_for_client(self, client_id: str) -> List[CarePlan]: ...
    @abc.abstractmethod
    def save(self, plan: CarePlan) -> None: ...
    @abc.abstractmethod
    def delete(self, client_id: str, plan_id: str) -> None: ...


class AbstractCarePlanHistoryRepository(abc.ABC):
    @abc.abstractmethod
    def list_for_plan(self, client_id: str, plan_id: str) -> List[CarePlanHistoryEntry]: ...
    @abc.abstractmethod
    def save(self, entry: CarePlanHistoryEntry) -> None: ...


class AbstractMonitoringRecordRepository(abc.ABC):
    @abc.abstractmethod
    def list_for_client(
        self, client_id: str, limit: Optional[int] = None
    ) -> List[MonitoringRecord]: ...
    @abc.abstractmethod
    def list_for_care_plan(self, client_id: str, care_plan_id: str) -> List[MonitoringRecord]: ...
    @abc.abstractmethod
    def save(self, record: MonitoringRecord) -> None: ...


class AbstractSupportRecordRepository(abc.ABC):
    @abc.abstractmethod
    def list_for_care_plan(self, client_id: str, care_plan_id: str) -> List[SupportRecord]: ...
    @abc.abstractmethod
    def save(self, record: SupportRecord) -> None: ...


class AbstractServiceMeetingRecordRepository(abc.ABC):
    @abc.abstractmethod
    def list_for_care_plan(
        self, client_id: str, care_plan_id: str
    ) -> List[ServiceMeetingRecord]: ...
    @abc.abstractmethod
    def save(self, record: ServiceMeetingRecord) -> None: ...


# ===========================================================================
# UNIT OF WORK
# ===========================================================================

class AbstractUnitOfWork(abc.ABC):
    """
    Groups all repositories under a single transactional boundary.
    Use as a context manager:

        with uow:
            uow.care_plans.save(plan)
            uow.commit()

    Writes become visible to other readers only on commit(); leaving the
    block with an exception rolls every pending write back.
    """
    care_plans: AbstractCarePlanRepository
    plan_history: AbstractCarePlanHistoryRepository
    monitoring_records: AbstractMonitoringRecordRepository
    support_records: AbstractSupportRecordRepository
    meeting_records: AbstractServiceMeetingRecordRepository

    def __enter__(self) -> "AbstractUnitOfWork":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if exc_type:
            self.rollback()
        else:
            self.commit()

    @abc.abstractmethod
    def commit(self) -> None: ...

    @abc.abstractmethod
    def rollback(self) -> None: ...


# ===========================================================================
# SERVICE SINGLETONS (shared across use cases)
# ===========================================================================

_sync_svc = NeedsSyncService()
_history_svc = HistoryService()
_dashboard_svc = DashboardService()


def _validation_svc(settings: CarePlanSettings) -> ValidationService:
    return ValidationService(assessment_gap_warning_days=settings.assessment_gap_warning_days)


def _deadline_svc(settings: CarePlanSettings) -> DeadlineService:
    return DeadlineService(
        critical_days=settings.certification_critical_days,
        warning_days=settings.certification_warning_days,
    )


# ===========================================================================
# USE CASE HELPERS
# ===========================================================================

def _list_plans(uow: AbstractUnitOfWork, client_id: str) -> List[CarePlan]:
    """All persisted plans for a client, most recently updated first."""
    plans = uow.care_plans.list_for_client(client_id)
    epoch = datetime.min.replace(tzinfo=timezone.utc)
    return sorted(plans, key=lambda p: p.updated_at or epoch, reverse=True)


def _get_plan_or_raise(uow: AbstractUnitOfWork, client_id: str, plan_id: str) -> CarePlan:
    plan = uow.care_plans.get(client_id, plan_id)
    if plan is None:
        raise NotFoundError(f"Care plan {plan_id} not found for client {client_id}.")
    return plan


def _record_snapshot(uow: AbstractUnitOfWork, client_id: str, plan_id: str) -> None:
    """
    Push the currently persisted version of a plan into its history.
    Best-effort: failures are logged and never abort the caller.
    """
    try:
        with uow:
            current = uow.care_plans.get(client_id, plan_id)
            if current is None:
                return
            uow.plan_history.save(_history_svc.snapshot(current))
            uow.commit()
    except Exception as exc:
        logger.warning(
            "care_plan.snapshot_failed",
            client_id=client_id,
            plan_id=plan_id,
            error=str(exc),
        )


# ===========================================================================
# USE CASES — CARE PLANS
# ===========================================================================

@dataclass
class PlanListing:
    plans: List[CarePlan]
    migrated_plan_id: Optional[str] = None


class MigrateLegacyCarePlanUseCase:
    """
    Move a plan stored under a legacy literal id to a fresh UUID.

    One batch: copy the plan under the new id, delete the legacy document,
    repoint its history, and rewrite care_plan_id on every monitoring,
    support and meeting record of the client that referenced the old id.
    If anything fails nothing is applied, so the legacy plan stays loadable
    and the migration can simply be retried.  Returns the new id, or None
    when there is nothing to migrate.  When another session migrates the
    same plan first, this batch is discarded on commit and None is returned.
    """

    def __init__(self, legacy_plan_id: Optional[str] = None):
        self.legacy_plan_id = legacy_plan_id or get_settings().legacy_plan_id

    def execute(self, client_id: str, uow: AbstractUnitOfWork) -> Optional[str]:
        old_id = self.legacy_plan_id
        try:
            return self._migrate(client_id, old_id, uow)
        except ConcurrentModificationError:
            logger.info("care_plan.migration_superseded", client_id=client_id, old_id=old_id)
            return None

    def _migrate(self, client_id: str, old_id: str, uow: AbstractUnitOfWork) -> Optional[str]:
        with _operation("migrate_care_plan_id"):
            with uow:
                legacy = uow.care_plans.get(client_id, old_id)
                if legacy is None:
                    return None

                new_id = str(uuid.uuid4())
                uow.care_plans.save(dataclasses.replace(legacy, id=new_id))
                uow.care_plans.delete(client_id, old_id)

                for entry in uow.plan_history.list_for_plan(client_id, old_id):
                    uow.plan_history.save(dataclasses.replace(entry, plan_id=new_id))

                rewritten = 0
                for repo in (uow.monitoring_records, uow.support_records, uow.meeting_records):
                    for record in repo.list_for_care_plan(client_id, old_id):
                        repo.save(dataclasses.replace(record, care_plan_id=new_id))
                        rewritten += 1

                uow.commit()

        logger.info(
            "care_plan.migrated",
            client_id=client_id,
            old_id=old_id,
            new_id=new_id,
            references_rewritten=rewritten,
        )
        return new_id


class ListCarePlansUseCase:
    """
    List a client's plans, newest first.

    The whole list is scanned for the legacy id on every call; when found,
    the plan is migrated before the list is re-fetched and returned.
    """

    def __init__(self, legacy_plan_id: Optional[str] = None):
        self.legacy_plan_id = legacy_plan_id or get_settings().legacy_plan_id

    def fetch(self, client_id: str, uow: AbstractUnitOfWork) -> PlanListing:
        with _operation("list_care_plans"):
            with uow:
                plans = _list_plans(uow, client_id)

        if not any(p.id == self.legacy_plan_id for p in plans):
            return PlanListing(plans=plans)

        new_id = MigrateLegacyCarePlanUseCase(self.legacy_plan_id).execute(client_id, uow)
        with _operation("list_care_plans"):
            with uow:
                plans = _list_plans(uow, client_id)
        return PlanListing(plans=plans, migrated_plan_id=new_id)

    def execute(self, client_id: str, uow: AbstractUnitOfWork) -> List[CarePlanSummaryDTO]:
        return [_Assembler.summary(p) for p in self.fetch(client_id, uow).plans]


class GetCarePlanUseCase:
    def fetch(self, client_id: str, plan_id: str, uow: AbstractUnitOfWork) -> CarePlan:
        with _operation("get_care_plan"):
            with uow:
                return _get_plan_or_raise(uow, client_id, plan_id)

    def execute(self, client_id: str, plan_id: str, uow: AbstractUnitOfWork) -> CarePlanDTO:
        return _Assembler.care_plan(self.fetch(client_id, plan_id, uow))


@dataclass
class SaveCarePlanCommand:
    plan: CarePlan
    assessment_id: Optional[str]


class SaveCarePlanUseCase:
    """
    Persist a plan.

    - Refused without an assessment reference.
    - The first save assigns a UUID and stamps created_at; every save stamps
      updated_at.  A plan with an id always overwrites the same record.
    - Before overwriting, the stored version is pushed into history.
    """

    def __init__(self, settings: Optional[CarePlanSettings] = None):
        self.settings = settings or get_settings()

    def save(self, cmd: SaveCarePlanCommand, uow: AbstractUnitOfWork) -> CarePlan:
        if not cmd.assessment_id:
            raise MissingPrerequisiteError(
                "Save the assessment first: a care plan cannot be saved without one."
            )
        plan = _sync_svc.sync_plan(cmd.plan)
        if plan.id == self.settings.legacy_plan_id:
            raise ApplicationError(
                f"Care plan id '{plan.id}' is a legacy id; reload the plan list to migrate it."
            )

        is_new = not plan.id
        if not is_new:
            _record_snapshot(uow, plan.client_id, plan.id)

        with _operation("save_care_plan"):
            with uow:
                now = _utcnow()
                existing = None if is_new else uow.care_plans.get(plan.client_id, plan.id)
                if existing is not None:
                    created_at = existing.created_at or now
                else:
                    created_at = now
                plan = dataclasses.replace(
                    plan,
                    id=plan.id or str(uuid.uuid4()),
                    assessment_id=cmd.assessment_id,
                    created_at=created_at,
                    updated_at=now,
                )
                uow.care_plans.save(plan)
                uow.commit()

        logger.info(
            "care_plan.saved",
            client_id=plan.client_id,
            plan_id=plan.id,
            is_new=is_new,
            status=plan.status.value,
        )
        return plan

    def execute(self, cmd: SaveCarePlanCommand, uow: AbstractUnitOfWork) -> SaveCarePlanResultDTO:
        plan = self.save(cmd, uow)
        validation = _validation_svc(self.settings).validate_care_plan_full(plan)
        return SaveCarePlanResultDTO(
            plan=_Assembler.care_plan(plan),
            validation=_Assembler.validation(validation),
        )


class GetCarePlanHistoryUseCase:
    """Snapshots of a plan, newest first, capped to the configured limit."""

    def __init__(self, limit: Optional[int] = None):
        self.limit = limit or get_settings().history_limit

    def execute(
        self, client_id: str, plan_id: str, uow: AbstractUnitOfWork
    ) -> List[CarePlanHistoryEntryDTO]:
        with _operation("list_care_plan_history"):
            with uow:
                entries = uow.plan_history.list_for_plan(client_id, plan_id)
        return [
            _Assembler.history_entry(e) for e in _history_svc.latest(entries, self.limit)
        ]


class ValidateCarePlanUseCase:
    def __init__(self, settings: Optional[CarePlanSettings] = None):
        self.settings = settings or get_settings()

    def execute(self, plan: CarePlan) -> ValidationResultDTO:
        result = _validation_svc(self.settings).validate_care_plan_full(
            _sync_svc.sync_plan(plan)
        )
        return _Assembler.validation(result)


# ===========================================================================
# CARE PLAN CONTROLLER
# ===========================================================================

class CarePlanController:
    """
    One care manager's editing session for one client's plans.

    Holds the working plan in memory.  Grouped-needs edits are re-synced to
    the flat fields immediately and re-validated for display; nothing is
    persisted until save_plan().  Operational failures never propagate:
    they surface as `save_message` and in the log.

    A single in-flight save per controller is allowed (`is_saving`); two
    sessions editing the same plan are not coordinated (last write wins).
    """

    def __init__(
        self,
        uow: AbstractUnitOfWork,
        client_id: str = "",
        settings: Optional[CarePlanSettings] = None,
    ):
        self._uow = uow
        self.settings = settings or get_settings()
        self.client_id = client_id
        self.needs_editor = _sync_svc
        self._validator = _validation_svc(self.settings)

        self.plan: CarePlan = self._empty_plan()
        self.plan_list: List[CarePlanSummaryDTO] = []
        self.is_loading = False
        self.is_saving = False
        self.save_message: Optional[SaveMessage] = None
        self.last_validation: ValidationResult = self._validator.validate_care_plan_full(self.plan)

    # --- Loading ------------------------------------------------------------

    def load_plan_list(self, client_id: Optional[str] = None) -> None:
        if client_id is not None:
            self.client_id = client_id
        if not self.client_id:
            self._set_plan(self._empty_plan())
            self.plan_list = []
            return

        self.is_loading = True
        try:
            listing = ListCarePlansUseCase(self.settings.legacy_plan_id).fetch(
                self.client_id, self._uow
            )
            self.plan_list = [_Assembler.summary(p) for p in listing.plans]
            selected = listing.plans[0] if listing.plans else None
            if listing.migrated_plan_id:
                selected = next(
                    (p for p in listing.plans if p.id == listing.migrated_plan_id), selected
                )
            self._set_plan(selected or self._empty_plan())
        except ApplicationError as exc:
            logger.error("care_plan.load_failed", client_id=self.client_id, error=str(exc))
            self._set_plan(self._empty_plan())
            self._set_message(SaveMessageType.ERROR, "Failed to load care plans; please try again")
        finally:
            self.is_loading = False

    def load_plan(self, plan_id: str) -> None:
        self.is_loading = True
        try:
            self._set_plan(GetCarePlanUseCase().fetch(self.client_id, plan_id, self._uow))
        except NotFoundError:
            logger.warning("care_plan.not_found", client_id=self.client_id, plan_id=plan_id)
            self._set_message(SaveMessageType.ERROR, "Care plan not found")
        except ApplicationError as exc:
            logger.error(
                "care_plan.load_failed",
                client_id=self.client_id,
                plan_id=plan_id,
                error=str(exc),
            )
            self._set_message(SaveMessageType.ERROR, "Failed to load care plan")
        finally:
            self.is_loading = False

    def load_plan_history(self, plan_id: Optional[str] = None) -> List[CarePlanHistoryEntryDTO]:
        plan_id = plan_id or self.plan.id
        if not plan_id:
            return []
        try:
            return GetCarePlanHistoryUseCase(self.settings.history_limit).execute(
                self.client_id, plan_id, self._uow
            )
        except ApplicationError as exc:
            logger.error("care_plan.history_failed", plan_id=plan_id, error=str(exc))
            self._set_message(SaveMessageType.ERROR, "Failed to load care plan history")
            return []

    # --- Editing ------------------------------------------------------------

    def create_new_plan(self) -> None:
        self._set_plan(self._empty_plan())

    def update_plan(self, **changes: Any) -> None:
        """Shallow-merge changes into the working plan; nothing is persisted."""
        if "id" in changes:
            raise ValueError("The plan id is assigned on first save and cannot be changed.")
        plan = dataclasses.replace(self.plan, **changes)
        if "needs" in changes:
            plan = _sync_svc.sync_plan(plan)
        self._set_plan(plan)

    def edit_needs(self, operation: Callable[..., CarePlan], *args: Any, **kwargs: Any) -> None:
        """
        Apply a grouped-needs mutation from NeedsSyncService, e.g.

            controller.edit_needs(controller.needs_editor.add_goal, need_id, "Walk daily")
        """
        self._set_plan(operation(self.plan, *args, **kwargs))

    # --- Saving -------------------------------------------------------------

    def save_plan(self, assessment_id: Optional[str]) -> None:
        if self.is_saving:
            logger.info("care_plan.save_skipped", plan_id=self.plan.id, reason="save in flight")
            return

        self.is_saving = True
        try:
            saved = SaveCarePlanUseCase(self.settings).save(
                SaveCarePlanCommand(
                    plan=dataclasses.replace(self.plan, client_id=self.client_id or self.plan.client_id),
                    assessment_id=assessment_id,
                ),
                self._uow,
            )
        except MissingPrerequisiteError as exc:
            logger.info("care_plan.save_refused", reason=str(exc))
            self._set_message(SaveMessageType.ERROR, "Save the assessment first")
            return
        except ApplicationError as exc:
            logger.error("care_plan.save_failed", plan_id=self.plan.id, error=str(exc))
            self._set_message(SaveMessageType.ERROR, "Failed to save care plan")
            return
        finally:
            self.is_saving = False

        self._set_plan(saved)
        self._set_message(SaveMessageType.SUCCESS, "Care plan saved")
        self._refresh_plan_list()

    # --- Save message -------------------------------------------------------

    def current_save_message(self, now: Optional[datetime] = None) -> Optional[SaveMessage]:
        """The pending save message, cleared once its display time has passed."""
        msg = self.save_message
        if msg is not None and msg.expires_at is not None and (now or _utcnow()) >= msg.expires_at:
            self.save_message = None
        return self.save_message

    # --- Internals ----------------------------------------------------------

    def _empty_plan(self) -> CarePlan:
        return CarePlan(client_id=self.client_id)

    def _set_plan(self, plan: CarePlan) -> None:
        self.plan = plan
        self.last_validation = self._validator.validate_care_plan_full(plan)

    def _set_message(self, kind: SaveMessageType, text: str) -> None:
        ttl = timedelta(seconds=self.settings.save_message_ttl_seconds)
        self.save_message = SaveMessage(type=kind, text=text, expires_at=_utcnow() + ttl)

    def _refresh_plan_list(self) -> None:
        try:
            with _operation("list_care_plans"):
                with self._uow:
                    plans = _list_plans(self._uow, self.client_id)
        except ApplicationError as exc:
            logger.warning("care_plan.list_refresh_failed", error=str(exc))
            return
        self.plan_list = [_Assembler.summary(p) for p in plans]


# ===========================================================================
# DASHBOARD AGGREGATOR
# ===========================================================================

class DashboardAggregator:
    """
    Builds the cross-client dashboard.

    Each client's recent monitoring records are fetched concurrently (at most
    `dashboard_max_concurrency` at a time), each in its own unit of work.
    A client whose fetch fails keeps its row with monitoring_status=None.
    """

    def __init__(
        self,
        uow_factory: Callable[[], AbstractUnitOfWork],
        settings: Optional[CarePlanSettings] = None,
    ):
        self._uow_factory = uow_factory
        self.settings = settings or get_settings()
        self._deadlines = _deadline_svc(self.settings)

    async def collect(
        self, clients: List[Client], today: Optional[date] = None
    ) -> List[ClientDashboardItem]:
        semaphore = asyncio.Semaphore(self.settings.dashboard_max_concurrency)

        async def fetch(client: Client) -> ClientDashboardItem:
            async with semaphore:
                return await asyncio.to_thread(self._client_item, client, today)

        results = await asyncio.gather(*(fetch(c) for c in clients), return_exceptions=True)

        items: List[ClientDashboardItem] = []
        for client, result in zip(clients, results):
            if isinstance(result, BaseException):
                logger.error(
                    "dashboard.client_item_failed", client_id=client.id, error=str(result)
                )
                continue
            items.append(result)
        return items

    async def build(self, clients: List[Client], today: Optional[date] = None) -> DashboardDTO:
        items = await self.collect(clients, today)
        summary = _dashboard_svc.compute_summary(items)
        dto_items = {
            id(item): _Assembler.dashboard_item(item, _dashboard_svc.urgency_priority(item))
            for item in items
        }
        return DashboardDTO(
            items=[dto_items[id(i)] for i in items],
            action_items=[dto_items[id(i)] for i in _dashboard_svc.filter_action_items(items)],
            summary=DashboardSummaryDTO(**dataclasses.asdict(summary)),
        )

    def _client_item(self, client: Client, today: Optional[date]) -> ClientDashboardItem:
        certification = self._deadlines.certification_status(client.certification_expiry, today)
        try:
            with self._uow_factory() as uow:
                records = uow.monitoring_records.list_for_client(
                    client.id, limit=self.settings.dashboard_monitoring_fetch_limit
                )
        except Exception as exc:
            logger.warning("dashboard.client_fetch_failed", client_id=client.id, error=str(exc))
            return ClientDashboardItem(client=client, certification_status=certification)

        if not records:
            return ClientDashboardItem(
                client=client,
                certification_status=certification,
                monitoring_status=MonitoringStatus(),
            )
        return ClientDashboardItem(
            client=client,
            certification_status=certification,
            monitoring_status=self._deadlines.monitoring_status(
                [r.visit_date for r in records], today
            ),
            needs_plan_revision=records[0].needs_plan_revision,
        )
