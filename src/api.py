"""
api.py

REST API layer for the Care-Plan Consistency & Versioning Engine.

Framework : FastAPI
Auth      : none at this layer; the care manager's identity is resolved by
            the hosting platform before requests reach these routes.

Structure
---------
  Routers (all prefixed under /api/v1)
  ├── /clients/{client_id}/care-plans           — list & save plans
  │   ├── /{plan_id}                            — load one plan
  │   ├── /{plan_id}/history                    — pre-save snapshots
  │   └── /migrate-legacy                       — legacy id migration
  ├── /care-plans/validate                      — validate an unsaved plan
  └── /dashboard                                — cross-client deadlines

Error handling
--------------
  NotFoundError         → 404
  OperationFailedError  → 503
  ApplicationError      → 422  (incl. MissingPrerequisiteError)
  ValueError            → 422
  Unhandled             → 500 (FastAPI default)

Response envelope
-----------------
  Success  : { "data": <payload> }
  Error    : { "detail": "<message>" }

Running
-------
  uvicorn main:app --reload
"""

from __future__ import annotations

import dataclasses
import uuid
from contextlib import asynccontextmanager
from datetime import date
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

import structlog
from fastapi import APIRouter, Depends, FastAPI, Path
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi_mcp import FastApiMCP
from pydantic import BaseModel, Field, field_validator

from application import (
    # Exceptions
    ApplicationError,
    NotFoundError,
    OperationFailedError,
    AbstractUnitOfWork,
)
from config import get_settings
from infrastructure import InMemoryUnitOfWork
from logging_config import configure_logging
from model import (
    CareGoal,
    CarePlan,
    CarePlanNeed,
    CarePlanService,
    CarePlanStatus,
    Client,
    DayOfWeek,
    GoalStatus,
    WeeklySchedule,
    WeeklyServiceEntry,
)

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# App bootstrap
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings = get_settings()
    configure_logging()
    logger.info("careplan.api.starting", env=settings.env)
    yield
    logger.info("careplan.api.stopping")


app = FastAPI(
    title="Care-Plan Consistency & Versioning Engine API",
    version="1.0.0",
    description=(
        "REST API for long-term-care plans: golden-thread date validation, "
        "needs/goals consistency, pre-save history snapshots, legacy id "
        "migration, and the certification / monitoring deadline dashboard."
    ),
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Global exception handlers
# ---------------------------------------------------------------------------

@app.exception_handler(NotFoundError)
async def not_found_handler(request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(OperationFailedError)
async def operation_failed_handler(request, exc: OperationFailedError):
    logger.error("api.operation_failed", operation=exc.operation, error=str(exc.cause))
    return JSONResponse(
        status_code=503,
        content={"detail": f"{exc.operation} is temporarily unavailable; please retry."},
    )


@app.exception_handler(ApplicationError)
async def application_error_handler(request, exc: ApplicationError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


@app.exception_handler(ValueError)
async def value_error_handler(request, exc: ValueError):
    return JSONResponse(status_code=422, content={"detail": str(exc)})


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def get_uow() -> AbstractUnitOfWork:
    """Returns the in-memory Unit of Work (no database required)."""
    return InMemoryUnitOfWork()


def get_uow_factory() -> Callable[[], AbstractUnitOfWork]:
    """Factory handed to the dashboard, which opens one unit of work per client."""
    return InMemoryUnitOfWork


# ---------------------------------------------------------------------------
# Envelope helper
# ---------------------------------------------------------------------------

def _ok(data: Any) -> Dict:
    """Wrap a DTO or list of DTOs in the standard success envelope."""
    if dataclasses.is_dataclass(data):
        return {"data": dataclasses.asdict(data)}
    if isinstance(data, list):
        return {
            "data": [
                dataclasses.asdict(item) if dataclasses.is_dataclass(item) else item
                for item in data
            ]
        }
    return {"data": data}


# ===========================================================================
# REQUEST BODY SCHEMAS  (Pydantic v2)
# ===========================================================================

def _blank_to_none(v: Any) -> Any:
    if isinstance(v, str) and not v.strip():
        return None
    return v


def _id_or_new(value: Optional[str]) -> str:
    return value or str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Needs, goals and services
# ---------------------------------------------------------------------------

class CareGoalRequest(BaseModel):
    id: Optional[str] = None
    content: str = Field(default="", max_length=2000)
    status: str = Field(default=GoalStatus.NOT_STARTED.value)
    start_date: Optional[date] = None
    end_date: Optional[date] = None

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: str) -> str:
        valid = {s.value for s in GoalStatus}
        if v not in valid:
            raise ValueError(f"status must be one of: {sorted(valid)}")
        return v

    @field_validator("start_date", "end_date", mode="before")
    @classmethod
    def blank_dates(cls, v: Any) -> Any:
        return _blank_to_none(v)

    def to_domain(self) -> CareGoal:
        return CareGoal(
            id=_id_or_new(self.id),
            content=self.content,
            status=GoalStatus(self.status),
            start_date=self.start_date,
            end_date=self.end_date,
        )


class CarePlanServiceRequest(BaseModel):
    id: Optional[str] = None
    content: str = Field(default="", max_length=2000)
    type: str = Field(default="", max_length=200)
    frequency: str = Field(default="", max_length=200)

    def to_domain(self) -> CarePlanService:
        return CarePlanService(
            id=_id_or_new(self.id),
            content=self.content,
            type=self.type,
            frequency=self.frequency,
        )


class CarePlanNeedRequest(BaseModel):
    id: Optional[str] = None
    content: str = Field(default="", max_length=2000)
    long_term_goal: str = Field(default="", max_length=2000)
    long_term_goal_start_date: Optional[date] = None
    long_term_goal_end_date: Optional[date] = None
    short_term_goals: List[CareGoalRequest] = Field(default_factory=list)
    services: List[CarePlanServiceRequest] = Field(default_factory=list)

    @field_validator("long_term_goal_start_date", "long_term_goal_end_date", mode="before")
    @classmethod
    def blank_dates(cls, v: Any) -> Any:
        return _blank_to_none(v)

    def to_domain(self) -> CarePlanNeed:
        return CarePlanNeed(
            id=_id_or_new(self.id),
            content=self.content,
            long_term_goal=self.long_term_goal,
            long_term_goal_start_date=self.long_term_goal_start_date,
            long_term_goal_end_date=self.long_term_goal_end_date,
            short_term_goals=[g.to_domain() for g in self.short_term_goals],
            services=[s.to_domain() for s in self.services],
        )


# ---------------------------------------------------------------------------
# Weekly schedule
# ---------------------------------------------------------------------------

class WeeklyServiceEntryRequest(BaseModel):
    id: Optional[str] = None
    service_type: str = ""
    provider: str = ""
    content: str = ""
    days: List[str] = Field(default_factory=list, description="Subset of mon..sun")
    start_time: str = Field(default="", description="HH:MM")
    end_time: str = Field(default="", description="HH:MM")
    frequency: str = ""
    notes: str = ""

    @field_validator("days")
    @classmethod
    def validate_days(cls, v: List[str]) -> List[str]:
        valid = {d.value for d in DayOfWeek}
        unknown = [d for d in v if d not in valid]
        if unknown:
            raise ValueError(f"days must be drawn from: {sorted(valid)}")
        return v

    def to_domain(self) -> WeeklyServiceEntry:
        return WeeklyServiceEntry(
            id=_id_or_new(self.id),
            service_type=self.service_type,
            provider=self.provider,
            content=self.content,
            days=[DayOfWeek(d) for d in self.days],
            start_time=self.start_time,
            end_time=self.end_time,
            frequency=self.frequency,
            notes=self.notes,
        )


class WeeklyScheduleRequest(BaseModel):
    entries: List[WeeklyServiceEntryRequest] = Field(default_factory=list)
    main_activities: str = ""
    weekly_note: str = ""

    def to_domain(self) -> WeeklySchedule:
        return WeeklySchedule(
            entries=[e.to_domain() for e in self.entries],
            main_activities=self.main_activities,
            weekly_note=self.weekly_note,
        )


# ---------------------------------------------------------------------------
# Care plan
# ---------------------------------------------------------------------------

class CarePlanRequest(BaseModel):
    id: str = Field(default="", description="Empty for a plan that was never saved.")
    status: str = Field(default=CarePlanStatus.DRAFT.value)

    assessment_date: Optional[date] = None
    draft_date: Optional[date] = None
    meeting_date: Optional[date] = None
    consent_date: Optional[date] = None
    delivery_date: Optional[date] = None

    long_term_goal: str = ""
    long_term_goal_start_date: Optional[date] = None
    long_term_goal_end_date: Optional[date] = None
    short_term_goals: List[CareGoalRequest] = Field(default_factory=list)
    needs: Optional[List[CarePlanNeedRequest]] = None

    total_direction_policy: Optional[str] = None
    user_intention: Optional[str] = None
    family_intention: Optional[str] = None
    weekly_schedule: Optional[WeeklyScheduleRequest] = None

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: str) -> str:
        valid = {s.value for s in CarePlanStatus}
        if v not in valid:
            raise ValueError(f"status must be one of: {sorted(valid)}")
        return v

    @field_validator(
        "assessment_date",
        "draft_date",
        "meeting_date",
        "consent_date",
        "delivery_date",
        "long_term_goal_start_date",
        "long_term_goal_end_date",
        mode="before",
    )
    @classmethod
    def blank_dates(cls, v: Any) -> Any:
        return _blank_to_none(v)

    def to_domain(self, client_id: str = "") -> CarePlan:
        return CarePlan(
            id=self.id,
            client_id=client_id,
            status=CarePlanStatus(self.status),
            assessment_date=self.assessment_date,
            draft_date=self.draft_date,
            meeting_date=self.meeting_date,
            consent_date=self.consent_date,
            delivery_date=self.delivery_date,
            long_term_goal=self.long_term_goal,
            long_term_goal_start_date=self.long_term_goal_start_date,
            long_term_goal_end_date=self.long_term_goal_end_date,
            short_term_goals=[g.to_domain() for g in self.short_term_goals],
            needs=[n.to_domain() for n in self.needs] if self.needs is not None else None,
            total_direction_policy=self.total_direction_policy,
            user_intention=self.user_intention,
            family_intention=self.family_intention,
            weekly_schedule=self.weekly_schedule.to_domain() if self.weekly_schedule else None,
        )


class SaveCarePlanRequest(CarePlanRequest):
    assessment_id: Optional[str] = Field(
        default=None, description="Assessment the plan was drafted from; required to save."
    )


# ---------------------------------------------------------------------------
# Dashboard
# ---------------------------------------------------------------------------

class ClientRequest(BaseModel):
    id: str = Field(..., min_length=1)
    name: str = ""
    certification_expiry: Optional[str] = Field(
        default=None, description="YYYY-MM-DD; blank or malformed values rank as unknown."
    )

    def to_domain(self) -> Client:
        return Client(id=self.id, name=self.name, certification_expiry=self.certification_expiry)


class DashboardRequest(BaseModel):
    clients: List[ClientRequest] = Field(default_factory=list)
    today: Optional[date] = Field(default=None, description="Defaults to the server's date.")


# ===========================================================================
# ROUTERS
# ===========================================================================

api_v1 = APIRouter(prefix="/api/v1")


# ---------------------------------------------------------------------------
# Care plans
# ---------------------------------------------------------------------------

care_plan_router = APIRouter(prefix="/clients/{client_id}/care-plans", tags=["Care Plans"])


@care_plan_router.get(
    "",
    summary="List a client's care plans, newest first",
)
def list_care_plans(
    client_id: str = Path(..., min_length=1),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    """
    Plans still stored under the legacy literal id are migrated to a fresh
    UUID before the list is returned.
    """
    from application import ListCarePlansUseCase
    result = ListCarePlansUseCase().execute(client_id, uow)
    return _ok(result)


@care_plan_router.post(
    "",
    summary="Save a care plan",
    response_description="The saved plan and its validation result.",
)
def save_care_plan(
    body: SaveCarePlanRequest,
    client_id: str = Path(..., min_length=1),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    """
    A plan without an id is created; a plan with an id overwrites the stored
    version after that version has been copied into history.  Validation
    errors do not block saving; they are returned alongside the plan.
    """
    from application import SaveCarePlanCommand, SaveCarePlanUseCase
    cmd = SaveCarePlanCommand(
        plan=body.to_domain(client_id),
        assessment_id=body.assessment_id,
    )
    result = SaveCarePlanUseCase().execute(cmd, uow)
    return _ok(result)


@care_plan_router.post(
    "/migrate-legacy",
    summary="Migrate a plan stored under the legacy id",
)
def migrate_legacy_care_plan(
    client_id: str = Path(..., min_length=1),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    """Returns the new plan id, or null when there was nothing to migrate."""
    from application import MigrateLegacyCarePlanUseCase
    new_id = MigrateLegacyCarePlanUseCase().execute(client_id, uow)
    return _ok({"migrated_plan_id": new_id})


@care_plan_router.get(
    "/{plan_id}",
    summary="Get a care plan by ID",
)
def get_care_plan(
    client_id: str = Path(..., min_length=1),
    plan_id: str = Path(..., min_length=1),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import GetCarePlanUseCase
    result = GetCarePlanUseCase().execute(client_id, plan_id, uow)
    return _ok(result)


@care_plan_router.get(
    "/{plan_id}/history",
    summary="List a care plan's history snapshots, newest first",
)
def get_care_plan_history(
    client_id: str = Path(..., min_length=1),
    plan_id: str = Path(..., min_length=1),
    uow: AbstractUnitOfWork = Depends(get_uow),
):
    from application import GetCarePlanHistoryUseCase
    result = GetCarePlanHistoryUseCase().execute(client_id, plan_id, uow)
    return _ok(result)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

validation_router = APIRouter(prefix="/care-plans", tags=["Validation"])


@validation_router.post(
    "/validate",
    summary="Validate an unsaved care plan",
)
def validate_care_plan(body: CarePlanRequest):
    """Runs the date-chain and needs/goals checks; nothing is persisted."""
    from application import ValidateCarePlanUseCase
    result = ValidateCarePlanUseCase().execute(body.to_domain())
    return _ok(result)


# ---------------------------------------------------------------------------
# Dashboard
# ---------------------------------------------------------------------------

dashboard_router = APIRouter(prefix="/dashboard", tags=["Dashboard"])


@dashboard_router.post(
    "",
    summary="Build the deadline dashboard for the given clients",
)
async def build_dashboard(
    body: DashboardRequest,
    uow_factory: Callable[[], AbstractUnitOfWork] = Depends(get_uow_factory),
):
    """
    Every posted client gets a row.  A client whose monitoring records could
    not be fetched is reported with `monitoring_available: false`.
    """
    from application import DashboardAggregator
    result = await DashboardAggregator(uow_factory).build(
        [c.to_domain() for c in body.clients], today=body.today
    )
    return _ok(result)


# ---------------------------------------------------------------------------
# Register all routers
# ---------------------------------------------------------------------------

api_v1.include_router(care_plan_router)
api_v1.include_router(validation_router)
api_v1.include_router(dashboard_router)

app.include_router(api_v1)

# ---------------------------------------------------------------------------
# MCP Server — exposes all API routes as MCP tools
# Accessible at: http://localhost:8000/mcp
# ---------------------------------------------------------------------------
mcp = FastApiMCP(app)
mcp.mount()


# ===========================================================================
# HEALTH CHECK
# ===========================================================================

@app.get("/health", tags=["Health"], summary="Service health check")
def health():
    return {"status": "ok"}


# ===========================================================================
# OPENAPI CUSTOMISATION — tag order and descriptions
# ===========================================================================

tags_metadata = [
    {
        "name": "Health",
        "description": "Liveness check.",
    },
    {
        "name": "Care Plans",
        "description": (
            "Load, list and save a client's care plans.  Every overwrite first "
            "copies the stored version into the plan's history, and plans under "
            "the legacy literal id are migrated to a UUID on listing."
        ),
    },
    {
        "name": "Validation",
        "description": (
            "Golden-thread date order (assessment ≤ draft ≤ meeting ≤ consent) "
            "and needs/goals consistency.  Errors block legal compliance; "
            "warnings are advisory."
        ),
    },
    {
        "name": "Dashboard",
        "description": (
            "Certification-expiry urgency and monthly monitoring status per "
            "client, with a ranked action list and summary counts."
        ),
    },
]

app.openapi_tags = tags_metadata
