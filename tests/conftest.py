"""Shared fixtures: an isolated in-memory database per test and plan builders."""

from datetime import date
from typing import Callable, List, Optional

import pytest

from config import CarePlanSettings
from infrastructure import InMemoryDatabase, InMemoryUnitOfWork
from model import CareGoal, CarePlan, CarePlanNeed, CarePlanService
from service import NeedsSyncService


@pytest.fixture
def settings() -> CarePlanSettings:
    return CarePlanSettings(_env_file=None)


@pytest.fixture
def db() -> InMemoryDatabase:
    return InMemoryDatabase()


@pytest.fixture
def uow_factory(db) -> Callable[[], InMemoryUnitOfWork]:
    return lambda: InMemoryUnitOfWork(db)


@pytest.fixture
def uow(uow_factory) -> InMemoryUnitOfWork:
    return uow_factory()


def make_need(
    content: str = "Wants to keep walking to the shops",
    long_term_goal: str = "Live independently at home",
    goals: Optional[List[str]] = None,
    services: Optional[List[str]] = None,
) -> CarePlanNeed:
    goals = ["Walk 20 minutes daily"] if goals is None else goals
    services = ["Day-care rehabilitation"] if services is None else services
    return CarePlanNeed(
        content=content,
        long_term_goal=long_term_goal,
        short_term_goals=[CareGoal(content=g) for g in goals],
        services=[CarePlanService(content=s, type="day_care", frequency="2/week") for s in services],
    )


def make_plan(
    client_id: str = "client-1",
    needs: Optional[List[CarePlanNeed]] = None,
    assessment_date: Optional[date] = date(2025, 1, 1),
    draft_date: Optional[date] = date(2025, 1, 10),
    **fields,
) -> CarePlan:
    """A plan whose flat goal fields are already in sync with its needs."""
    plan = CarePlan(
        client_id=client_id,
        assessment_date=assessment_date,
        draft_date=draft_date,
        needs=[make_need()] if needs is None else needs,
        **fields,
    )
    return NeedsSyncService().sync_plan(plan)


def store(uow: InMemoryUnitOfWork, *objects) -> None:
    """Commit objects straight into the database, bypassing use cases."""
    repos = {
        "CarePlan": uow.care_plans,
        "CarePlanHistoryEntry": uow.plan_history,
        "MonitoringRecord": uow.monitoring_records,
        "SupportRecord": uow.support_records,
        "ServiceMeetingRecord": uow.meeting_records,
    }
    with uow:
        for obj in objects:
            repos[type(obj).__name__].save(obj)
        uow.commit()
