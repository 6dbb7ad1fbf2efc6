"""Tests for dashboard ranking and the concurrent per-client aggregator."""

from datetime import date

import pytest

from application import DashboardAggregator
from conftest import store
from infrastructure import InMemoryUnitOfWork
from model import (
    CertificationStatus,
    Client,
    ClientDashboardItem,
    DeadlineUrgency,
    MonitoringRecord,
    MonitoringStatus,
    UrgencyPriority,
)
from service import DashboardService

TODAY = date(2025, 6, 15)


def item(name, urgency=DeadlineUrgency.SAFE, monitored=True, revision=False, available=True):
    return ClientDashboardItem(
        client=Client(id=name, name=name),
        certification_status=CertificationStatus(urgency=urgency),
        monitoring_status=MonitoringStatus(is_current_month_done=monitored) if available else None,
        needs_plan_revision=revision,
    )


@pytest.fixture
def dashboard():
    return DashboardService()


class TestUrgencyPriority:

    @pytest.mark.parametrize(
        "row, expected",
        [
            (item("a", DeadlineUrgency.EXPIRED, monitored=False), UrgencyPriority.CERTIFICATION_EXPIRED),
            (item("b", DeadlineUrgency.CRITICAL, monitored=False), UrgencyPriority.CERTIFICATION_CRITICAL),
            (item("c", DeadlineUrgency.WARNING, monitored=False), UrgencyPriority.MONITORING_NOT_DONE),
            (item("d", DeadlineUrgency.WARNING, revision=True), UrgencyPriority.CERTIFICATION_WARNING),
            (item("e", revision=True), UrgencyPriority.PLAN_NEEDS_REVISION),
            (item("f", DeadlineUrgency.UNKNOWN), UrgencyPriority.NONE),
            (item("g"), UrgencyPriority.NONE),
        ],
    )
    def test_fixed_precedence(self, dashboard, row, expected):
        assert dashboard.urgency_priority(row) == expected

    def test_unavailable_monitoring_is_not_flagged(self, dashboard):
        assert dashboard.urgency_priority(item("x", available=False)) == UrgencyPriority.NONE


class TestActionItems:

    def test_expired_then_monitoring_then_warning(self, dashboard):
        expired = item("expired", DeadlineUrgency.EXPIRED)
        warning = item("warning", DeadlineUrgency.WARNING)
        unmonitored = item("unmonitored", monitored=False)

        result = dashboard.filter_action_items([expired, warning, unmonitored])

        assert result == [expired, unmonitored, warning]

    def test_equal_priorities_keep_input_order(self, dashboard):
        rows = [item(name, monitored=False) for name in ("c", "a", "b")]

        assert dashboard.filter_action_items(rows) == rows

    def test_rows_without_action_are_dropped(self, dashboard):
        rows = [item("ok"), item("rev", revision=True)]

        result = dashboard.filter_action_items(rows)

        assert [r.client.id for r in result] == ["rev"]
        assert len(rows) == 2


def test_summary_counts(dashboard):
    rows = [
        item("a", DeadlineUrgency.EXPIRED),
        item("b", DeadlineUrgency.WARNING, monitored=False, revision=True),
        item("c", DeadlineUrgency.SAFE),
        item("d", DeadlineUrgency.UNKNOWN, available=False),
    ]

    summary = dashboard.compute_summary(rows)

    assert summary.total_clients == 4
    assert summary.monitoring_done == 2
    assert summary.monitoring_remaining == 2
    assert summary.certification_alerts == 2
    assert summary.plan_revision_needed == 1


class TestDashboardAggregator:

    @pytest.fixture
    def clients(self):
        return [
            Client(id="c1", name="Aiko", certification_expiry="2025-06-01"),
            Client(id="c2", name="Ben", certification_expiry="2025-08-01"),
            Client(id="c3", name="Chie", certification_expiry=""),
        ]

    @pytest.fixture
    def seeded(self, uow):
        store(
            uow,
            MonitoringRecord(client_id="c1", care_plan_id="p", visit_date=date(2025, 6, 3)),
            MonitoringRecord(
                client_id="c2",
                care_plan_id="p",
                visit_date=date(2025, 5, 10),
                needs_plan_revision=True,
            ),
            MonitoringRecord(client_id="c2", care_plan_id="p", visit_date=date(2025, 4, 10)),
        )

    @pytest.mark.asyncio
    async def test_collects_one_row_per_client(self, uow_factory, clients, seeded, settings):
        rows = await DashboardAggregator(uow_factory, settings).collect(clients, today=TODAY)

        by_id = {r.client.id: r for r in rows}
        assert list(by_id) == ["c1", "c2", "c3"]
        assert by_id["c1"].certification_status.urgency == DeadlineUrgency.EXPIRED
        assert by_id["c1"].monitoring_status.is_current_month_done is True
        assert by_id["c2"].monitoring_status.last_visit_date == date(2025, 5, 10)
        assert by_id["c2"].needs_plan_revision is True
        assert by_id["c3"].certification_status.urgency == DeadlineUrgency.UNKNOWN
        assert by_id["c3"].monitoring_status.last_visit_date is None

    @pytest.mark.asyncio
    async def test_failed_fetch_keeps_the_row(self, db, clients, seeded, settings):
        def factory():
            uow = InMemoryUnitOfWork(db)
            original = uow.monitoring_records.list_for_client

            def list_for_client(client_id, limit=None):
                if client_id == "c2":
                    raise TimeoutError("store unavailable")
                return original(client_id, limit=limit)

            uow.monitoring_records.list_for_client = list_for_client
            return uow

        rows = await DashboardAggregator(factory, settings).collect(clients, today=TODAY)

        assert [r.client.id for r in rows] == ["c1", "c2", "c3"]
        broken = rows[1]
        assert broken.monitoring_status is None
        assert broken.certification_status.urgency == DeadlineUrgency.WARNING
        assert rows[0].monitoring_status is not None

    @pytest.mark.asyncio
    async def test_only_newest_records_are_read(self, uow, uow_factory, settings):
        store(uow, *[
            MonitoringRecord(client_id="c1", care_plan_id="p", visit_date=date(2025, m, 1))
            for m in range(1, 7)
        ])
        seen = []

        def factory():
            u = uow_factory()
            original = u.monitoring_records.list_for_client

            def list_for_client(client_id, limit=None):
                records = original(client_id, limit=limit)
                seen.extend(records)
                return records

            u.monitoring_records.list_for_client = list_for_client
            return u

        await DashboardAggregator(factory, settings).collect([Client(id="c1")], today=TODAY)

        assert len(seen) == settings.dashboard_monitoring_fetch_limit
        assert seen[0].visit_date == date(2025, 6, 1)

    @pytest.mark.asyncio
    async def test_build_ranks_and_summarises(self, uow_factory, clients, seeded, settings):
        result = await DashboardAggregator(uow_factory, settings).build(clients, today=TODAY)

        assert [i.client_id for i in result.items] == ["c1", "c2", "c3"]
        assert [i.client_id for i in result.action_items] == ["c1", "c2", "c3"]
        assert result.action_items[1].priority == UrgencyPriority.MONITORING_NOT_DONE
        assert result.summary.total_clients == 3
        assert result.summary.monitoring_done == 1
        assert result.summary.certification_alerts == 2

    @pytest.mark.asyncio
    async def test_empty_client_list(self, uow_factory, settings):
        result = await DashboardAggregator(uow_factory, settings).build([], today=TODAY)

        assert result.items == []
        assert result.summary.total_clients == 0
