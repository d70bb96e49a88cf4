"""Tests for the role views served to polling clients."""

import pytest

from resq.dispatch.models import Assignment
from resq.dispatch.repositories import AssignmentRepository, ReportRepository, UserRepository
from resq.sync.views import (
    CitizenView,
    CoordinatorView,
    ResponderView,
    fetch_citizen_view,
    fetch_coordinator_view,
    fetch_responder_view,
    fetch_view,
)


@pytest.fixture
async def report(coordinator, citizen):
    return await coordinator.submit_report(citizen.id, "fire", "Smoke", "1,2")


class TestCoordinatorView:
    async def test_dashboard_and_roster(
        self, store, coordinator, report, responder, second_responder
    ):
        await coordinator.assign_responder(report.id, responder.id)

        view = await fetch_coordinator_view(store)

        assert [r.id for r in view.dashboard.board["fire"]] == [report.id]
        roster = {s.id: s for s in view.responders}
        assert roster[responder.id].availability == "busy"
        assert len(roster[responder.id].active_assignment_ids) == 1
        assert roster[second_responder.id].availability == "idle"

    async def test_availability_is_derived(self, store, responder):
        users = UserRepository(store)
        drifted = await users.get(responder.id)
        drifted.availability = "busy"
        await users.upsert(drifted)

        view = await fetch_coordinator_view(store)

        assert view.responders[0].availability == "idle"
        assert view.responders[0].stored_availability == "busy"


class TestResponderView:
    async def test_tasks_and_active_task(self, store, coordinator, report, responder):
        assignment = await coordinator.assign_responder(report.id, responder.id)

        view = await fetch_responder_view(store, responder.id)
        assert view.availability == "busy"
        assert [t.assignment.id for t in view.tasks] == [assignment.id]
        assert view.tasks[0].report.id == report.id
        assert view.active_task is None

        await coordinator.accept_assignment(assignment.id)
        view = await fetch_responder_view(store, responder.id)
        assert view.active_task.assignment.status == "accepted"

    async def test_completed_missions_counted_not_listed(
        self, store, coordinator, report, responder
    ):
        assignment = await coordinator.assign_responder(report.id, responder.id)
        await coordinator.accept_assignment(assignment.id)
        await coordinator.advance(assignment.id, "on_site")
        await coordinator.advance(assignment.id, "completed")

        view = await fetch_responder_view(store, responder.id)

        assert view.tasks == []
        assert view.completed_count == 1
        assert view.availability == "idle"

    async def test_missing_report_is_omitted(self, store, responder):
        await AssignmentRepository(store).upsert(
            Assignment(report_id="vanished", responder_id=responder.id)
        )

        view = await fetch_responder_view(store, responder.id)

        assert view.tasks == []


class TestCitizenView:
    async def test_en_route_flag(self, store, coordinator, citizen, report, responder):
        view = await fetch_citizen_view(store, citizen.id)
        assert view.responder_en_route is False
        assert view.reports[0].assignment_status is None

        assignment = await coordinator.assign_responder(report.id, responder.id)
        view = await fetch_citizen_view(store, citizen.id)
        assert view.responder_en_route is False
        assert view.reports[0].assignment_status == "dispatched"

        await coordinator.accept_assignment(assignment.id)
        assert (await fetch_citizen_view(store, citizen.id)).responder_en_route is True

        await coordinator.advance(assignment.id, "on_site")
        assert (await fetch_citizen_view(store, citizen.id)).responder_en_route is True

        await coordinator.advance(assignment.id, "completed")
        view = await fetch_citizen_view(store, citizen.id)
        assert view.responder_en_route is False
        assert view.reports[0].assignment_status == "completed"

    async def test_only_own_reports(self, store, coordinator, citizen, report):
        other = await UserRepository(store).upsert(
            citizen.model_copy(update={"id": "c2", "email": "other@resq.com", "etag": None})
        )
        await coordinator.submit_report(other.id, "flood", "Water", "1,2")

        view = await fetch_citizen_view(store, citizen.id)

        assert [r.report.id for r in view.reports] == [report.id]
        assert len(await ReportRepository(store).all()) == 2

    async def test_includes_status_and_feeds(self, store, citizen):
        view = await fetch_citizen_view(store, citizen.id)

        assert view.citizen_status == "safe"
        assert [c["id"] for c in view.evacuation_centers] == ["e1", "e2", "e3"]
        assert view.news[0]["id"] == "n1"


class TestFetchView:
    async def test_dispatches_on_role(self, store, citizen, responder, coordinator_user):
        assert isinstance(await fetch_view(store, coordinator_user), CoordinatorView)
        assert isinstance(await fetch_view(store, responder), ResponderView)
        assert isinstance(await fetch_view(store, citizen), CitizenView)
