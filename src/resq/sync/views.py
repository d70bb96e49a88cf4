"""Role-specific materialized views served to the polling clients.

Each ``fetch_*`` function reads the shared collections and returns the
complete view for one role. Views are read-only: they never write, so any
actor may fetch at any cadence. Records that reference a missing report
are left out of the view rather than raised.
"""

import logging
from collections.abc import Awaitable, Callable
from dataclasses import asdict

from pydantic import BaseModel

from resq.core.config import get_config
from resq.dispatch.availability import availability_map
from resq.dispatch.dashboard import Dashboard, derive_dashboard
from resq.dispatch.models import EN_ROUTE_STATUSES, Assignment, Report, User
from resq.dispatch.repositories import AssignmentRepository, ReportRepository, UserRepository
from resq.store.records import RecordStore

logger = logging.getLogger(__name__)


class ResponderSummary(BaseModel):
    """A responder as shown on the coordinator's roster."""

    id: str
    full_name: str
    email: str
    is_verified: bool
    availability: str
    """Derived from active assignments."""
    stored_availability: str | None
    """Flag on the user record; may lag ``availability`` until the next sweep."""
    active_assignment_ids: list[str] = []


class CoordinatorView(BaseModel):
    role: str = "coordinator"
    dashboard: Dashboard
    responders: list[ResponderSummary]


class Task(BaseModel):
    """An assignment joined with the report it targets."""

    assignment: Assignment
    report: Report


class ResponderView(BaseModel):
    role: str = "responder"
    responder_id: str
    availability: str
    tasks: list[Task]
    """Active assignments, oldest first."""
    active_task: Task | None = None
    """The accepted or on-site mission, if any."""
    completed_count: int = 0


class CitizenReport(BaseModel):
    report: Report
    assignment_status: str | None = None


class CitizenView(BaseModel):
    role: str = "citizen"
    citizen_id: str
    citizen_status: str | None
    reports: list[CitizenReport]
    responder_en_route: bool
    evacuation_centers: list[dict] = []
    news: list[dict] = []


async def fetch_coordinator_view(store: RecordStore) -> CoordinatorView:
    """All reports (as a dashboard) and every responder with derived availability."""
    reports = await ReportRepository(store).list()
    responders = await UserRepository(store).list(role="responder")
    assignments = await AssignmentRepository(store).all()

    derived = availability_map(responders, assignments)
    summaries = []
    for responder in responders:
        active = [a.id for a in assignments if a.responder_id == responder.id and a.is_active]
        if responder.availability != derived[responder.id]:
            logger.debug(
                "Responder %s stored %s but derived %s",
                responder.id,
                responder.availability,
                derived[responder.id],
            )
        summaries.append(
            ResponderSummary(
                id=responder.id,
                full_name=responder.full_name,
                email=responder.email,
                is_verified=responder.is_verified,
                availability=derived[responder.id],
                stored_availability=responder.availability,
                active_assignment_ids=active,
            )
        )

    return CoordinatorView(dashboard=derive_dashboard(reports), responders=summaries)


async def fetch_responder_view(store: RecordStore, responder_id: str) -> ResponderView:
    """The responder's own assignments joined with their reports."""
    assignments = await AssignmentRepository(store).list(responder_id=responder_id)
    reports = {r.id: r for r in await ReportRepository(store).all()}

    tasks = []
    completed = 0
    for assignment in assignments:
        if not assignment.is_active:
            completed += 1
            continue
        report = reports.get(assignment.report_id)
        if report is None:
            logger.warning(
                "Assignment %s references missing report %s; omitted from view",
                assignment.id,
                assignment.report_id,
            )
            continue
        tasks.append(Task(assignment=assignment, report=report))

    active_task = next((t for t in tasks if t.assignment.status in EN_ROUTE_STATUSES), None)
    return ResponderView(
        responder_id=responder_id,
        availability="busy" if tasks else "idle",
        tasks=tasks,
        active_task=active_task,
        completed_count=completed,
    )


async def fetch_citizen_view(store: RecordStore, citizen_id: str) -> CitizenView:
    """The citizen's own reports plus whether a responder is on the way."""
    citizen = await UserRepository(store).get(citizen_id)
    reports = await ReportRepository(store).list(owner_id=citizen_id)
    by_report: dict[str, Assignment] = {}
    for assignment in await AssignmentRepository(store).all():
        if assignment.is_active or assignment.report_id not in by_report:
            by_report[assignment.report_id] = assignment

    entries = []
    en_route = False
    for report in reports:
        assignment = by_report.get(report.id)
        status = assignment.status if assignment else None
        if report.status != "resolved" and status in EN_ROUTE_STATUSES:
            en_route = True
        entries.append(CitizenReport(report=report, assignment_status=status))

    config = get_config()
    return CitizenView(
        citizen_id=citizen_id,
        citizen_status=citizen.citizen_status if citizen else None,
        reports=entries,
        responder_en_route=en_route,
        evacuation_centers=[asdict(c) for c in config.evacuation_centers],
        news=[asdict(n) for n in config.news],
    )


def view_fetcher(user: User) -> Callable[[RecordStore], Awaitable[BaseModel]]:
    """The fetch function matching a user's role."""
    if user.role == "coordinator":
        return fetch_coordinator_view
    if user.role == "responder":
        return lambda store: fetch_responder_view(store, user.id)
    return lambda store: fetch_citizen_view(store, user.id)


async def fetch_view(store: RecordStore, user: User) -> BaseModel:
    """Fetch the view appropriate to a user's role."""
    return await view_fetcher(user)(store)
