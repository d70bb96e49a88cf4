"""Responder availability derivation and invariant auditing.

A responder is ``busy`` exactly when it holds at least one active
assignment. The flag stored on the user record is only a hint written
eagerly by the coordinator; readers call ``derive_availability`` and the
background sweep calls ``reconcile_availability`` to repair drift.
"""

import logging
from collections import Counter

from resq.dispatch.models import Assignment, Availability, Report, User
from resq.dispatch.repositories import AssignmentRepository, UserRepository
from resq.store.records import RecordStore, WriteConflictError

logger = logging.getLogger(__name__)


def derive_availability(responder_id: str, assignments: list[Assignment]) -> Availability:
    """Availability implied by the assignment set."""
    if any(a.responder_id == responder_id and a.is_active for a in assignments):
        return "busy"
    return "idle"


def availability_map(
    responders: list[User], assignments: list[Assignment]
) -> dict[str, Availability]:
    """Derived availability for each responder, keyed by user ID."""
    busy = {a.responder_id for a in assignments if a.is_active}
    return {r.id: ("busy" if r.id in busy else "idle") for r in responders}


def check_invariants(
    users: list[User],
    reports: list[Report],
    assignments: list[Assignment],
) -> list[str]:
    """List every consistency violation across the three collections.

    Returns:
        Human-readable violation messages (empty when consistent)
    """
    violations: list[str] = []
    users_by_id = {u.id: u for u in users}
    report_ids = {r.id for r in reports}

    active_per_report = Counter(a.report_id for a in assignments if a.is_active)
    completed_reports = {a.report_id for a in assignments if a.status == "completed"}
    for report in reports:
        active = active_per_report.get(report.id, 0)
        if active > 1:
            violations.append(f"Report {report.id} has {active} active assignments")
        if report.status == "assigned" and active != 1:
            violations.append(f"Report {report.id} is assigned with {active} active assignments")
        if report.status != "assigned" and active:
            violations.append(
                f"Report {report.id} is {report.status} but has an active assignment"
            )
        if report.status == "resolved" and report.id not in completed_reports:
            violations.append(f"Report {report.id} is resolved without a completed assignment")

    active_per_responder = Counter(a.responder_id for a in assignments if a.is_active)
    for user in users:
        if user.role != "responder":
            continue
        active = active_per_responder.get(user.id, 0)
        if active > 1:
            violations.append(f"Responder {user.id} holds {active} active assignments")
        derived = "busy" if active else "idle"
        if user.availability != derived:
            violations.append(
                f"Responder {user.id} stored as {user.availability}, derived {derived}"
            )

    for assignment in assignments:
        if assignment.report_id not in report_ids:
            violations.append(
                f"Assignment {assignment.id} references missing report {assignment.report_id}"
            )
        responder = users_by_id.get(assignment.responder_id)
        if responder is None or responder.role != "responder":
            violations.append(
                f"Assignment {assignment.id} references missing responder "
                f"{assignment.responder_id}"
            )

    return violations


async def reconcile_availability(store: RecordStore) -> list[str]:
    """Rewrite stored responder flags that disagree with the assignment set.

    Each correction is its own compare-and-swap write; a responder that
    changed concurrently is skipped and picked up by the next sweep.

    Returns:
        IDs of responders whose flag was corrected
    """
    users = UserRepository(store)
    responders = await users.list(role="responder")
    derived = availability_map(responders, await AssignmentRepository(store).all())

    corrected = []
    for responder in responders:
        want = derived[responder.id]
        if responder.availability == want:
            continue
        stale = responder.availability
        responder.availability = want
        try:
            await users.upsert(responder)
        except WriteConflictError:
            logger.info("Responder %s changed during reconcile, retrying next sweep", responder.id)
            continue
        logger.warning("Corrected responder %s availability: %s -> %s", responder.id, stale, want)
        corrected.append(responder.id)
    return corrected
