"""Dispatch coordinator: the report / assignment / responder state machine.

Every mutating operation reads the records it needs, checks its
preconditions, and commits all of its record writes as one
compare-and-swap batch. If another actor changed any of those records in
the meantime, the whole batch is rejected and the caller gets a
``PreconditionError``; nothing is partially applied and nothing is retried
automatically.

Lifecycle::

    Report:      pending -> assigned -> resolved
                 assigned -> pending          (decline before acceptance)
    Assignment:  dispatched -> accepted -> on_site -> completed
                 dispatched -> (deleted)      (decline)
"""

import logging
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime

from resq.dispatch.availability import derive_availability
from resq.dispatch.errors import InvalidInputError, PreconditionError
from resq.dispatch.models import (
    ASSIGNMENT_SEQUENCE,
    CATEGORIES,
    Assignment,
    Location,
    Record,
    Report,
    User,
)
from resq.dispatch.repositories import AssignmentRepository, ReportRepository, UserRepository
from resq.severity.classifier import SeverityAssessment, classify_severity, fallback_assessment
from resq.store.records import RecordStore, WriteConflictError, WriteOp

logger = logging.getLogger(__name__)

# Transitions reachable through advance(); dispatched -> accepted goes through accept
_ADVANCE_TRANSITIONS = {
    "accepted": "on_site",
    "on_site": "completed",
}

Classifier = Callable[[str, str], Awaitable[SeverityAssessment]]


class DispatchCoordinator:
    """Applies dispatch operations against a connected ``RecordStore``.

    Usage::

        async with RecordStore() as store:
            coordinator = DispatchCoordinator(store)
            report = await coordinator.submit_report(citizen_id, "fire", "...", "34.05,-118.24")
            assignment = await coordinator.assign_responder(report.id, responder_id)
    """

    def __init__(self, store: RecordStore, *, classifier: Classifier | None = None) -> None:
        self.store = store
        self.users = UserRepository(store)
        self.reports = ReportRepository(store)
        self.assignments = AssignmentRepository(store)
        self._classify = classifier or classify_severity

    async def _commit(self, action: str, writes: list[tuple[Record, WriteOp]]) -> None:
        """Commit a batch and stamp the new ETags onto the written models."""
        try:
            etags = await self.store.commit([op for _, op in writes])
        except WriteConflictError as exc:
            logger.info("%s rejected: %s", action, exc)
            raise PreconditionError(
                f"{exc.collection[:-1].title()} {exc.record_id} was changed by another actor "
                f"during {action}; reload and try again"
            ) from exc
        for model, op in writes:
            if op.action == "put":
                model.etag = etags.get((op.collection, op.record_id))

    async def _require_responder(self, responder_id: str) -> User:
        responder = await self.users.require(responder_id)
        if responder.role != "responder":
            raise PreconditionError(f"User {responder_id} is not a responder")
        return responder

    async def _require_assignment(
        self, assignment_id: str, responder_id: str | None
    ) -> Assignment:
        """Load an assignment, checking it belongs to ``responder_id`` when given."""
        assignment = await self.assignments.require(assignment_id)
        if responder_id is not None and assignment.responder_id != responder_id:
            raise PreconditionError(
                f"Assignment {assignment_id} belongs to a different responder"
            )
        return assignment

    async def _release_op(
        self, responder_id: str, finished: Assignment
    ) -> tuple[User, WriteOp] | None:
        """Responder write for when ``finished`` stops being active, if the flag changes."""
        responder = await self.users.get(responder_id)
        if responder is None:
            logger.warning(
                "Assignment %s references missing responder %s", finished.id, responder_id
            )
            return None
        others = [
            a for a in await self.assignments.list(responder_id=responder_id) if a.id != finished.id
        ]
        availability = derive_availability(responder_id, others)
        if responder.availability == availability:
            return None
        responder.availability = availability
        return responder, self.users.put_op(responder)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def submit_report(
        self,
        citizen_id: str,
        category: str,
        description: str,
        location: Location | str | tuple[float, float],
    ) -> Report:
        """File a new pending report for a citizen.

        Severity comes from the classifier; any classifier failure falls back
        to the keyword heuristic, so only invalid input can fail this call.

        Raises:
            InvalidInputError: Empty description/location, unknown category,
                or malformed coordinates
            NotFoundError: Unknown citizen
            PreconditionError: The user is not a citizen
        """
        description = (description or "").strip()
        if not description:
            raise InvalidInputError("Description is required")
        if category not in CATEGORIES:
            raise InvalidInputError(
                f"Unknown category {category!r}; expected one of {', '.join(CATEGORIES)}"
            )
        try:
            point = Location.parse(location)
        except ValueError as exc:
            raise InvalidInputError(str(exc)) from exc

        citizen = await self.users.require(citizen_id)
        if citizen.role != "citizen":
            raise PreconditionError(f"User {citizen_id} is not a citizen")

        try:
            assessment = await self._classify(description, category)
        except Exception:
            logger.warning("Severity classifier raised; using keyword heuristic", exc_info=True)
            assessment = fallback_assessment(description, unavailable=True)

        report = Report(
            user_id=citizen.id,
            category=category,
            description=description,
            location=point,
            severity=assessment.severity,
            severity_reason=assessment.reason,
        )
        await self._commit("submit", [(report, self.reports.put_op(report))])
        logger.info(
            "Citizen %s submitted %s report %s (severity=%s)",
            citizen.id,
            category,
            report.id,
            report.severity,
        )
        return report

    async def assign_responder(
        self,
        report_id: str,
        responder_id: str,
        *,
        allow_busy: bool = False,
    ) -> Assignment:
        """Dispatch a responder to a pending report.

        Creates the assignment, marks the report assigned, and marks the
        responder busy in one batch. A concurrent dispatch of the same
        report changes the report's ETag, so only one of two racing
        callers can succeed.

        Args:
            report_id: Pending report to dispatch
            responder_id: Responder to send
            allow_busy: Dispatch even if the responder already holds an
                active assignment (manual override)

        Raises:
            NotFoundError: Unknown report or responder
            PreconditionError: Report not pending, report already held by an
                active assignment, responder busy, or a concurrent change
        """
        report = await self.reports.require(report_id)
        if report.status != "pending":
            raise PreconditionError(f"Report {report_id} is {report.status}, not pending")

        responder = await self._require_responder(responder_id)
        assignments = await self.assignments.all()
        if any(a.report_id == report_id and a.is_active for a in assignments):
            raise PreconditionError(f"Report {report_id} already has an active assignment")

        if derive_availability(responder_id, assignments) == "busy":
            if not allow_busy:
                raise PreconditionError(f"Responder {responder_id} is busy")
            logger.warning("Dispatching busy responder %s (override)", responder_id)

        assignment = Assignment(report_id=report_id, responder_id=responder_id)
        report.status = "assigned"
        responder.availability = "busy"
        await self._commit(
            "dispatch",
            [
                (assignment, self.assignments.put_op(assignment)),
                (report, self.reports.put_op(report)),
                (responder, self.users.put_op(responder)),
            ],
        )
        logger.info(
            "Dispatched responder %s to report %s (assignment %s)",
            responder_id,
            report_id,
            assignment.id,
        )
        return assignment

    async def accept_assignment(
        self, assignment_id: str, *, responder_id: str | None = None
    ) -> Assignment:
        """Responder accepts a dispatched assignment.

        Raises:
            NotFoundError: Unknown assignment or responder
            PreconditionError: Not dispatched, someone else's assignment,
                or a concurrent change
        """
        assignment = await self._require_assignment(assignment_id, responder_id)
        if assignment.status != "dispatched":
            raise PreconditionError(
                f"Assignment {assignment_id} is {assignment.status}, not dispatched"
            )
        responder = await self._require_responder(assignment.responder_id)

        assignment.status = "accepted"
        assignment.updated_at = datetime.now(UTC)
        writes = [(assignment, self.assignments.put_op(assignment))]
        if responder.availability != "busy":
            responder.availability = "busy"
            writes.append((responder, self.users.put_op(responder)))
        await self._commit("accept", writes)
        logger.info("Responder %s accepted assignment %s", responder.id, assignment_id)
        return assignment

    async def decline_assignment(
        self, assignment_id: str, *, responder_id: str | None = None
    ) -> None:
        """Responder declines a dispatched assignment.

        The assignment is deleted, the report returns to the pending pool,
        and the responder is idle again unless another active assignment
        still holds it.

        Raises:
            NotFoundError: Unknown assignment
            PreconditionError: Already accepted (or later), someone else's
                assignment, or a concurrent change
        """
        assignment = await self._require_assignment(assignment_id, responder_id)
        if assignment.status != "dispatched":
            raise PreconditionError(
                f"Assignment {assignment_id} is {assignment.status}; "
                "only dispatched assignments can be declined"
            )

        writes: list[tuple[Record, WriteOp]] = [
            (assignment, self.assignments.remove_op(assignment))
        ]
        report = await self.reports.get(assignment.report_id)
        if report is None:
            logger.warning(
                "Declined assignment %s references missing report %s",
                assignment_id,
                assignment.report_id,
            )
        elif report.status == "assigned":
            report.status = "pending"
            writes.append((report, self.reports.put_op(report)))

        release = await self._release_op(assignment.responder_id, assignment)
        if release:
            writes.append(release)

        await self._commit("decline", writes)
        logger.info(
            "Responder %s declined assignment %s; report %s back to pending",
            assignment.responder_id,
            assignment_id,
            assignment.report_id,
        )

    async def advance(
        self,
        assignment_id: str,
        next_status: str,
        *,
        responder_id: str | None = None,
    ) -> Assignment:
        """Move an accepted mission forward one stage.

        Only ``accepted -> on_site`` and ``on_site -> completed`` are valid.
        Completing resolves the report and releases the responder.

        Raises:
            InvalidInputError: ``next_status`` is not an assignment status
            NotFoundError: Unknown assignment
            PreconditionError: Out-of-sequence transition, someone else's
                assignment, or a concurrent change
        """
        if next_status not in ASSIGNMENT_SEQUENCE:
            raise InvalidInputError(f"Unknown assignment status {next_status!r}")

        assignment = await self._require_assignment(assignment_id, responder_id)
        if _ADVANCE_TRANSITIONS.get(assignment.status) != next_status:
            raise PreconditionError(
                f"Cannot move assignment {assignment_id} from {assignment.status} to {next_status}"
            )

        assignment.status = next_status
        assignment.updated_at = datetime.now(UTC)
        writes: list[tuple[Record, WriteOp]] = [
            (assignment, self.assignments.put_op(assignment))
        ]

        if next_status == "completed":
            report = await self.reports.get(assignment.report_id)
            if report is None:
                logger.warning(
                    "Completed assignment %s references missing report %s",
                    assignment_id,
                    assignment.report_id,
                )
            else:
                report.status = "resolved"
                writes.append((report, self.reports.put_op(report)))
            release = await self._release_op(assignment.responder_id, assignment)
            if release:
                writes.append(release)

        await self._commit(next_status, writes)
        logger.info("Assignment %s advanced to %s", assignment_id, next_status)
        return assignment
