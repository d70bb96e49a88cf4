"""Tool functions exposed by the ResQ server.

Each tool acts as the user published by ``set_current_user`` (the
``X-Resq-User`` header, or the session slot in dev mode), opens the record
store, and returns a JSON-serializable dict. Domain failures come back as
``{"error": "..."}`` rather than raising, so an operator sees why a
dispatch was refused.
"""

import logging

from resq.accounts import service as accounts
from resq.accounts.auth import ActorContext, get_current_user
from resq.dispatch.availability import check_invariants
from resq.dispatch.coordinator import DispatchCoordinator
from resq.dispatch.errors import DispatchError
from resq.dispatch.repositories import AssignmentRepository, ReportRepository, UserRepository
from resq.store.records import RecordStore
from resq.sync.views import fetch_coordinator_view, fetch_view

logger = logging.getLogger(__name__)


def _role_error(user: ActorContext, *roles: str) -> dict | None:
    """Error dict if the acting user holds none of ``roles``."""
    if user.role in roles:
        return None
    return {"error": f"This action requires the {' or '.join(roles)} role (you are {user.role})"}


def _responder_scope(user: ActorContext) -> str | None:
    """Responders may only touch their own assignments; coordinators may touch any."""
    return None if user.is_coordinator else user.user_id


async def submit_report(category: str, description: str, location: str) -> dict:
    """File a new incident report as the current citizen.

    Severity is assigned automatically.

    Args:
        category: One of fire, medical, flood, rescue
        description: What is happening
        location: Coordinates as "lat,lng"

    Returns:
        The stored report, or an error
    """
    user = get_current_user()
    error = _role_error(user, "citizen")
    if error:
        return error
    logger.info("Report submission (%s) by %s", category, user.email)

    try:
        async with RecordStore() as store:
            report = await DispatchCoordinator(store).submit_report(
                user.user_id, category, description, location
            )
        return report.to_record()
    except DispatchError as e:
        return {"error": str(e)}
    except Exception as e:
        logger.exception("Failed to submit report")
        return {"error": str(e)}


async def assign_responder(report_id: str, responder_id: str, allow_busy: bool = False) -> dict:
    """Dispatch a responder to a pending report (coordinators only).

    Args:
        report_id: Pending report ID
        responder_id: Responder user ID
        allow_busy: Send the responder even if already on a mission

    Returns:
        The new assignment, or an error
    """
    user = get_current_user()
    error = _role_error(user, "coordinator")
    if error:
        return error
    logger.info("Dispatch of %s to report %s by %s", responder_id, report_id, user.email)

    try:
        async with RecordStore() as store:
            assignment = await DispatchCoordinator(store).assign_responder(
                report_id, responder_id, allow_busy=allow_busy
            )
        return assignment.to_record()
    except DispatchError as e:
        return {"error": str(e)}
    except Exception as e:
        logger.exception("Failed to assign responder")
        return {"error": str(e)}


async def accept_assignment(assignment_id: str) -> dict:
    """Accept a dispatched assignment.

    Returns:
        The accepted assignment, or an error
    """
    user = get_current_user()
    error = _role_error(user, "responder", "coordinator")
    if error:
        return error

    try:
        async with RecordStore() as store:
            assignment = await DispatchCoordinator(store).accept_assignment(
                assignment_id, responder_id=_responder_scope(user)
            )
        return assignment.to_record()
    except DispatchError as e:
        return {"error": str(e)}
    except Exception as e:
        logger.exception("Failed to accept assignment")
        return {"error": str(e)}


async def decline_assignment(assignment_id: str) -> dict:
    """Decline a dispatched assignment; the report returns to the pending pool.

    Returns:
        ``{"declined": assignment_id}``, or an error
    """
    user = get_current_user()
    error = _role_error(user, "responder", "coordinator")
    if error:
        return error

    try:
        async with RecordStore() as store:
            await DispatchCoordinator(store).decline_assignment(
                assignment_id, responder_id=_responder_scope(user)
            )
        return {"declined": assignment_id}
    except DispatchError as e:
        return {"error": str(e)}
    except Exception as e:
        logger.exception("Failed to decline assignment")
        return {"error": str(e)}


async def advance_assignment(assignment_id: str, status: str) -> dict:
    """Move an accepted mission forward (to on_site, then completed).

    Args:
        assignment_id: Assignment ID
        status: The next status, "on_site" or "completed"

    Returns:
        The updated assignment, or an error
    """
    user = get_current_user()
    error = _role_error(user, "responder", "coordinator")
    if error:
        return error

    try:
        async with RecordStore() as store:
            assignment = await DispatchCoordinator(store).advance(
                assignment_id, status, responder_id=_responder_scope(user)
            )
        return assignment.to_record()
    except DispatchError as e:
        return {"error": str(e)}
    except Exception as e:
        logger.exception("Failed to advance assignment")
        return {"error": str(e)}


async def get_my_view() -> dict:
    """The view for the current user's role.

    Coordinators get the dashboard and responder roster, responders their
    tasks, and citizens their reports, evacuation centers, and news.
    """
    user = get_current_user()

    try:
        async with RecordStore() as store:
            profile = await UserRepository(store).require(user.user_id)
            view = await fetch_view(store, profile)
        return view.model_dump(mode="json")
    except DispatchError as e:
        return {"error": str(e)}
    except Exception as e:
        logger.exception("Failed to fetch view")
        return {"error": str(e)}


async def get_dashboard() -> dict:
    """Operational board, resolution history, and stats (coordinators only)."""
    user = get_current_user()
    error = _role_error(user, "coordinator")
    if error:
        return error

    try:
        async with RecordStore() as store:
            view = await fetch_coordinator_view(store)
        return view.dashboard.model_dump(mode="json")
    except Exception as e:
        logger.exception("Failed to build dashboard")
        return {"error": str(e)}


async def list_responders() -> dict:
    """All responders with availability derived from active assignments."""
    user = get_current_user()
    error = _role_error(user, "coordinator")
    if error:
        return error

    try:
        async with RecordStore() as store:
            view = await fetch_coordinator_view(store)
        responders = [r.model_dump(mode="json") for r in view.responders]
        return {"responders": responders, "count": len(responders)}
    except Exception as e:
        logger.exception("Failed to list responders")
        return {"error": str(e)}


async def list_reports() -> dict:
    """Reports visible to the current user, most recent first."""
    user = get_current_user()

    try:
        async with RecordStore() as store:
            profile = await UserRepository(store).require(user.user_id)
            reports = await ReportRepository(store).list_for(profile)
        return {"reports": [r.to_record() for r in reports], "count": len(reports)}
    except DispatchError as e:
        return {"error": str(e)}
    except Exception as e:
        logger.exception("Failed to list reports")
        return {"error": str(e)}


async def update_my_status(status: str) -> dict:
    """Set the current citizen's safety status.

    Args:
        status: One of safe, need_food, need_water, in_danger
    """
    user = get_current_user()
    error = _role_error(user, "citizen")
    if error:
        return error

    try:
        async with RecordStore() as store:
            profile = await accounts.update_citizen_status(store, user.user_id, status)
        return profile.to_record()
    except DispatchError as e:
        return {"error": str(e)}
    except Exception as e:
        logger.exception("Failed to update citizen status")
        return {"error": str(e)}


async def verify_user(user_id: str) -> dict:
    """Mark a user account as verified (coordinators only)."""
    user = get_current_user()
    error = _role_error(user, "coordinator")
    if error:
        return error

    try:
        async with RecordStore() as store:
            profile = await accounts.verify_user(store, user_id)
        logger.info("User %s verified by %s", user_id, user.email)
        return profile.to_record()
    except DispatchError as e:
        return {"error": str(e)}
    except Exception as e:
        logger.exception("Failed to verify user")
        return {"error": str(e)}


async def check_consistency() -> dict:
    """Audit the collections for dispatch invariant violations (coordinators only).

    Returns:
        Dict with "ok" and the list of "violations"
    """
    user = get_current_user()
    error = _role_error(user, "coordinator")
    if error:
        return error

    try:
        async with RecordStore() as store:
            violations = check_invariants(
                await UserRepository(store).all(),
                await ReportRepository(store).all(),
                await AssignmentRepository(store).all(),
            )
        if violations:
            logger.warning("Consistency check found %d violation(s)", len(violations))
        return {"ok": not violations, "violations": violations}
    except Exception as e:
        logger.exception("Failed to check consistency")
        return {"error": str(e)}
