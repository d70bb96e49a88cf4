"""Dispatch coordination: reports, assignments, and responder availability."""

from resq.dispatch.coordinator import DispatchCoordinator
from resq.dispatch.dashboard import Dashboard, derive_dashboard
from resq.dispatch.errors import (
    DispatchError,
    InvalidInputError,
    NotFoundError,
    PreconditionError,
)
from resq.dispatch.models import Assignment, Location, Report, User

__all__ = [
    "Assignment",
    "Dashboard",
    "DispatchCoordinator",
    "DispatchError",
    "InvalidInputError",
    "Location",
    "NotFoundError",
    "PreconditionError",
    "Report",
    "User",
    "derive_dashboard",
]
