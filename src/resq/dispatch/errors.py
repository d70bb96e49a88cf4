"""Errors raised by the dispatch coordinator.

Validation and precondition failures propagate to the calling actor.
Nothing is written when one of these is raised.
"""


class DispatchError(Exception):
    """Base class for dispatch failures surfaced to the caller."""


class InvalidInputError(DispatchError, ValueError):
    """Input rejected before any state was read or written."""


class PreconditionError(DispatchError):
    """The current state does not allow the requested transition."""


class NotFoundError(PreconditionError):
    """A referenced user, report, or assignment does not exist."""
