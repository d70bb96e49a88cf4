"""Actor identity for the current request or CLI invocation.

ResQ only tags actors with a role; it does not authenticate them. The
server resolves the ``X-Resq-User`` header and the CLI resolves the
session slot, and both publish the result here for the tool layer.
"""

from contextvars import ContextVar
from dataclasses import dataclass
from typing import Self

from resq.dispatch.models import User


@dataclass(frozen=True)
class ActorContext:
    """The user acting in the current context."""

    user_id: str
    email: str
    name: str
    role: str  # citizen, responder, coordinator

    @classmethod
    def from_user(cls, user: User) -> Self:
        return cls(user_id=user.id, email=user.email, name=user.full_name, role=user.role)

    @property
    def is_coordinator(self) -> bool:
        return self.role == "coordinator"


# Context variable holding the acting user for the current request
_current_user: ContextVar[ActorContext | None] = ContextVar("current_user", default=None)


def get_current_user() -> ActorContext:
    """Get the acting user for the current context.

    Raises:
        RuntimeError: If no user is set in the current context.
    """
    user = _current_user.get()
    if user is not None:
        return user

    raise RuntimeError("No acting user in context")


def set_current_user(user: ActorContext | None) -> None:
    """Set (or clear, with None) the acting user for the current context."""
    _current_user.set(user)
