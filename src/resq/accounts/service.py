"""User accounts and the persisted session slot.

Sign-up and sign-in are identity bookkeeping only (no passwords): the
session slot remembers who is signed in so a restarted CLI or client
keeps acting as the same user.
"""

import logging
import uuid
from datetime import UTC, datetime

from email_validator import EmailNotValidError
from email_validator import validate_email as ev

from resq.dispatch.errors import InvalidInputError, NotFoundError, PreconditionError
from resq.dispatch.models import CITIZEN_STATUSES, ROLES, User
from resq.dispatch.repositories import UserRepository
from resq.store.records import RecordStore, WriteConflictError

logger = logging.getLogger(__name__)

# Namespace for user ids derived from a normalized email
USER_ID_NAMESPACE = uuid.UUID("5f1c7a52-8e0b-4d9a-9c3e-2b6f4a1d7e90")


def normalize_email(email: str | None) -> str:
    """Validate an email-like identity and return it lowercased.

    Raises:
        InvalidInputError: If the address is empty or malformed
    """
    email = (email or "").strip()
    if not email:
        raise InvalidInputError("Email is required")
    try:
        result = ev(email, check_deliverability=False)
    except EmailNotValidError as e:
        raise InvalidInputError(f"Invalid email {email!r}: {e}") from e
    return result.normalized.lower()


def user_id_for_email(email: str) -> str:
    """Stable user id for a normalized email.

    Two sign-ups with the same email race to create the same record, so the
    store's create-only write lets exactly one of them through.
    """
    return str(uuid.uuid5(USER_ID_NAMESPACE, email))


async def _start_session(store: RecordStore, user: User) -> None:
    await store.set_session(
        {"user_id": user.id, "signed_in_at": datetime.now(UTC).isoformat()}
    )


async def sign_up(
    store: RecordStore,
    email: str,
    full_name: str,
    role: str = "citizen",
) -> User:
    """Register a new, unverified user and sign them in.

    Raises:
        InvalidInputError: Malformed email, empty name, or unknown role
        PreconditionError: Email already registered
    """
    email = normalize_email(email)
    full_name = (full_name or "").strip()
    if not full_name:
        raise InvalidInputError("Full name is required")
    if role not in ROLES:
        raise InvalidInputError(f"Unknown role {role!r}; expected one of {', '.join(ROLES)}")

    users = UserRepository(store)
    if await users.get_by_email(email):
        raise PreconditionError(f"Email {email} is already registered")

    user = User(id=user_id_for_email(email), email=email, full_name=full_name, role=role)
    try:
        await users.upsert(user)
    except WriteConflictError as exc:
        raise PreconditionError(f"Email {email} is already registered") from exc
    await _start_session(store, user)
    logger.info("Signed up %s as %s (%s)", email, role, user.id)
    return user


async def sign_in(store: RecordStore, email: str) -> User:
    """Sign in an existing user by email.

    Raises:
        InvalidInputError: Malformed email
        NotFoundError: No user with that email
    """
    email = normalize_email(email)
    user = await UserRepository(store).get_by_email(email)
    if user is None:
        raise NotFoundError("User not found.")
    await _start_session(store, user)
    logger.info("Signed in %s (%s)", email, user.id)
    return user


async def sign_out(store: RecordStore) -> None:
    """Clear the session slot."""
    await store.clear_session()


async def session_user(store: RecordStore) -> User | None:
    """The signed-in user, or None if nobody is signed in.

    A session pointing at a deleted user is cleared.
    """
    session = await store.get_session()
    if not session:
        return None
    user = await UserRepository(store).get(session.get("user_id", ""))
    if user is None:
        logger.warning("Session references missing user %s; clearing", session.get("user_id"))
        await store.clear_session()
    return user


async def resolve_user(store: RecordStore, identity: str) -> User | None:
    """Look up a user by ID or email."""
    users = UserRepository(store)
    if "@" in identity:
        return await users.get_by_email(identity)
    return await users.get(identity)


async def update_citizen_status(store: RecordStore, user_id: str, status: str) -> User:
    """Record a citizen's self-reported safety status.

    Raises:
        InvalidInputError: Unknown status
        NotFoundError: Unknown user
        PreconditionError: The user is not a citizen, or changed concurrently
    """
    if status not in CITIZEN_STATUSES:
        raise InvalidInputError(
            f"Unknown status {status!r}; expected one of {', '.join(CITIZEN_STATUSES)}"
        )
    users = UserRepository(store)
    user = await users.require(user_id)
    if user.role != "citizen":
        raise PreconditionError(f"User {user_id} is not a citizen")
    user.citizen_status = status
    try:
        await users.upsert(user)
    except WriteConflictError as exc:
        raise PreconditionError(f"User {user_id} changed concurrently; try again") from exc
    logger.info("Citizen %s status -> %s", user_id, status)
    return user


async def verify_user(store: RecordStore, user_id: str) -> User:
    """Mark a user as verified.

    Raises:
        NotFoundError: Unknown user
        PreconditionError: The user changed concurrently
    """
    users = UserRepository(store)
    user = await users.require(user_id)
    if user.is_verified:
        return user
    user.is_verified = True
    try:
        await users.upsert(user)
    except WriteConflictError as exc:
        raise PreconditionError(f"User {user_id} changed concurrently; try again") from exc
    logger.info("Verified user %s", user_id)
    return user
