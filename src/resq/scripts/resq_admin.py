#!/usr/bin/env python3
"""ResQ admin CLI for local dispatch operations.

Commands:
    seed        - Load the demo users and reports
    sign-up     - Register a user and sign in as them
    sign-in     - Sign in as an existing user
    sign-out    - Clear the session
    whoami      - Show the signed-in user
    submit      - File a report as the acting citizen
    assign      - Dispatch a responder to a pending report
    accept      - Accept a dispatched assignment
    decline     - Decline a dispatched assignment
    advance     - Move an accepted assignment to on_site or completed
    view        - Print the acting user's view (--watch to keep polling)
    check       - Audit the collections for invariant violations
    reconcile   - Repair drifted responder availability flags

Commands act as the signed-in session user unless ``--as`` names another
user by ID or email. Without COSMOS_ENDPOINT the store is in-memory and
empty on every run; pass ``--demo`` to seed it first.

Usage:
    uv run resq-admin --demo view --as admin@resq.com
    uv run resq-admin sign-in responder@resq.com
    uv run resq-admin advance <assignment-id> on_site
"""

import argparse
import asyncio
import json
import logging
import sys
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta

from dotenv import load_dotenv

from resq.accounts import service as accounts
from resq.dispatch.availability import check_invariants, reconcile_availability
from resq.dispatch.coordinator import DispatchCoordinator
from resq.dispatch.errors import DispatchError
from resq.dispatch.models import CATEGORIES, CITIZEN_STATUSES, ROLES, Location, Report, User
from resq.dispatch.repositories import AssignmentRepository, ReportRepository, UserRepository
from resq.store.records import RecordStore, WriteConflictError
from resq.sync.poller import ViewPoller
from resq.sync.views import CitizenView, CoordinatorView, ResponderView, fetch_view, view_fetcher

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Silence noisy libraries
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)
logging.getLogger("azure").setLevel(logging.WARNING)

DEMO_USERS = [
    # (id, email, full name, role)
    ("u1", "admin@resq.com", "Admin User", "coordinator"),
    ("u2", "citizen@resq.com", "Joker", "citizen"),
    ("u3", "responder@resq.com", "Shai Na", "responder"),
    ("u4", "mike@resq.com", "Jorlyn Row", "responder"),
    ("u5", "miks@resq.com", "Pat Rik", "responder"),
]


def _demo_reports() -> list[Report]:
    now = datetime.now(UTC)
    return [
        Report(
            id="r1",
            user_id="u2",
            category="fire",
            description="Small brush fire starting near the playground.",
            location=Location.parse("34.0522,-118.2437"),
            severity="medium",
            severity_reason="Seed data",
            created_at=now - timedelta(hours=1),
        ),
        Report(
            id="r2",
            user_id="u2",
            category="medical",
            description="Car accident, one person looks injured and trapped.",
            location=Location.parse("34.0525,-118.2440"),
            severity="high",
            severity_reason="Seed data",
            created_at=now - timedelta(minutes=30),
        ),
    ]


async def seed_demo_data(store: RecordStore) -> int:
    """Create the demo users and reports that do not exist yet.

    Returns:
        Number of records created
    """
    created = 0
    users = UserRepository(store)
    reports = ReportRepository(store)
    for user_id, email, full_name, role in DEMO_USERS:
        if await users.get_by_email(email):
            continue
        user = User(id=user_id, email=email, full_name=full_name, role=role, is_verified=True)
        try:
            await users.upsert(user)
        except WriteConflictError:
            continue
        created += 1
    for report in _demo_reports():
        try:
            await reports.upsert(report)
        except WriteConflictError:
            continue
        created += 1
    return created


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def _print_view(view) -> None:
    stamp = datetime.now(UTC).strftime("%H:%M:%S")
    if isinstance(view, CoordinatorView):
        dash = view.dashboard
        print(f"\n[{stamp}] Open: {dash.open_count}   Resolved: {dash.stats.total_resolved}")
        for category, reports in dash.board.items():
            print(f"  {category.upper()} ({len(reports)})")
            for r in reports:
                print(f"    {r.id:<38} {r.severity:<7} {r.status:<9} {r.description[:40]}")
        print(f"\n  {'Responder':<24} {'Availability':<13} {'ID'}")
        print("  " + "-" * 70)
        for s in view.responders:
            print(f"  {s.full_name:<24} {s.availability:<13} {s.id}")
    elif isinstance(view, ResponderView):
        print(f"\n[{stamp}] {view.availability.upper()}   Completed: {view.completed_count}")
        for task in view.tasks:
            a, r = task.assignment, task.report
            print(f"  {a.id:<38} {a.status:<11} {r.category:<8} {r.location}  {r.description[:40]}")
        if not view.tasks:
            print("  No active missions")
    elif isinstance(view, CitizenView):
        flag = "  ** Responder en route **" if view.responder_en_route else ""
        print(f"\n[{stamp}] Status: {view.citizen_status}{flag}")
        for entry in view.reports:
            r = entry.report
            status = entry.assignment_status or "-"
            print(f"  {r.id:<38} {r.category:<8} {r.status:<9} {status:<11} {r.description[:40]}")
        print("\n  Evacuation centers:")
        for c in view.evacuation_centers:
            print(f"    {c['name']:<24} {c['type']:<9} {c['location']}")
    else:
        print(json.dumps(view.model_dump(mode="json"), indent=2))


# ---------------------------------------------------------------------------
# Command plumbing
# ---------------------------------------------------------------------------

Action = Callable[[RecordStore, argparse.Namespace], Awaitable[int]]


async def _acting_user(store: RecordStore, args: argparse.Namespace) -> User | None:
    """The ``--as`` user, or the signed-in session user."""
    if args.as_user:
        user = await accounts.resolve_user(store, args.as_user)
        if user is None:
            print(f"Error: User not found: {args.as_user}")
        return user
    user = await accounts.session_user(store)
    if user is None:
        print("Error: Not signed in (use sign-in or --as)")
    return user


async def _with_store(action: Action, args: argparse.Namespace) -> int:
    async with RecordStore() as store:
        if args.demo:
            created = await seed_demo_data(store)
            logger.debug("Seeded %d demo record(s)", created)
        try:
            return await action(store, args)
        except DispatchError as e:
            print(f"Error: {e}")
            return 1


def _run(action: Action, args: argparse.Namespace) -> int:
    load_dotenv()
    return asyncio.run(_with_store(action, args))


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


async def _seed(store: RecordStore, args: argparse.Namespace) -> int:
    created = await seed_demo_data(store)
    print(f"Seeded {created} record(s)")
    return 0


async def _sign_up(store: RecordStore, args: argparse.Namespace) -> int:
    user = await accounts.sign_up(store, args.email, args.name, args.role)
    print(f"Signed up {user.full_name} <{user.email}> as {user.role} ({user.id})")
    return 0


async def _sign_in(store: RecordStore, args: argparse.Namespace) -> int:
    user = await accounts.sign_in(store, args.email)
    print(f"Signed in as {user.full_name} <{user.email}> ({user.role})")
    return 0


async def _sign_out(store: RecordStore, args: argparse.Namespace) -> int:
    await accounts.sign_out(store)
    print("Signed out")
    return 0


async def _whoami(store: RecordStore, args: argparse.Namespace) -> int:
    user = await _acting_user(store, args)
    if user is None:
        return 1
    print(f"{user.full_name} <{user.email}>")
    print(f"  id:       {user.id}")
    print(f"  role:     {user.role}")
    print(f"  verified: {user.is_verified}")
    if user.role == "responder":
        print(f"  status:   {user.availability}")
    elif user.role == "citizen":
        print(f"  status:   {user.citizen_status}")
    return 0


async def _submit(store: RecordStore, args: argparse.Namespace) -> int:
    user = await _acting_user(store, args)
    if user is None:
        return 1
    report = await DispatchCoordinator(store).submit_report(
        user.id, args.category, args.description, args.location
    )
    print(f"Report {report.id} filed ({report.severity}: {report.severity_reason})")
    return 0


async def _assign(store: RecordStore, args: argparse.Namespace) -> int:
    assignment = await DispatchCoordinator(store).assign_responder(
        args.report_id, args.responder_id, allow_busy=args.allow_busy
    )
    print(f"Assignment {assignment.id}: {args.responder_id} -> report {args.report_id}")
    return 0


async def _responder_scope(store: RecordStore, args: argparse.Namespace) -> str | None:
    """Responders act on their own assignments; anyone else acts unscoped."""
    if not args.as_user:
        user = await accounts.session_user(store)
    else:
        user = await accounts.resolve_user(store, args.as_user)
    return user.id if user and user.role == "responder" else None


async def _accept(store: RecordStore, args: argparse.Namespace) -> int:
    assignment = await DispatchCoordinator(store).accept_assignment(
        args.assignment_id, responder_id=await _responder_scope(store, args)
    )
    print(f"Assignment {assignment.id} accepted")
    return 0


async def _decline(store: RecordStore, args: argparse.Namespace) -> int:
    await DispatchCoordinator(store).decline_assignment(
        args.assignment_id, responder_id=await _responder_scope(store, args)
    )
    print(f"Assignment {args.assignment_id} declined")
    return 0


async def _advance(store: RecordStore, args: argparse.Namespace) -> int:
    assignment = await DispatchCoordinator(store).advance(
        args.assignment_id, args.status, responder_id=await _responder_scope(store, args)
    )
    print(f"Assignment {assignment.id} -> {assignment.status}")
    return 0


async def _status(store: RecordStore, args: argparse.Namespace) -> int:
    user = await _acting_user(store, args)
    if user is None:
        return 1
    await accounts.update_citizen_status(store, user.id, args.status)
    print(f"Status set to {args.status}")
    return 0


async def _view(store: RecordStore, args: argparse.Namespace) -> int:
    user = await _acting_user(store, args)
    if user is None:
        return 1
    if not args.watch:
        _print_view(await fetch_view(store, user))
        return 0

    poller = ViewPoller(store, view_fetcher(user), interval=args.interval)
    await poller.run(_print_view)
    return 0


async def _check(store: RecordStore, args: argparse.Namespace) -> int:
    violations = check_invariants(
        await UserRepository(store).all(),
        await ReportRepository(store).all(),
        await AssignmentRepository(store).all(),
    )
    if not violations:
        print("OK: no invariant violations")
        return 0
    for v in violations:
        print(f"  VIOLATION: {v}")
    print(f"\n{len(violations)} violation(s)")
    return 1


async def _reconcile(store: RecordStore, args: argparse.Namespace) -> int:
    corrected = await reconcile_availability(store)
    print(f"Corrected {len(corrected)} responder(s)")
    for responder_id in corrected:
        print(f"  {responder_id}")
    return 0


COMMANDS: dict[str, Action] = {
    "seed": _seed,
    "sign-up": _sign_up,
    "sign-in": _sign_in,
    "sign-out": _sign_out,
    "whoami": _whoami,
    "submit": _submit,
    "assign": _assign,
    "accept": _accept,
    "decline": _decline,
    "advance": _advance,
    "status": _status,
    "view": _view,
    "check": _check,
    "reconcile": _reconcile,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="ResQ admin CLI",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument("--demo", action="store_true", help="Seed demo data before the command")
    parser.add_argument("--as", dest="as_user", help="Act as this user (ID or email)")

    sub = parser.add_subparsers(dest="command", help="Command to run")

    sub.add_parser("seed", help="Load the demo users and reports")

    signup_p = sub.add_parser("sign-up", help="Register a user and sign in")
    signup_p.add_argument("email")
    signup_p.add_argument("name", help="Full name")
    signup_p.add_argument("--role", choices=ROLES, default="citizen")

    signin_p = sub.add_parser("sign-in", help="Sign in as an existing user")
    signin_p.add_argument("email")

    sub.add_parser("sign-out", help="Clear the session")
    sub.add_parser("whoami", help="Show the acting user")

    submit_p = sub.add_parser("submit", help="File a report as the acting citizen")
    submit_p.add_argument("category", choices=CATEGORIES)
    submit_p.add_argument("description")
    submit_p.add_argument("location", help='Coordinates as "lat,lng"')

    assign_p = sub.add_parser("assign", help="Dispatch a responder to a pending report")
    assign_p.add_argument("report_id")
    assign_p.add_argument("responder_id")
    assign_p.add_argument(
        "--allow-busy", action="store_true", help="Dispatch even if the responder is busy"
    )

    accept_p = sub.add_parser("accept", help="Accept a dispatched assignment")
    accept_p.add_argument("assignment_id")

    decline_p = sub.add_parser("decline", help="Decline a dispatched assignment")
    decline_p.add_argument("assignment_id")

    advance_p = sub.add_parser("advance", help="Move an assignment to on_site or completed")
    advance_p.add_argument("assignment_id")
    advance_p.add_argument("status", choices=["on_site", "completed"])

    status_p = sub.add_parser("status", help="Set the acting citizen's safety status")
    status_p.add_argument("status", choices=CITIZEN_STATUSES)

    view_p = sub.add_parser("view", help="Print the acting user's view")
    view_p.add_argument("--watch", action="store_true", help="Keep polling for changes")
    view_p.add_argument("--interval", type=float, help="Poll interval in seconds")

    sub.add_parser("check", help="Audit the collections for invariant violations")
    sub.add_parser("reconcile", help="Repair drifted responder availability flags")

    return parser


def main() -> None:
    """CLI entry point for ResQ admin commands."""
    parser = build_parser()
    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    try:
        sys.exit(_run(COMMANDS[args.command], args))
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    main()
