"""Typed views over the record store for users, reports, and assignments.

Repositories read whole collections and write single records. Writes are
guarded by the ETag the model was read with, so a stale model is rejected
instead of overwriting a newer version. Multi-record updates build
``WriteOp`` objects with ``put_op``/``remove_op`` and hand them to
``RecordStore.commit`` together.
"""

from __future__ import annotations

import logging
from typing import ClassVar

from resq.dispatch.errors import NotFoundError
from resq.dispatch.models import Assignment, Record, Report, User
from resq.store.records import RecordStore, WriteOp

logger = logging.getLogger(__name__)


class _Repository:
    collection: ClassVar[str]
    model: ClassVar[type[Record]]
    label: ClassVar[str]

    def __init__(self, store: RecordStore) -> None:
        self.store = store

    async def all(self) -> list[Record]:
        """Every record in the collection."""
        return [self.model.from_record(r) for r in await self.store.read_all(self.collection)]

    async def get(self, record_id: str) -> Record | None:
        stored = await self.store.get(self.collection, record_id)
        return self.model.from_record(stored) if stored else None

    async def require(self, record_id: str) -> Record:
        """Get a record or raise ``NotFoundError``."""
        item = await self.get(record_id)
        if item is None:
            raise NotFoundError(f"{self.label} {record_id} not found")
        return item

    def put_op(self, item: Record) -> WriteOp:
        """Write op guarded by the item's ETag (create-only when it has none)."""
        return WriteOp.put(self.collection, item.to_record(), item.etag)

    def remove_op(self, item: Record) -> WriteOp:
        return WriteOp.delete(self.collection, item.id, item.etag)

    async def upsert(self, item: Record) -> Record:
        """Create or replace one record.

        Returns:
            The item carrying its new ETag

        Raises:
            WriteConflictError: If the stored record changed since ``item`` was read
        """
        etags = await self.store.commit([self.put_op(item)])
        item.etag = etags.get((self.collection, item.id))
        logger.debug("Upserted %s %s", self.label, item.id)
        return item

    async def remove(self, record_id: str) -> None:
        """Delete a record unconditionally (missing records are ignored)."""
        await self.store.commit([WriteOp.delete(self.collection, record_id)])
        logger.debug("Removed %s %s", self.label, record_id)


class UserRepository(_Repository):
    collection = "users"
    model = User
    label = "User"

    async def list(self, *, role: str | None = None) -> list[User]:
        """Users, optionally filtered by role, oldest first."""
        users = await self.all()
        if role:
            users = [u for u in users if u.role == role]
        users.sort(key=lambda u: u.created_at)
        return users

    async def get_by_email(self, email: str) -> User | None:
        email = email.strip().lower()
        for user in await self.all():
            if user.email.lower() == email:
                return user
        return None


class ReportRepository(_Repository):
    collection = "reports"
    model = Report
    label = "Report"

    async def list(
        self,
        *,
        owner_id: str | None = None,
        status: str | None = None,
        exclude_status: str | None = None,
    ) -> list[Report]:
        """Reports, most recent first.

        Args:
            owner_id: Only reports filed by this citizen
            status: Only reports in this status
            exclude_status: Drop reports in this status
        """
        results = []
        for report in await self.all():
            if owner_id and report.user_id != owner_id:
                continue
            if status and report.status != status:
                continue
            if exclude_status and report.status == exclude_status:
                continue
            results.append(report)
        results.sort(key=lambda r: r.created_at, reverse=True)
        return results

    async def list_for(self, user: User) -> list[Report]:
        """Reports visible to a user.

        Coordinators see every report, citizens the reports they filed,
        and responders the reports they hold an assignment for.
        """
        if user.role == "coordinator":
            return await self.list()
        if user.role == "citizen":
            return await self.list(owner_id=user.id)

        assignments = await AssignmentRepository(self.store).list(responder_id=user.id)
        report_ids = {a.report_id for a in assignments}
        return [r for r in await self.list() if r.id in report_ids]


class AssignmentRepository(_Repository):
    collection = "assignments"
    model = Assignment
    label = "Assignment"

    async def list(
        self,
        *,
        responder_id: str | None = None,
        report_id: str | None = None,
        active_only: bool = False,
    ) -> list[Assignment]:
        """Assignments, oldest first.

        Args:
            responder_id: Only assignments for this responder
            report_id: Only assignments for this report
            active_only: Drop completed assignments
        """
        results = []
        for assignment in await self.all():
            if responder_id and assignment.responder_id != responder_id:
                continue
            if report_id and assignment.report_id != report_id:
                continue
            if active_only and not assignment.is_active:
                continue
            results.append(assignment)
        results.sort(key=lambda a: a.created_at)
        return results
