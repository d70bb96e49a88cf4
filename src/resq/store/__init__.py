"""Shared record storage for users, reports, and assignments."""

from resq.store.records import RecordStore, StoredRecord, WriteConflictError, WriteOp

__all__ = [
    "RecordStore",
    "StoredRecord",
    "WriteConflictError",
    "WriteOp",
]
