"""Versioned record store shared by every ResQ actor.

Holds the three dispatch collections (users, reports, assignments) plus a
single "current session" slot. Every record carries an ETag; writes are
per-record compare-and-swap, and ``commit()`` applies a batch of writes
entirely or not at all. Actors never overwrite a whole collection, so two
actors touching different records never lose each other's updates.

When ``COSMOS_ENDPOINT`` is not set, falls back to an in-memory store
for local development and testing. The in-memory backend also wakes
``wait_for_change`` callers after each commit; Cosmos DB has no such
channel and callers fall back to plain polling.
"""

import asyncio
import contextlib
import logging
import os
from dataclasses import dataclass
from typing import ClassVar, Literal, Self

from azure.cosmos import exceptions as cosmos_exceptions
from dotenv import load_dotenv

from resq.core.config import get_cosmos_database

logger = logging.getLogger(__name__)

CONTAINER_NAME = "resq-records"
PARTITION = "resq"  # Single logical partition so batches can span collections
COLLECTIONS = frozenset({"users", "reports", "assignments"})
_SESSION_ID = "session.current"


class WriteConflictError(RuntimeError):
    """A compare-and-swap precondition failed; nothing in the batch was written."""

    def __init__(self, collection: str, record_id: str, detail: str = "") -> None:
        self.collection = collection
        self.record_id = record_id
        message = f"Write conflict on {collection}/{record_id}"
        super().__init__(f"{message}: {detail}" if detail else message)


@dataclass(frozen=True)
class StoredRecord:
    """A record as read from the store, with the version it was read at."""

    id: str
    data: dict
    etag: str


@dataclass(frozen=True)
class WriteOp:
    """One record write inside a ``commit()`` batch.

    ``etag`` semantics for ``put``: None means the record must not exist yet;
    a value means the stored record must still carry that ETag. For
    ``delete``, None deletes unconditionally.
    """

    action: Literal["put", "delete"]
    collection: str
    record_id: str
    data: dict | None = None
    etag: str | None = None

    @classmethod
    def put(cls, collection: str, data: dict, etag: str | None = None) -> Self:
        return cls("put", collection, data["id"], data=data, etag=etag)

    @classmethod
    def delete(cls, collection: str, record_id: str, etag: str | None = None) -> Self:
        return cls("delete", collection, record_id, etag=etag)


def _doc_id(collection: str, record_id: str) -> str:
    return f"{collection}.{record_id}"


class RecordStore:
    """Async access to the shared record collections.

    Falls back to in-memory storage when Cosmos DB is not configured.

    Usage::

        async with RecordStore() as store:
            reports = await store.read_all("reports")
            await store.commit([WriteOp.put("reports", data, etag)])
    """

    # Shared in-memory store across instances (persists for process lifetime)
    _memory: ClassVar[dict[str, dict[str, StoredRecord]]] = {}
    _session: ClassVar[dict | None] = None
    _revision: ClassVar[int] = 0
    _waiters: ClassVar[list[asyncio.Future]] = []

    def __init__(self) -> None:
        """Initialize store. Call ``__aenter__`` to connect."""
        self._client = None
        self._container = None
        self._credential = None
        self._in_memory = False

    @classmethod
    def reset_memory(cls) -> None:
        """Drop all in-memory records, the session slot, and pending waiters."""
        cls._memory.clear()
        cls._session = None
        cls._revision = 0
        for fut in cls._waiters:
            if not fut.done() and not fut.get_loop().is_closed():
                fut.cancel()
        cls._waiters.clear()

    async def __aenter__(self) -> Self:
        """Connect to Cosmos DB, or fall back to in-memory mode."""
        load_dotenv()

        endpoint = os.getenv("COSMOS_ENDPOINT")
        key = os.getenv("COSMOS_KEY")

        if key:
            from azure.cosmos.aio import CosmosClient

            self._client = CosmosClient(endpoint, credential=key)
        elif endpoint:
            from azure.cosmos.aio import CosmosClient
            from azure.identity.aio import DefaultAzureCredential

            self._credential = DefaultAzureCredential()
            self._client = CosmosClient(endpoint, credential=self._credential)
        else:
            logger.debug("No COSMOS_ENDPOINT set, using in-memory record store (dev only)")
            self._in_memory = True
            return self

        database = self._client.get_database_client(get_cosmos_database())
        self._container = database.get_container_client(CONTAINER_NAME)
        logger.info("Connected to Cosmos DB: %s/%s", get_cosmos_database(), CONTAINER_NAME)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Close connections."""
        if self._client:
            await self._client.close()
            self._client = None
        if self._credential:
            await self._credential.close()
            self._credential = None
        self._container = None

    @property
    def revision(self) -> int:
        """Monotonic write counter (in-memory mode; always 0 against Cosmos DB)."""
        return RecordStore._revision if self._in_memory else 0

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def read_all(self, collection: str) -> list[StoredRecord]:
        """Read every record in a collection.

        Args:
            collection: One of ``users``, ``reports``, ``assignments``

        Returns:
            Records in storage order (callers sort as needed)
        """
        _check_collection(collection)

        if self._in_memory:
            return list(self._memory.get(collection, {}).values())

        query = "SELECT * FROM c WHERE c.collection = @collection"
        parameters: list[dict] = [{"name": "@collection", "value": collection}]

        records = []
        async for item in self._container.query_items(
            query=query,
            parameters=parameters,
            partition_key=PARTITION,
        ):
            record = item["record"]
            records.append(StoredRecord(id=record["id"], data=record, etag=item["_etag"]))
        return records

    async def get(self, collection: str, record_id: str) -> StoredRecord | None:
        """Point-read one record.

        Returns:
            The record, or None if it does not exist
        """
        _check_collection(collection)

        if self._in_memory:
            return self._memory.get(collection, {}).get(record_id)

        try:
            item = await self._container.read_item(
                item=_doc_id(collection, record_id),
                partition_key=PARTITION,
            )
        except cosmos_exceptions.CosmosResourceNotFoundError:
            logger.debug("Record not found: %s/%s", collection, record_id)
            return None
        return StoredRecord(id=record_id, data=item["record"], etag=item["_etag"])

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def commit(self, ops: list[WriteOp]) -> dict[tuple[str, str], str]:
        """Apply a batch of record writes atomically.

        Every precondition is checked before anything is written; one stale
        ETag rejects the whole batch.

        Args:
            ops: Writes to apply (at most one per record)

        Returns:
            Mapping of ``(collection, record_id)`` to the new ETag for each put

        Raises:
            WriteConflictError: If any precondition fails
            ValueError: If the batch is empty, names an unknown collection,
                or touches the same record twice
        """
        if not ops:
            raise ValueError("Empty write batch")
        seen: set[tuple[str, str]] = set()
        for op in ops:
            _check_collection(op.collection)
            key = (op.collection, op.record_id)
            if key in seen:
                raise ValueError(f"Record {op.collection}/{op.record_id} written twice in a batch")
            seen.add(key)

        if self._in_memory:
            return self._commit_memory(ops)
        return await self._commit_cosmos(ops)

    def _commit_memory(self, ops: list[WriteOp]) -> dict[tuple[str, str], str]:
        """Check-then-apply with no await in between, so batches never interleave."""
        for op in ops:
            current = self._memory.get(op.collection, {}).get(op.record_id)
            if op.action == "put":
                if op.etag is None and current is not None:
                    raise WriteConflictError(op.collection, op.record_id, "already exists")
                if op.etag is not None and (current is None or current.etag != op.etag):
                    raise WriteConflictError(op.collection, op.record_id, "stale version")
            elif op.etag is not None and (current is None or current.etag != op.etag):
                raise WriteConflictError(op.collection, op.record_id, "stale version")

        RecordStore._revision += 1
        etags: dict[tuple[str, str], str] = {}
        for op in ops:
            bucket = self._memory.setdefault(op.collection, {})
            if op.action == "put":
                etag = f"{RecordStore._revision}:{op.record_id}"
                bucket[op.record_id] = StoredRecord(id=op.record_id, data=dict(op.data), etag=etag)
                etags[(op.collection, op.record_id)] = etag
            else:
                bucket.pop(op.record_id, None)

        logger.debug("Committed %d write(s) at revision %d (in-memory)", len(ops), self._revision)
        self._notify()
        return etags

    async def _commit_cosmos(self, ops: list[WriteOp]) -> dict[tuple[str, str], str]:
        """Run the batch as a Cosmos DB transactional batch in the shared partition."""
        batch: list[tuple] = []
        for op in ops:
            doc_id = _doc_id(op.collection, op.record_id)
            if op.action == "put":
                body = {
                    "id": doc_id,
                    "pk": PARTITION,
                    "collection": op.collection,
                    "record": op.data,
                }
                if op.etag is None:
                    batch.append(("create", (body,)))
                else:
                    batch.append(("replace", (doc_id, body), {"if_match_etag": op.etag}))
            elif op.etag is None:
                batch.append(("delete", (doc_id,)))
            else:
                batch.append(("delete", (doc_id,), {"if_match_etag": op.etag}))

        try:
            results = await self._container.execute_item_batch(
                batch_operations=batch,
                partition_key=PARTITION,
            )
        except cosmos_exceptions.CosmosBatchOperationError as exc:
            failed = ops[exc.error_index] if 0 <= exc.error_index < len(ops) else ops[0]
            raise WriteConflictError(failed.collection, failed.record_id, str(exc)) from exc

        etags: dict[tuple[str, str], str] = {}
        for op, result in zip(ops, results, strict=False):
            if op.action == "put":
                etags[(op.collection, op.record_id)] = result.get("eTag", "")
        logger.debug("Committed %d write(s) to Cosmos DB", len(ops))
        return etags

    # ------------------------------------------------------------------
    # Session slot
    # ------------------------------------------------------------------

    async def get_session(self) -> dict | None:
        """Read the current-session slot (identity continuity across restarts)."""
        if self._in_memory:
            return dict(RecordStore._session) if RecordStore._session else None

        try:
            item = await self._container.read_item(item=_SESSION_ID, partition_key=PARTITION)
        except cosmos_exceptions.CosmosResourceNotFoundError:
            return None
        return item.get("record")

    async def set_session(self, session: dict) -> None:
        """Overwrite the current-session slot."""
        if self._in_memory:
            RecordStore._session = dict(session)
            return

        await self._container.upsert_item(
            body={"id": _SESSION_ID, "pk": PARTITION, "collection": "session", "record": session}
        )

    async def clear_session(self) -> None:
        """Empty the current-session slot."""
        if self._in_memory:
            RecordStore._session = None
            return

        with contextlib.suppress(cosmos_exceptions.CosmosResourceNotFoundError):
            await self._container.delete_item(item=_SESSION_ID, partition_key=PARTITION)

    # ------------------------------------------------------------------
    # Change notification
    # ------------------------------------------------------------------

    async def wait_for_change(self, since: int, timeout: float) -> int:
        """Wait until a commit moves the revision past ``since``, or ``timeout`` elapses.

        Returns:
            The revision observed when the wait ended
        """
        if not self._in_memory:
            await asyncio.sleep(timeout)
            return since

        if RecordStore._revision > since:
            return RecordStore._revision

        fut = asyncio.get_running_loop().create_future()
        RecordStore._waiters.append(fut)
        try:
            with contextlib.suppress(TimeoutError):
                await asyncio.wait_for(fut, timeout)
        finally:
            with contextlib.suppress(ValueError):
                RecordStore._waiters.remove(fut)
        return RecordStore._revision

    @classmethod
    def _notify(cls) -> None:
        waiters, cls._waiters = cls._waiters, []
        for fut in waiters:
            if not fut.done() and not fut.get_loop().is_closed():
                fut.set_result(cls._revision)


def _check_collection(collection: str) -> None:
    if collection not in COLLECTIONS:
        raise ValueError(f"Unknown collection: {collection}")
