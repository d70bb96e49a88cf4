"""Polling sync client for the role views.

Each actor runs its own ``ViewPoller``: fetch the view, hand it to the
caller if it changed, wait, repeat. Pollers never talk to each other.
With a store that supports change notification the wait ends early when
any actor commits, so the poll interval only bounds staleness; otherwise
it is plain fixed-interval polling.
"""

import inspect
import logging
from collections.abc import AsyncIterator, Awaitable, Callable

from pydantic import BaseModel

from resq.core.config import get_config
from resq.store.records import RecordStore

logger = logging.getLogger(__name__)

Fetch = Callable[[RecordStore], Awaitable[BaseModel]]


class ViewPoller:
    """Repeatedly fetch one role view from an open store.

    Usage::

        async with RecordStore() as store:
            poller = ViewPoller(store, fetch_coordinator_view)
            async for view in poller.updates():
                render(view)
    """

    def __init__(self, store: RecordStore, fetch: Fetch, *, interval: float | None = None):
        self.store = store
        self.fetch = fetch
        self.interval = interval if interval is not None else get_config().poll_interval
        self._last: dict | None = None

    async def poll_once(self) -> BaseModel | None:
        """Fetch the view; return it only if it differs from the last one seen."""
        view = await self.fetch(self.store)
        snapshot = view.model_dump(mode="json")
        if snapshot == self._last:
            return None
        self._last = snapshot
        return view

    async def updates(self) -> AsyncIterator[BaseModel]:
        """Yield each changed view, forever.

        Fetch errors propagate to the caller; use ``run`` for a loop that
        survives them.
        """
        while True:
            revision = self.store.revision
            view = await self.poll_once()
            if view is not None:
                yield view
            await self.store.wait_for_change(revision, self.interval)

    async def run(self, on_update: Callable[[BaseModel], object]) -> None:
        """Poll until cancelled, passing each changed view to ``on_update``.

        Errors from a single tick are logged and the loop keeps going.
        ``on_update`` may be a plain function or a coroutine function.
        """
        logger.info("View poller started (interval=%.1fs)", self.interval)
        while True:
            revision = self.store.revision
            try:
                view = await self.poll_once()
                if view is not None:
                    result = on_update(view)
                    if inspect.isawaitable(result):
                        await result
            except Exception:
                logger.exception("View poll failed")
            await self.store.wait_for_change(revision, self.interval)
