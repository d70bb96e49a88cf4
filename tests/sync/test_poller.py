"""Tests for the polling sync client."""

import asyncio
import contextlib

from resq.sync.poller import ViewPoller
from resq.sync.views import fetch_coordinator_view


class TestPollOnce:
    async def test_only_changed_views_returned(self, store, coordinator, citizen):
        poller = ViewPoller(store, fetch_coordinator_view, interval=0.01)

        first = await poller.poll_once()
        assert first is not None
        assert await poller.poll_once() is None

        await coordinator.submit_report(citizen.id, "fire", "Smoke", "1,2")
        changed = await poller.poll_once()
        assert changed.dashboard.open_count == 1

    async def test_default_interval_from_config(self, store):
        assert ViewPoller(store, fetch_coordinator_view).interval == 5.0


class TestUpdates:
    async def test_wakes_on_store_change(self, store, coordinator, citizen):
        poller = ViewPoller(store, fetch_coordinator_view, interval=30)
        updates = poller.updates()

        first = await asyncio.wait_for(anext(updates), 1)
        assert first.dashboard.open_count == 0

        pending = asyncio.ensure_future(anext(updates))
        await asyncio.sleep(0)
        await coordinator.submit_report(citizen.id, "fire", "Smoke", "1,2")

        second = await asyncio.wait_for(pending, 1)
        assert second.dashboard.open_count == 1
        await updates.aclose()


class TestRun:
    async def test_survives_fetch_errors(self, store):
        calls = 0
        seen = asyncio.Queue()

        async def flaky(s):
            nonlocal calls
            calls += 1
            if calls == 1:
                raise RuntimeError("store unreachable")
            return await fetch_coordinator_view(s)

        async def on_update(view):
            await seen.put(view)

        task = asyncio.create_task(ViewPoller(store, flaky, interval=0).run(on_update))
        try:
            view = await asyncio.wait_for(seen.get(), 1)
        finally:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        assert view.dashboard.open_count == 0
        assert calls >= 2

    async def test_accepts_plain_callback(self, store, coordinator, citizen):
        seen = []
        task = asyncio.create_task(
            ViewPoller(store, fetch_coordinator_view, interval=0).run(seen.append)
        )
        try:
            for _ in range(50):
                await asyncio.sleep(0)
            await coordinator.submit_report(citizen.id, "fire", "Smoke", "1,2")
            for _ in range(50):
                await asyncio.sleep(0)
        finally:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task

        assert [v.dashboard.open_count for v in seen] == [0, 1]
