"""Tests for the dispatch coordinator state machine."""

import asyncio
from unittest.mock import AsyncMock, patch

import pytest

from resq.dispatch.availability import check_invariants
from resq.dispatch.coordinator import DispatchCoordinator
from resq.dispatch.errors import InvalidInputError, NotFoundError, PreconditionError
from resq.dispatch.repositories import AssignmentRepository, ReportRepository, UserRepository
from resq.severity import SeverityAssessment
from resq.store.records import RecordStore


async def _audit(store) -> list[str]:
    return check_invariants(
        await UserRepository(store).all(),
        await ReportRepository(store).all(),
        await AssignmentRepository(store).all(),
    )


@pytest.fixture
async def report(coordinator, citizen):
    return await coordinator.submit_report(
        citizen.id, "fire", "Small brush fire near the playground", "34.0522,-118.2437"
    )


@pytest.fixture
async def dispatched(coordinator, report, responder):
    return await coordinator.assign_responder(report.id, responder.id)


class TestSubmitReport:
    async def test_creates_pending_report(self, store, coordinator, citizen):
        report = await coordinator.submit_report(
            citizen.id, "medical", "  Person collapsed  ", "34.05,-118.24"
        )

        assert report.status == "pending"
        assert report.description == "Person collapsed"
        assert report.severity == "high"
        assert report.severity_reason == "Test classifier"
        assert report.location.latitude == 34.05
        stored = await ReportRepository(store).get(report.id)
        assert stored.user_id == citizen.id

    @pytest.mark.parametrize(
        ("category", "description", "location", "match"),
        [
            ("fire", "", "1,2", "Description"),
            ("fire", "   ", "1,2", "Description"),
            ("earthquake", "Shaking", "1,2", "Unknown category"),
            ("fire", "Smoke", "", "Location"),
            ("fire", "Smoke", "north side", "Location"),
            ("fire", "Smoke", 5, "Location"),
            ("fire", "Smoke", (1.0, 2.0, 3.0), "Location"),
        ],
    )
    async def test_rejects_invalid_input(
        self, store, coordinator, citizen, category, description, location, match
    ):
        with pytest.raises(InvalidInputError, match=match):
            await coordinator.submit_report(citizen.id, category, description, location)
        assert await ReportRepository(store).all() == []

    async def test_unknown_citizen(self, coordinator):
        with pytest.raises(NotFoundError):
            await coordinator.submit_report("ghost", "fire", "Smoke", "1,2")

    async def test_only_citizens_submit(self, coordinator, responder):
        with pytest.raises(PreconditionError, match="not a citizen"):
            await coordinator.submit_report(responder.id, "fire", "Smoke", "1,2")

    async def test_fire_keywords_without_classifier(self, store, citizen):
        """No provider configured: keyword fallback still flags the report high."""
        report = await DispatchCoordinator(store).submit_report(
            citizen.id, "fire", "building on fire, people trapped", "34.05,-118.24"
        )

        assert report.severity == "high"
        assert report.status == "pending"
        assert "fallback" in report.severity_reason

    async def test_classifier_raising_falls_back(self, store, citizen):
        failing = AsyncMock(side_effect=RuntimeError("boom"))
        coordinator = DispatchCoordinator(store, classifier=failing)

        trapped = await coordinator.submit_report(
            citizen.id, "rescue", "Family TRAPPED on roof", "1,2"
        )
        calm = await coordinator.submit_report(citizen.id, "flood", "Water in street", "1,2")

        assert (trapped.severity, trapped.severity_reason) == (
            "high",
            "Keywords detected (AI unavailable)",
        )
        assert (calm.severity, calm.severity_reason) == ("medium", "AI unavailable")

    async def test_classifier_receives_description_and_category(self, store, citizen):
        classifier = AsyncMock(return_value=SeverityAssessment(severity="low", reason="Minor"))
        coordinator = DispatchCoordinator(store, classifier=classifier)

        report = await coordinator.submit_report(citizen.id, "flood", "Puddle", "1,2")

        classifier.assert_awaited_once_with("Puddle", "flood")
        assert report.severity == "low"


class TestAssignResponder:
    async def test_dispatch_updates_three_records(self, store, dispatched, report, responder):
        assert dispatched.status == "dispatched"
        assert dispatched.report_id == report.id
        assert (await ReportRepository(store).get(report.id)).status == "assigned"
        assert (await UserRepository(store).get(responder.id)).availability == "busy"
        assert await _audit(store) == []

    async def test_report_must_be_pending(self, coordinator, dispatched, report, second_responder):
        with pytest.raises(PreconditionError, match="not pending"):
            await coordinator.assign_responder(report.id, second_responder.id)

    async def test_unknown_report(self, coordinator, responder):
        with pytest.raises(NotFoundError, match="Report"):
            await coordinator.assign_responder("missing", responder.id)

    async def test_target_must_be_responder(self, coordinator, report, citizen):
        with pytest.raises(PreconditionError, match="not a responder"):
            await coordinator.assign_responder(report.id, citizen.id)

    async def test_busy_responder_rejected(self, coordinator, citizen, responder, dispatched):
        second = await coordinator.submit_report(citizen.id, "flood", "Water rising", "1,2")

        with pytest.raises(PreconditionError, match="busy"):
            await coordinator.assign_responder(second.id, responder.id)

    async def test_busy_responder_override(
        self, store, coordinator, citizen, responder, dispatched
    ):
        second = await coordinator.submit_report(citizen.id, "flood", "Water rising", "1,2")

        assignment = await coordinator.assign_responder(second.id, responder.id, allow_busy=True)

        assert assignment.responder_id == responder.id
        active = await AssignmentRepository(store).list(responder_id=responder.id)
        assert len(active) == 2

    async def test_busy_check_uses_assignments_not_stored_flag(
        self, store, coordinator, citizen, responder, dispatched
    ):
        users = UserRepository(store)
        stale = await users.get(responder.id)
        stale.availability = "idle"
        await users.upsert(stale)
        second = await coordinator.submit_report(citizen.id, "flood", "Water rising", "1,2")

        with pytest.raises(PreconditionError, match="busy"):
            await coordinator.assign_responder(second.id, responder.id)


class TestAcceptAssignment:
    async def test_accept(self, store, coordinator, dispatched, responder):
        accepted = await coordinator.accept_assignment(dispatched.id, responder_id=responder.id)

        assert accepted.status == "accepted"
        assert accepted.updated_at is not None
        assert (await UserRepository(store).get(responder.id)).availability == "busy"
        assert await _audit(store) == []

    async def test_accept_twice_rejected(self, coordinator, dispatched):
        await coordinator.accept_assignment(dispatched.id)
        with pytest.raises(PreconditionError, match="not dispatched"):
            await coordinator.accept_assignment(dispatched.id)

    async def test_other_responder_rejected(self, coordinator, dispatched, second_responder):
        with pytest.raises(PreconditionError, match="different responder"):
            await coordinator.accept_assignment(dispatched.id, responder_id=second_responder.id)

    async def test_unknown_assignment(self, coordinator):
        with pytest.raises(NotFoundError, match="Assignment"):
            await coordinator.accept_assignment("missing")


class TestDeclineAssignment:
    async def test_decline_returns_report_to_pool(
        self, store, coordinator, dispatched, report, responder
    ):
        await coordinator.decline_assignment(dispatched.id, responder_id=responder.id)

        assert (await ReportRepository(store).get(report.id)).status == "pending"
        assert await AssignmentRepository(store).list(report_id=report.id) == []
        assert (await UserRepository(store).get(responder.id)).availability == "idle"
        assert await _audit(store) == []

    async def test_responder_stays_busy_with_other_assignment(
        self, store, coordinator, citizen, responder, dispatched
    ):
        second = await coordinator.submit_report(citizen.id, "flood", "Water rising", "1,2")
        other = await coordinator.assign_responder(second.id, responder.id, allow_busy=True)

        await coordinator.decline_assignment(other.id)

        assert (await UserRepository(store).get(responder.id)).availability == "busy"
        assert (await ReportRepository(store).get(second.id)).status == "pending"

    async def test_decline_after_accept_rejected(self, store, coordinator, dispatched, report):
        await coordinator.accept_assignment(dispatched.id)

        with pytest.raises(PreconditionError, match="only dispatched"):
            await coordinator.decline_assignment(dispatched.id)
        assert (await ReportRepository(store).get(report.id)).status == "assigned"

    async def test_decline_with_missing_report(self, store, coordinator, dispatched, report):
        await ReportRepository(store).remove(report.id)

        await coordinator.decline_assignment(dispatched.id)

        assert await AssignmentRepository(store).get(dispatched.id) is None

    async def test_dispatch_decline_redispatch(
        self, store, coordinator, dispatched, report, second_responder
    ):
        await coordinator.decline_assignment(dispatched.id)

        again = await coordinator.assign_responder(report.id, second_responder.id)

        assert again.responder_id == second_responder.id
        assert await _audit(store) == []


class TestAdvance:
    async def test_full_happy_path(self, store, coordinator, citizen, responder):
        bystander = await coordinator.submit_report(citizen.id, "flood", "Water rising", "1,2")
        bystander_etag = (await ReportRepository(store).get(bystander.id)).etag
        report = await coordinator.submit_report(
            citizen.id, "medical", "Car accident, driver bleeding", "34.05,-118.24"
        )

        assignment = await coordinator.assign_responder(report.id, responder.id)
        await coordinator.accept_assignment(assignment.id, responder_id=responder.id)
        await coordinator.advance(assignment.id, "on_site", responder_id=responder.id)
        done = await coordinator.advance(assignment.id, "completed", responder_id=responder.id)

        assert done.status == "completed"
        assert (await ReportRepository(store).get(report.id)).status == "resolved"
        assert (await UserRepository(store).get(responder.id)).availability == "idle"
        untouched = await ReportRepository(store).get(bystander.id)
        assert untouched.status == "pending"
        assert untouched.etag == bystander_etag
        assert len(await AssignmentRepository(store).all()) == 1
        assert await _audit(store) == []

    @pytest.mark.parametrize(
        ("setup", "target"),
        [
            ([], "on_site"),
            ([], "completed"),
            (["accepted"], "completed"),
            (["accepted"], "accepted"),
            (["accepted", "on_site"], "accepted"),
            (["accepted", "on_site"], "dispatched"),
            (["accepted", "on_site", "completed"], "completed"),
        ],
    )
    async def test_out_of_sequence_rejected(self, coordinator, dispatched, setup, target):
        for step in setup:
            if step == "accepted":
                await coordinator.accept_assignment(dispatched.id)
            else:
                await coordinator.advance(dispatched.id, step)

        with pytest.raises(PreconditionError, match="Cannot move"):
            await coordinator.advance(dispatched.id, target)

    async def test_unknown_status(self, coordinator, dispatched):
        with pytest.raises(InvalidInputError, match="Unknown assignment status"):
            await coordinator.advance(dispatched.id, "finished")

    async def test_other_responder_rejected(self, coordinator, dispatched, second_responder):
        await coordinator.accept_assignment(dispatched.id)
        with pytest.raises(PreconditionError, match="different responder"):
            await coordinator.advance(dispatched.id, "on_site", responder_id=second_responder.id)

    async def test_completion_keeps_override_responder_busy(
        self, store, coordinator, citizen, responder, dispatched
    ):
        second = await coordinator.submit_report(citizen.id, "flood", "Water rising", "1,2")
        await coordinator.assign_responder(second.id, responder.id, allow_busy=True)

        await coordinator.accept_assignment(dispatched.id)
        await coordinator.advance(dispatched.id, "on_site")
        await coordinator.advance(dispatched.id, "completed")

        assert (await UserRepository(store).get(responder.id)).availability == "busy"


class _YieldingStore(RecordStore):
    """In-memory store whose reads yield to the event loop, like a network call would."""

    async def get(self, collection, record_id):
        await asyncio.sleep(0)
        return await super().get(collection, record_id)

    async def read_all(self, collection):
        await asyncio.sleep(0)
        return await super().read_all(collection)


class TestConcurrency:
    async def test_concurrent_double_dispatch(
        self, coordinator, report, responder, second_responder
    ):
        async with _YieldingStore() as store_a, _YieldingStore() as store_b:
            first = DispatchCoordinator(store_a)
            second = DispatchCoordinator(store_b)

            results = await asyncio.gather(
                first.assign_responder(report.id, responder.id),
                second.assign_responder(report.id, second_responder.id),
                return_exceptions=True,
            )

            errors = [r for r in results if isinstance(r, Exception)]
            assert len(errors) == 1
            assert isinstance(errors[0], PreconditionError)

            active = await AssignmentRepository(store_a).list(report_id=report.id, active_only=True)
            assert len(active) == 1
            assert await _audit(store_a) == []

    async def test_conflict_message_names_record(self, store, coordinator, report, responder):
        stale = DispatchCoordinator(store)
        stale_report = await stale.reports.get(report.id)
        await coordinator.assign_responder(report.id, responder.id)

        stale_report.status = "resolved"
        with pytest.raises(PreconditionError, match="changed by another actor"):
            await stale._commit("test", [(stale_report, stale.reports.put_op(stale_report))])

    async def test_independent_updates_do_not_clobber(
        self, store, coordinator, citizen, responder, second_responder
    ):
        """Two actors touching different reports both keep their writes."""
        first = await coordinator.submit_report(citizen.id, "fire", "Smoke", "1,2")
        second = await coordinator.submit_report(citizen.id, "flood", "Water", "1,2")

        async with _YieldingStore() as store_a, _YieldingStore() as store_b:
            await asyncio.gather(
                DispatchCoordinator(store_a).assign_responder(first.id, responder.id),
                DispatchCoordinator(store_b).assign_responder(second.id, second_responder.id),
            )

        reports = ReportRepository(store)
        assert (await reports.get(first.id)).status == "assigned"
        assert (await reports.get(second.id)).status == "assigned"
        assert await _audit(store) == []


async def test_classifier_timeout_does_not_block_submit(store, citizen):
    """A hung provider call is cut off by the classifier timeout."""

    async def hang(prompt):
        await asyncio.sleep(10)

    with (
        patch("resq.severity.classifier.llm.configured_provider", return_value="anthropic"),
        patch("resq.severity.classifier._call_anthropic", side_effect=hang),
        patch("resq.severity.classifier.get_config") as mock_config,
    ):
        mock_config.return_value.classifier_timeout = 0.01
        mock_config.return_value.severity_keywords = ("fire",)
        report = await DispatchCoordinator(store).submit_report(
            citizen.id, "fire", "Kitchen fire", "1,2"
        )

    assert report.severity == "high"
    assert report.severity_reason == "Keywords detected (AI unavailable)"
