"""Shared pytest fixtures."""

import os
from unittest.mock import patch

import pytest

from resq.core import config
from resq.dispatch.coordinator import DispatchCoordinator
from resq.dispatch.models import User
from resq.dispatch.repositories import UserRepository
from resq.severity import SeverityAssessment
from resq.store.records import RecordStore


@pytest.fixture(autouse=True)
def _in_memory_store():
    """Force in-memory mode with no LLM provider, and start every test empty."""
    env = {
        "COSMOS_ENDPOINT": "",
        "COSMOS_KEY": "",
        "AZURE_OPENAI_ENDPOINT": "",
        "ANTHROPIC_API_KEY": "",
    }
    with (
        patch.dict(os.environ, env, clear=False),
        patch("resq.store.records.load_dotenv"),
        patch("resq.core.config.load_dotenv"),
    ):
        config._config = None
        RecordStore.reset_memory()
        yield
    RecordStore.reset_memory()
    config._config = None


@pytest.fixture
async def store():
    async with RecordStore() as s:
        yield s


async def _make_user(store, **fields) -> User:
    user = User(**fields)
    return await UserRepository(store).upsert(user)


@pytest.fixture
async def citizen(store):
    return await _make_user(store, email="citizen@resq.com", full_name="Joker", role="citizen")


@pytest.fixture
async def responder(store):
    return await _make_user(
        store, email="responder@resq.com", full_name="Shai Na", role="responder"
    )


@pytest.fixture
async def second_responder(store):
    return await _make_user(store, email="mike@resq.com", full_name="Jorlyn Row", role="responder")


@pytest.fixture
async def coordinator_user(store):
    return await _make_user(
        store, email="admin@resq.com", full_name="Admin User", role="coordinator"
    )


async def fixed_classifier(description: str, category: str) -> SeverityAssessment:
    """Deterministic stand-in for the LLM classifier."""
    return SeverityAssessment(severity="high", reason="Test classifier")


@pytest.fixture
def coordinator(store):
    return DispatchCoordinator(store, classifier=fixed_classifier)
