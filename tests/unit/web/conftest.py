"""Fixtures for route tests: a mocked service container."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from obracalc.services import Services


@pytest.fixture
def services():
    """Service container whose async collaborators are AsyncMocks."""
    mock = MagicMock(spec=Services)
    mock.ingestion = MagicMock()
    mock.ingestion.ingest = AsyncMock()
    mock.ingestion.get_job_status = AsyncMock()
    mock.jobs = MagicMock()
    mock.jobs.list_recent = AsyncMock(return_value=[])
    mock.store = MagicMock()
    mock.store.delete_by_year = AsyncMock()
    mock.store.list_by_year = AsyncMock(return_value=[])
    mock.store.count_by_year = AsyncMock(return_value=0)
    mock.search = MagicMock()
    mock.search.search = AsyncMock(return_value=[])
    mock.resolver = MagicMock()
    mock.resolver.resolve = AsyncMock()
    mock.orchestrator = MagicMock()
    mock.orchestrator.generate_budget = AsyncMock()
    return mock
