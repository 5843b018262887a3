"""
Shared test fixtures.

Fixtures wiring the fakes in tests/fakes.py (storage, AI service, credit
ledger, checkpoint store, redirector) plus a mock Supabase client.
Async code is driven with asyncio.run() inside ordinary tests.
"""

import sys
from pathlib import Path

# Add project directory to Python path
backend_dir = Path(__file__).parent.parent
sys.path.insert(0, str(backend_dir))

import pytest
from unittest.mock import patch
from datetime import datetime, timezone
from typing import Generator

from integrations.payments import DeferredRedirector
from services.checkpoint_service import MemoryCheckpointStore
from services.credit_service import InMemoryCreditLedger
from tests.fakes import FakeImageStorage, FakeListingAI


# ===================
# MOCK SUPABASE CLIENT
# ===================

class MockSupabaseResponse:
    """Mock Supabase query response."""

    def __init__(self, data: list = None, count: int = None):
        self.data = data if data is not None else []
        self.count = count if count is not None else len(self.data)


class MockSupabaseQuery:
    """Mock Supabase query builder with chainable methods."""

    def __init__(self, data: list = None, count: int = None, calls: list = None):
        self._data = data or []
        self._count = count
        self._calls = calls if calls is not None else []

    def select(self, *args, **kwargs):
        return self

    def insert(self, data):
        if isinstance(data, dict):
            data = [data]
        for item in data:
            item.setdefault("id", "test-uuid-123")
            item.setdefault("created_at", datetime.now(timezone.utc).isoformat() )
        self._calls.append(("insert", data))
        self._data = data
        return self

    def upsert(self, data):
        self._calls.append(("upsert", data))
        self._data = [data] if isinstance(data, dict) else data
        return self

    def update(self, data):
        self._calls.append(("update", data))
        self._data = [{**item, **data} for item in self._data] or [data]
        return self

    def delete(self):
        self._calls.append(("delete", None))
        return self

    def eq(self, column, value):
        self._calls.append(("eq", (column, value)))
        return self

    def execute(self) -> MockSupabaseResponse:
        return MockSupabaseResponse(
            data=self._data,
            count=self._count if self._count is not None else len(self._data)
        )


class MockSupabaseTable:
    """Mock Supabase table with configurable responses."""

    def __init__(self, data: list = None, count: int = None, calls: list = None):
        self._data = data or []
        self._count = count
        self._calls = calls

    def _query(self) -> MockSupabaseQuery:
        return MockSupabaseQuery(self._data.copy(), self._count, self._calls)

    def select(self, *args, **kwargs):
        return self._query()

    def insert(self, data):
        return self._query().insert(data)

    def upsert(self, data):
        return self._query().upsert(data)

    def update(self, data):
        return self._query().update(data)

    def delete(self):
        return self._query().delete()


class MockSupabaseClient:
    """Mock Supabase client with table data and RPC answers."""

    def __init__(self):
        self._tables = {}
        self._rpc = {}
        self.calls: list = []
        self.rpc_calls: list = []

    def set_table_data(self, table_name: str, data: list, count: int = None):
        """Configure mock data for a table."""
        self._tables[table_name] = {"data": data, "count": count}

    def set_rpc_result(self, name: str, data):
        """Configure the answer of a Postgres function."""
        self._rpc[name] = data

    def table(self, name: str) -> MockSupabaseTable:
        config = self._tables.get(name, {"data": [], "count": None})
        return MockSupabaseTable(config["data"], config["count"], self.calls)

    def rpc(self, name: str, params: dict) -> MockSupabaseQuery:
        self.rpc_calls.append((name, params))
        data = self._rpc.get(name, {})
        return MockSupabaseQuery([data] if isinstance(data, dict) else data)


# ===================
# FIXTURES
# ===================

@pytest.fixture
def mock_supabase() -> MockSupabaseClient:
    """
    Create a mock Supabase client.

    Usage:
        def test_something(mock_supabase):
            mock_supabase.set_table_data("credit_accounts", [...])
    """
    return MockSupabaseClient()


@pytest.fixture
def mock_db(mock_supabase) -> Generator:
    """Patch every get_supabase_client import with the mock."""
    with patch("config.database.get_supabase_client", return_value=mock_supabase):
        with patch("services.credit_service.get_supabase_client", return_value=mock_supabase):
            with patch("services.checkpoint_service.get_supabase_client", return_value=mock_supabase):
                with patch("services.listing_draft_service.get_supabase_client", return_value=mock_supabase):
                    yield mock_supabase


@pytest.fixture
def fake_storage() -> FakeImageStorage:
    return FakeImageStorage()


@pytest.fixture
def fake_ai() -> FakeListingAI:
    return FakeListingAI()


@pytest.fixture
def ledger() -> InMemoryCreditLedger:
    """Ledger with no free allowance and no purchased credits."""
    return InMemoryCreditLedger(purchased_balance=0, free_allowance=0)


@pytest.fixture
def checkpoint_store() -> MemoryCheckpointStore:
    return MemoryCheckpointStore(ttl_minutes=60)


@pytest.fixture
def redirector() -> DeferredRedirector:
    return DeferredRedirector()


@pytest.fixture
def make_pipeline(fake_ai, fake_storage, ledger, checkpoint_store, redirector):
    """
    Build a pipeline wired to the fakes.

    Usage:
        pipeline = make_pipeline("session-1")
    """
    from services.bulk_ingest_service import build_pipeline

    def factory(session_id: str = "session-1", **overrides):
        options = {
            "ai": fake_ai,
            "storage": fake_storage,
            "gateway": ledger,
            "store": checkpoint_store,
            "redirector": redirector,
        }
        options.update(overrides)
        return build_pipeline(session_id, **options)

    return factory


# ===================
# API TEST CLIENT
# ===================

@pytest.fixture
def session_registry(make_pipeline):
    from services.session_registry import SessionRegistry
    return SessionRegistry(factory=make_pipeline)


@pytest.fixture
def test_client(session_registry):
    """
    FastAPI test client whose sessions use the fakes.

    Runs as a context manager so every request shares one event loop;
    the checkout poller started by a run lives on that loop.

    Usage:
        def test_endpoint(test_client):
            response = test_client.get("/api/credits/session-1")
    """
    from fastapi.testclient import TestClient
    from main import app

    with patch("routes.bulk_ingest.get_session_registry", return_value=session_registry):
        with patch("routes.credits.get_session_registry", return_value=session_registry):
            with TestClient(app) as client:
                yield client
                client.portal.call(session_registry.close_all)
