"""
Shared test fixtures for the CostLens test suite.

Uses an in-memory SQLite database so tests run without PostgreSQL, and
small fakes in place of the vendor SDKs and the text-generation service.
"""

from __future__ import annotations

import os
import sys
from datetime import date
from typing import Any

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

# Ensure project root is importable
_PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if _PROJECT_ROOT not in sys.path:
    sys.path.insert(0, _PROJECT_ROOT)

from pkg.cloud.base import CloudProvider  # noqa: E402
from pkg.database import Base, CloudProviderConnection  # noqa: E402

AZURE_CREDENTIALS = {
    "clientId": "client-id",
    "clientSecret": "client-secret",
    "tenantId": "tenant-id",
    "subscriptionId": "sub-123",
}


class FakeTextGenerator:
    """Returns canned completions in order and records every call."""

    deployment = "fake-gpt"

    def __init__(self, responses: list[str] | None = None, error: Exception | None = None):
        self.responses = list(responses or [])
        self.error = error
        self.calls: list[dict[str, Any]] = []

    def complete(self, system: str, user: str, *, deployment: str | None = None) -> str:
        self.calls.append({"system": system, "user": user, "deployment": deployment})
        if self.error is not None:
            raise self.error
        return self.responses.pop(0)


class FakeProvider(CloudProvider):
    """In-memory provider adapter."""

    def __init__(
        self,
        provider: str = "azure",
        counts: list[dict[str, Any]] | None = None,
        series: dict[str, Any] | None = None,
        error: Exception | None = None,
    ):
        self._name = provider
        self.counts = counts or []
        self.series = series or {"currency": "USD", "rows": [], "raw": {}}
        self.error = error
        self.cost_calls: list[tuple[date, date]] = []

    @property
    def name(self) -> str:
        return self._name

    async def count_resources(self) -> list[dict[str, Any]]:
        if self.error is not None:
            raise self.error
        return self.counts

    async def get_cost_series(self, start_date: date, end_date: date) -> dict[str, Any]:
        self.cost_calls.append((start_date, end_date))
        if self.error is not None:
            raise self.error
        return self.series


@pytest.fixture()
def db_session():
    """Yield an in-memory SQLite session for isolated testing."""
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)
    Session = sessionmaker(bind=engine)
    session = Session()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(engine)
        engine.dispose()


@pytest.fixture()
def azure_connection(db_session):
    """An active Azure connection for ``user-1``."""
    connection = CloudProviderConnection(
        user_id="user-1",
        provider="azure",
        credentials=dict(AZURE_CREDENTIALS),
        is_active=True,
    )
    db_session.add(connection)
    db_session.commit()
    return connection
