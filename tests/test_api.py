"""
Tests for api/routes.py

Uses FastAPI TestClient with an in-memory SQLite database so tests
run without external services.  Vendor adapters and the text-generation
service are replaced by the fakes in ``conftest``.
"""

from __future__ import annotations

import os
import sys
import uuid
from datetime import datetime, timedelta, timezone

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

_PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if _PROJECT_ROOT not in sys.path:
    sys.path.insert(0, _PROJECT_ROOT)

from api.errors import register_error_handlers
from api.routes import configure_routes, hash_api_key, router as api_router
from conftest import AZURE_CREDENTIALS, FakeProvider, FakeTextGenerator
from internal.connections.store import ConnectionStore
from internal.forecast.predictor import CostPredictor
from internal.ingestion.collector import (
    COST_RESOURCE_ID,
    COST_RESOURCE_TYPE,
    CostFetcher,
    ResourceCollector,
)
from internal.recommendations.generator import RecommendationGenerator
from pkg.config import Settings
from pkg.database import ApiKey, Base, CloudResource, CostRecommendation, get_session

API_KEY = "cl_live_0123456789abcdef"
OTHER_KEY = "cl_live_fedcba9876543210"

ANSWER = (
    "1. Resize idle VMs\n"
    "Priority: High\n"
    "Potential savings: $120/month\n"
    "2. Delete orphaned disks\n"
    "Priority: Low\n"
)

AZURE_COUNTS = [
    {"resource_type": "Virtual Machines", "count": 5},
    {"resource_type": "Storage Accounts", "count": 3},
]
AZURE_SERIES = {
    "currency": "USD",
    "rows": [
        {"date": "2024-04-15", "cost": 100.0},
        {"date": "2024-05-15", "cost": 150.0},
    ],
    "raw": {},
}

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def services():
    """Fakes shared by the route module for one test."""
    adapter = FakeProvider("azure", counts=AZURE_COUNTS, series=AZURE_SERIES)
    store = ConnectionStore()
    fetcher = CostFetcher(
        Settings(), store, provider_factory=lambda provider, credentials: adapter
    )
    generator_llm = FakeTextGenerator([ANSWER, ANSWER])
    predictor_llm = FakeTextGenerator(['{"predicted_cost": 175, "predicted_savings": 26.25}'])
    configure_routes(
        collector=ResourceCollector(
            store, provider_factory=lambda provider, credentials: adapter
        ),
        fetcher=fetcher,
        generator=RecommendationGenerator(generator_llm),
        predictor=CostPredictor(predictor_llm, deployment="gpt-4o-mini", fetcher=fetcher),
        store=store,
    )
    return {"adapter": adapter, "generator_llm": generator_llm, "predictor_llm": predictor_llm}


@pytest.fixture()
def test_app(services):
    """Create a FastAPI app wired to an in-memory SQLite database."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    TestSession = sessionmaker(bind=engine)

    def _override_get_session():
        session = TestSession()
        try:
            yield session
        finally:
            session.close()

    app = FastAPI()
    register_error_handlers(app)
    app.include_router(api_router)

    # Dependency override
    app.dependency_overrides[get_session] = _override_get_session

    seed = TestSession()
    seed.add_all(
        [
            ApiKey(user_id="user-1", key_prefix=API_KEY[:8], key_hash=hash_api_key(API_KEY)),
            ApiKey(user_id="user-2", key_prefix=OTHER_KEY[:8], key_hash=hash_api_key(OTHER_KEY)),
        ]
    )
    seed.commit()
    seed.close()

    yield app, TestSession

    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture()
def client(test_app):
    app, _ = test_app
    test_client = TestClient(app)
    test_client.headers.update({"X-API-Key": API_KEY})
    return test_client


@pytest.fixture()
def session(test_app):
    _, TestSession = test_app
    s = TestSession()
    yield s
    s.close()


@pytest.fixture()
def connected(client):
    response = client.put("/api/v1/connections/azure", json={"credentials": AZURE_CREDENTIALS})
    assert response.status_code == 200
    return response.json()


VM_RESOURCE = {
    "resource_type": "Virtual Machines",
    "count": 5,
    "usage_percentage": 75,
    "cost": 450.5,
}


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------


class TestAuthentication:
    def test_missing_key(self, test_app):
        app, _ = test_app
        response = TestClient(app).get("/api/v1/recommendations")
        assert response.status_code == 401
        assert response.json() == {"error": "Missing API key. Provide X-API-Key header."}

    def test_unknown_key(self, test_app):
        app, _ = test_app
        response = TestClient(app).get(
            "/api/v1/recommendations", headers={"X-API-Key": API_KEY[:8] + "wrong"}
        )
        assert response.status_code == 401
        assert "error" in response.json()

    def test_expired_key(self, test_app, session):
        app, _ = test_app
        key = "cl_old__expired"
        session.add(
            ApiKey(
                user_id="user-1",
                key_prefix=key[:8],
                key_hash=hash_api_key(key),
                expires_at=datetime.now(timezone.utc) - timedelta(days=1),
            )
        )
        session.commit()
        response = TestClient(app).get("/api/v1/recommendations", headers={"X-API-Key": key})
        assert response.status_code == 401
        assert response.json() == {"error": "API key expired."}

    def test_valid_key_stamps_last_used(self, client, session):
        assert client.get("/api/v1/recommendations").status_code == 200
        record = session.query(ApiKey).filter_by(user_id="user-1").one()
        assert record.last_used_at is not None


# ---------------------------------------------------------------------------
# Connections
# ---------------------------------------------------------------------------


class TestConnections:
    def test_list_empty(self, client):
        response = client.get("/api/v1/connections")
        assert response.status_code == 200
        assert response.json() == []

    def test_save_hides_values(self, client, connected):
        assert connected["provider"] == "azure"
        assert connected["is_active"] is True
        assert connected["credential_fields"] == sorted(AZURE_CREDENTIALS)
        assert "client-secret" not in str(client.get("/api/v1/connections").json())

    def test_save_missing_credentials(self, client):
        response = client.put(
            "/api/v1/connections/azure", json={"credentials": {"clientId": "x"}}
        )
        assert response.status_code == 400
        assert "clientSecret" in response.json()["error"]

    def test_unknown_provider(self, client):
        response = client.put("/api/v1/connections/oracle", json={"credentials": {}})
        assert response.status_code == 400

    def test_deactivate(self, client, connected):
        response = client.delete("/api/v1/connections/azure")
        assert response.status_code == 200
        assert response.json()["is_active"] is False

        response = client.post("/api/v1/resources/azure/collect")
        assert response.status_code == 400
        assert response.json() == {"error": "No active AZURE connection found"}


# ---------------------------------------------------------------------------
# Resources
# ---------------------------------------------------------------------------


class TestResources:
    def test_collect_without_connection(self, client):
        response = client.post("/api/v1/resources/azure/collect")
        assert response.status_code == 400
        assert response.json() == {"error": "No active AZURE connection found"}

    def test_collect(self, client, connected):
        response = client.post("/api/v1/resources/azure/collect")
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert {r["resource_type"]: r["count"] for r in body["data"]} == {
            "Virtual Machines": 5,
            "Storage Accounts": 3,
        }

    def test_store_and_list(self, client):
        response = client.put(
            "/api/v1/resources/aws",
            json={"resources": [{"resource_type": "EC2 Instances", "count": 4, "cost": 99.5}]},
        )
        assert response.status_code == 200

        listed = client.get("/api/v1/resources", params={"provider": "aws"}).json()
        assert [(r["resource_type"], r["count"], r["cost"]) for r in listed] == [
            ("EC2 Instances", 4, 99.5)
        ]

    def test_store_rejects_negative_count(self, client):
        response = client.put(
            "/api/v1/resources/aws",
            json={"resources": [{"resource_type": "EC2 Instances", "count": -1}]},
        )
        assert response.status_code == 400
        assert response.json()["error"].startswith("Invalid request:")


# ---------------------------------------------------------------------------
# Costs
# ---------------------------------------------------------------------------


class TestCosts:
    def test_get_before_fetch(self, client, connected):
        response = client.get("/api/v1/costs/azure")
        assert response.status_code == 400
        assert "fetch costs first" in response.json()["error"]

    def test_fetch_then_get(self, client, connected):
        response = client.post("/api/v1/costs/azure/fetch")
        assert response.status_code == 200
        assert response.json()["data"]["total"] == 250.0

        stored = client.get("/api/v1/costs/azure").json()
        assert stored["provider"] == "azure"
        assert stored["data"]["rows"] == AZURE_SERIES["rows"]
        assert stored["last_updated_at"] is not None

    def test_predictions(self, client, connected, services):
        client.post("/api/v1/costs/azure/fetch")
        response = client.get("/api/v1/costs/azure/predictions")
        assert response.status_code == 200
        points = response.json()["data"]
        assert [p["month"] for p in points[:2]] == ["Apr", "May"]
        assert points[-1]["cost"] == 175.0
        assert points[-1]["is_predicted"] is True
        assert services["predictor_llm"].calls[0]["deployment"] == "gpt-4o-mini"

    def test_vendor_failure(self, client, connected, services):
        from pkg.errors import UpstreamServiceError

        services["adapter"].error = UpstreamServiceError("Azure", "AuthorizationFailed")
        response = client.post("/api/v1/costs/azure/fetch")
        assert response.status_code == 500
        assert response.json() == {"error": "Azure request failed: AuthorizationFailed"}


# ---------------------------------------------------------------------------
# Recommendations
# ---------------------------------------------------------------------------


class TestRecommendations:
    def test_list_empty(self, client):
        response = client.get("/api/v1/recommendations")
        assert response.status_code == 200
        assert response.json() == []

    def test_generate(self, client):
        response = client.post(
            "/api/v1/recommendations/generate", json={"resource": VM_RESOURCE}
        )
        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        recs = body["recommendations"]
        assert [(r["title"], r["priority"], r["potential_savings"]) for r in recs] == [
            ("Resize idle VMs", "high", 120.0),
            ("Delete orphaned disks", "low", 0.0),
        ]
        assert all(r["provider"] == "azure" for r in recs)

    def test_generate_replaces_previous(self, client, session):
        client.post("/api/v1/recommendations/generate", json={"resource": VM_RESOURCE})
        client.post("/api/v1/recommendations/generate", json={"resource": VM_RESOURCE})
        assert session.query(CostRecommendation).count() == 2

    def test_generate_requires_resource(self, client):
        response = client.post("/api/v1/recommendations/generate", json={})
        assert response.status_code == 400
        assert "error" in response.json()

    def test_generate_upstream_failure(self, client, services):
        from pkg.errors import UpstreamServiceError

        services["generator_llm"].error = UpstreamServiceError("Azure OpenAI", "401 bad key", 400)
        response = client.post(
            "/api/v1/recommendations/generate", json={"resource": VM_RESOURCE}
        )
        assert response.status_code == 400
        assert response.json()["error"].startswith("Azure OpenAI request failed")

    def test_generate_without_openai_configuration(self, client):
        from pkg.llm.client import TextGenerationClient

        unconfigured = TextGenerationClient(
            Settings(azure_openai_endpoint="", azure_openai_api_key="")
        )
        fetcher = CostFetcher(Settings())
        configure_routes(
            collector=ResourceCollector(),
            fetcher=fetcher,
            generator=RecommendationGenerator(unconfigured),
            predictor=CostPredictor(unconfigured, fetcher=fetcher),
        )
        response = client.post(
            "/api/v1/recommendations/generate", json={"resource": VM_RESOURCE}
        )
        assert response.status_code == 500
        assert response.json() == {"error": "AZURE_OPENAI_ENDPOINT is not configured"}

    def test_analyze(self, client):
        response = client.post(
            "/api/v1/recommendations/analyze",
            json={
                "costData": [{"date": "2024-05-01", "cost": 500.0}],
                "resourceData": {"provider": "aws", "resourceIds": ["i-1"]},
            },
        )
        assert response.status_code == 200
        body = response.json()
        assert body["estimated_savings"] == 100.0
        assert body["recommendations"][0]["provider"] == "aws"
        assert body["recommendations"][0]["resource_ids"] == ["i-1"]

    def test_analyze_bad_cost_rejected_before_generation(self, client, services):
        client.post("/api/v1/recommendations/generate", json={"resource": VM_RESOURCE})

        response = client.post(
            "/api/v1/recommendations/analyze",
            json={
                "costData": [{"date": "2024-05-01", "cost": "n/a"}],
                "resourceData": {"provider": "azure"},
            },
        )
        assert response.status_code == 400
        assert response.json()["error"].startswith("Invalid request:")
        assert len(services["generator_llm"].calls) == 1
        titles = [r["title"] for r in client.get("/api/v1/recommendations").json()]
        assert titles == ["Resize idle VMs", "Delete orphaned disks"]

    def test_analyze_accepts_numeric_strings(self, client):
        response = client.post(
            "/api/v1/recommendations/analyze",
            json={
                "costData": [{"date": "2024-05-01", "cost": "250.5"}, {"date": "2024-05-02"}],
                "resourceData": {"provider": "aws"},
            },
        )
        assert response.status_code == 200
        assert response.json()["estimated_savings"] == pytest.approx(50.1)

    def test_unexpected_error_renders_json(self, test_app, services):
        app, _ = test_app
        services["generator_llm"].error = RuntimeError("boom")
        response = TestClient(app, raise_server_exceptions=False).post(
            "/api/v1/recommendations/generate",
            json={"resource": VM_RESOURCE},
            headers={"X-API-Key": API_KEY},
        )
        assert response.status_code == 500
        assert response.json() == {"error": "Internal server error"}

    def test_filter_and_isolation(self, client, test_app):
        client.post("/api/v1/recommendations/generate", json={"resource": VM_RESOURCE})

        high = client.get("/api/v1/recommendations", params={"priority": "high"}).json()
        assert [r["title"] for r in high] == ["Resize idle VMs"]

        app, _ = test_app
        other = TestClient(app).get(
            "/api/v1/recommendations", headers={"X-API-Key": OTHER_KEY}
        )
        assert other.json() == []

    def test_resolve(self, client):
        client.post("/api/v1/recommendations/generate", json={"resource": VM_RESOURCE})
        rec_id = client.get("/api/v1/recommendations").json()[0]["id"]

        response = client.post(f"/api/v1/recommendations/{rec_id}/resolve")
        assert response.status_code == 200
        assert response.json()["status"] == "resolved"

        open_recs = client.get("/api/v1/recommendations", params={"status": "open"}).json()
        assert rec_id not in [r["id"] for r in open_recs]

    def test_resolve_not_found(self, client):
        response = client.post(f"/api/v1/recommendations/{uuid.uuid4()}/resolve")
        assert response.status_code == 404
        assert "error" in response.json()


# ---------------------------------------------------------------------------
# Dashboard
# ---------------------------------------------------------------------------


class TestDashboard:
    def test_overview_empty(self, client):
        response = client.get("/api/v1/dashboard/overview")
        assert response.status_code == 200
        body = response.json()
        assert body["connected_providers"] == []
        assert body["total_cost_usd"] == 0.0
        assert body["recommendation_count"] == 0

    def test_overview_with_data(self, client, connected):
        client.post("/api/v1/resources/azure/collect")
        client.post("/api/v1/costs/azure/fetch")
        client.post("/api/v1/recommendations/generate", json={"resource": VM_RESOURCE})

        body = client.get("/api/v1/dashboard/overview").json()
        assert body["connected_providers"] == ["azure"]
        assert body["cost_by_provider"] == {"azure": 250.0}
        assert body["total_cost_usd"] == 250.0
        assert body["resource_counts"]["azure"]["Virtual Machines"] == 5
        assert body["recommendation_count"] == 2
        assert body["high_priority_count"] == 1
        assert body["total_potential_savings"] == 120.0
        assert set(body["cost_trend"]) >= {"trend", "change_percent"}

    def test_trend_converts_each_provider_to_usd(self, client, session):
        yesterday = (datetime.now(timezone.utc).date() - timedelta(days=1)).isoformat()
        for provider, currency, cost, total_usd in (
            ("azure", "EUR", 100.0, 109.0),
            ("aws", "USD", 50.0, 50.0),
        ):
            session.add(
                CloudResource(
                    user_id="user-1",
                    provider=provider,
                    resource_id=COST_RESOURCE_ID,
                    resource_type=COST_RESOURCE_TYPE,
                    name=f"{provider.upper()} Costs",
                    cost_data={
                        "currency": currency,
                        "rows": [{"date": yesterday, "cost": cost}],
                        "total": cost,
                        "total_usd": total_usd,
                    },
                )
            )
        session.commit()

        body = client.get("/api/v1/dashboard/overview").json()
        assert body["total_cost_usd"] == 159.0
        assert body["cost_trend"]["current_period_cost"] == pytest.approx(159.0)
