"""
Full API route definitions for CostLens.

All endpoints live under ``/api/v1/`` and are grouped into:

* **Connections** -- stored provider credentials.
* **Resources** -- resource count collection and listing.
* **Costs** -- cost snapshot fetch, read-back and next-month prediction.
* **Recommendations** -- AI generation, bulk analysis, list, resolve.
* **Dashboard** -- combined overview for UI consumption.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query, Security
from fastapi.security import APIKeyHeader
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from internal.connections.store import ConnectionStore, validate_provider
from internal.forecast.predictor import CostPredictor
from internal.ingestion.collector import CostFetcher, ResourceCollector
from internal.recommendations.generator import RecommendationGenerator
from pkg.cost.calculator import calculate_trend, estimate_potential_savings, to_usd
from pkg.database import ApiKey, CostRecommendation, get_session
from pkg.errors import AuthenticationError, ValidationError

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# API Key authentication
# ---------------------------------------------------------------------------
_api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)


def hash_api_key(key: str) -> str:
    """SHA-256 hash an API key."""
    return hashlib.sha256(key.encode()).hexdigest()


async def require_user(
    api_key: str | None = Security(_api_key_header),
    db: Session = Depends(get_session),
) -> str:
    """Resolve the caller's user id from the ``X-API-Key`` header."""
    if not api_key:
        raise AuthenticationError("Missing API key. Provide X-API-Key header.")

    key_prefix = api_key[:8]
    key_hash = hash_api_key(api_key)

    candidates = (
        db.query(ApiKey)
        .filter(ApiKey.key_prefix == key_prefix, ApiKey.is_active.is_(True))
        .all()
    )
    record = next(
        (c for c in candidates if hmac.compare_digest(c.key_hash, key_hash)), None
    )
    if record is None:
        raise AuthenticationError("Invalid API key.")

    now = datetime.now(timezone.utc)
    if record.expires_at is not None and _as_aware(record.expires_at) <= now:
        raise AuthenticationError("API key expired.")

    record.last_used_at = now
    db.commit()
    return record.user_id


def _as_aware(value: datetime) -> datetime:
    # SQLite drops tzinfo on the way back.
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


# ---------------------------------------------------------------------------
# Shared singletons -- wired at startup via ``configure_routes``
# ---------------------------------------------------------------------------
_store: ConnectionStore = ConnectionStore()
_collector: ResourceCollector = ResourceCollector(_store)
_fetcher: CostFetcher | None = None
_generator: RecommendationGenerator | None = None
_predictor: CostPredictor | None = None


def configure_routes(
    collector: ResourceCollector,
    fetcher: CostFetcher,
    generator: RecommendationGenerator,
    predictor: CostPredictor,
    store: ConnectionStore | None = None,
) -> None:
    """Inject runtime dependencies into the route module."""
    global _store, _collector, _fetcher, _generator, _predictor
    _store = store or ConnectionStore()
    _collector = collector
    _fetcher = fetcher
    _generator = generator
    _predictor = predictor


def _require(service: Any, name: str) -> Any:
    if service is None:
        raise RuntimeError(f"{name} not initialized; call configure_routes()")
    return service


# ---------------------------------------------------------------------------
# Pydantic request / response schemas
# ---------------------------------------------------------------------------


class ConnectionRequest(BaseModel):
    credentials: dict[str, Any]


class ConnectionResponse(BaseModel):
    id: str
    provider: str
    credential_fields: list[str]
    is_active: bool
    last_sync_at: Optional[str] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class ResourceInput(BaseModel):
    resource_type: str = Field(min_length=1)
    count: int = Field(0, ge=0)
    usage_percentage: Optional[float] = None
    cost: Optional[float] = None


class StoreSummariesRequest(BaseModel):
    resources: list[ResourceInput]


class ResourceSummaryResponse(BaseModel):
    id: str
    provider: str
    resource_type: str
    count: int
    usage_percentage: Optional[float] = None
    cost: Optional[float] = None
    last_updated_at: Optional[str] = None


class CollectResponse(BaseModel):
    success: bool = True
    provider: str
    data: list[ResourceSummaryResponse]


class CostSnapshotResponse(BaseModel):
    success: bool = True
    provider: str
    last_updated_at: Optional[str] = None
    data: dict[str, Any]


class PredictionPoint(BaseModel):
    month: str
    cost: float
    savings: float
    is_predicted: bool = False


class PredictionResponse(BaseModel):
    data: list[PredictionPoint]


class GenerateRequest(BaseModel):
    resource: ResourceInput
    provider: str = "azure"


class ResourceData(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    provider: str
    resource_ids: list[str] = Field(default_factory=list, alias="resourceIds")


class CostPoint(BaseModel):
    """One cost entry of a bulk analysis; other keys pass through."""

    model_config = ConfigDict(extra="allow")

    cost: Optional[float] = Field(0.0, allow_inf_nan=False)


class AnalyzeRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    cost_data: list[CostPoint] = Field(alias="costData")
    resource_data: ResourceData = Field(alias="resourceData")


class RecommendationResponse(BaseModel):
    id: str
    provider: str
    title: str
    description: str
    priority: str
    potential_savings: float
    position: int
    resource_ids: list[str]
    status: str
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class GenerateResponse(BaseModel):
    success: bool = True
    recommendations: list[RecommendationResponse]


class AnalyzeResponse(GenerateResponse):
    estimated_savings: float


class DashboardOverview(BaseModel):
    connected_providers: list[str]
    total_cost_usd: float
    cost_by_provider: dict[str, float]
    cost_trend: dict[str, Any]
    resource_counts: dict[str, dict[str, int]]
    recommendation_count: int
    high_priority_count: int
    total_potential_savings: float


# ---------------------------------------------------------------------------
# Router
# ---------------------------------------------------------------------------
router = APIRouter(prefix="/api/v1", tags=["costlens"])


# ===== CONNECTIONS =========================================================


@router.get("/connections", response_model=list[ConnectionResponse])
async def list_connections(
    user_id: str = Depends(require_user),
    db: Session = Depends(get_session),
) -> list[ConnectionResponse]:
    """List the caller's provider connections (credential values hidden)."""
    return [
        ConnectionResponse(**c.to_dict()) for c in _store.list_for_user(db, user_id)
    ]


@router.put("/connections/{provider}", response_model=ConnectionResponse)
async def save_connection(
    provider: str,
    body: ConnectionRequest,
    user_id: str = Depends(require_user),
    db: Session = Depends(get_session),
) -> ConnectionResponse:
    """Store credentials for *provider* and activate the connection."""
    connection = _store.save(db, user_id, provider, body.credentials)
    return ConnectionResponse(**connection.to_dict())


@router.delete("/connections/{provider}", response_model=ConnectionResponse)
async def deactivate_connection(
    provider: str,
    user_id: str = Depends(require_user),
    db: Session = Depends(get_session),
) -> ConnectionResponse:
    connection = _store.deactivate(db, user_id, provider)
    return ConnectionResponse(**connection.to_dict())


# ===== RESOURCES ===========================================================


@router.post("/resources/{provider}/collect", response_model=CollectResponse)
async def collect_resources(
    provider: str,
    user_id: str = Depends(require_user),
    db: Session = Depends(get_session),
) -> CollectResponse:
    """Count the provider's resources and upsert the summaries."""
    provider = validate_provider(provider)
    summaries = await _collector.collect(db, user_id, provider)
    return CollectResponse(
        provider=provider,
        data=[ResourceSummaryResponse(**s.to_dict()) for s in summaries],
    )


@router.put("/resources/{provider}", response_model=CollectResponse)
async def store_resources(
    provider: str,
    body: StoreSummariesRequest,
    user_id: str = Depends(require_user),
    db: Session = Depends(get_session),
) -> CollectResponse:
    """Upsert caller-supplied resource summaries."""
    provider = validate_provider(provider)
    summaries = _collector.store_summaries(
        db, user_id, provider, [r.model_dump() for r in body.resources]
    )
    return CollectResponse(
        provider=provider,
        data=[ResourceSummaryResponse(**s.to_dict()) for s in summaries],
    )


@router.get("/resources", response_model=list[ResourceSummaryResponse])
async def list_resources(
    provider: Optional[str] = Query(None, description="Filter by provider"),
    user_id: str = Depends(require_user),
    db: Session = Depends(get_session),
) -> list[ResourceSummaryResponse]:
    return [
        ResourceSummaryResponse(**s.to_dict())
        for s in _collector.list_summaries(db, user_id, provider)
    ]


# ===== COSTS ===============================================================


@router.post("/costs/{provider}/fetch", response_model=CostSnapshotResponse)
async def fetch_costs(
    provider: str,
    user_id: str = Depends(require_user),
    db: Session = Depends(get_session),
) -> CostSnapshotResponse:
    """Fetch the provider's cost series and store it as the snapshot."""
    fetcher = _require(_fetcher, "Cost fetcher")
    snapshot = await fetcher.fetch(db, user_id, provider)
    return _snapshot_response(snapshot)


@router.get("/costs/{provider}", response_model=CostSnapshotResponse)
async def get_costs(
    provider: str,
    user_id: str = Depends(require_user),
    db: Session = Depends(get_session),
) -> CostSnapshotResponse:
    fetcher = _require(_fetcher, "Cost fetcher")
    snapshot = fetcher.latest_snapshot(db, user_id, provider)
    if snapshot is None:
        raise ValidationError(
            f"No {provider.upper()} cost data yet; fetch costs first"
        )
    return _snapshot_response(snapshot)


@router.get("/costs/{provider}/predictions", response_model=PredictionResponse)
async def get_cost_predictions(
    provider: str,
    user_id: str = Depends(require_user),
    db: Session = Depends(get_session),
) -> PredictionResponse:
    """Monthly cost history plus a predicted next month."""
    predictor = _require(_predictor, "Cost predictor")
    points = predictor.predict(db, user_id, validate_provider(provider))
    return PredictionResponse(data=[PredictionPoint(**p) for p in points])


# ===== RECOMMENDATIONS =====================================================


@router.post("/recommendations/generate", response_model=GenerateResponse)
async def generate_recommendations(
    body: GenerateRequest,
    user_id: str = Depends(require_user),
    db: Session = Depends(get_session),
) -> GenerateResponse:
    """Generate recommendations for a single resource category."""
    generator = _require(_generator, "Recommendation generator")
    rows = generator.generate_for_resource(
        db, user_id, body.provider, body.resource.model_dump()
    )
    return GenerateResponse(
        recommendations=[RecommendationResponse(**r.to_dict()) for r in rows]
    )


@router.post("/recommendations/analyze", response_model=AnalyzeResponse)
async def analyze_costs(
    body: AnalyzeRequest,
    user_id: str = Depends(require_user),
    db: Session = Depends(get_session),
) -> AnalyzeResponse:
    """Generate recommendations from a bulk cost / resource analysis."""
    generator = _require(_generator, "Recommendation generator")
    cost_data = [point.model_dump(exclude_unset=True) for point in body.cost_data]
    resource_data = body.resource_data.model_dump(by_alias=True)
    estimated_savings = estimate_potential_savings(cost_data)

    rows = generator.analyze(db, user_id, cost_data, resource_data)
    return AnalyzeResponse(
        recommendations=[RecommendationResponse(**r.to_dict()) for r in rows],
        estimated_savings=estimated_savings,
    )


@router.get("/recommendations", response_model=list[RecommendationResponse])
async def list_recommendations(
    provider: Optional[str] = Query(None, description="Filter by provider"),
    priority: Optional[str] = Query(None, description="high, medium or low"),
    status: Optional[str] = Query(None, description="open or resolved"),
    limit: int = Query(100, ge=1, le=1000, description="Max results to return"),
    offset: int = Query(0, ge=0, description="Number of results to skip"),
    user_id: str = Depends(require_user),
    db: Session = Depends(get_session),
) -> list[RecommendationResponse]:
    generator = _require(_generator, "Recommendation generator")
    rows = generator.list_for_user(
        db,
        user_id,
        provider=provider,
        priority=priority,
        status=status,
        limit=limit,
        offset=offset,
    )
    return [RecommendationResponse(**r.to_dict()) for r in rows]


@router.post(
    "/recommendations/{recommendation_id}/resolve",
    response_model=RecommendationResponse,
)
async def resolve_recommendation(
    recommendation_id: str,
    user_id: str = Depends(require_user),
    db: Session = Depends(get_session),
) -> RecommendationResponse:
    """Mark a recommendation as resolved."""
    generator = _require(_generator, "Recommendation generator")
    rec = generator.resolve(db, user_id, recommendation_id)
    return RecommendationResponse(**rec.to_dict())


# ===== DASHBOARD ===========================================================


@router.get("/dashboard/overview", response_model=DashboardOverview)
async def get_dashboard_overview(
    period_days: int = Query(15, ge=1, le=365),
    user_id: str = Depends(require_user),
    db: Session = Depends(get_session),
) -> DashboardOverview:
    """Combined dashboard data endpoint."""
    fetcher = _require(_fetcher, "Cost fetcher")

    connected = [c.provider for c in _store.list_for_user(db, user_id) if c.is_active]

    cost_by_provider: dict[str, float] = {}
    all_rows: list[dict[str, Any]] = []
    for provider in ("aws", "azure", "gcp"):
        snapshot = fetcher.latest_snapshot(db, user_id, provider)
        if snapshot is None or not snapshot.cost_data:
            continue
        cost_by_provider[provider] = float(snapshot.cost_data.get("total_usd", 0.0))
        currency = snapshot.cost_data.get("currency", "USD")
        all_rows.extend(
            {"date": row.get("date"), "cost": to_usd(row.get("cost", 0) or 0, currency)}
            for row in snapshot.cost_data.get("rows", [])
        )

    resource_counts: dict[str, dict[str, int]] = {}
    for summary in _collector.list_summaries(db, user_id):
        resource_counts.setdefault(summary.provider, {})[summary.resource_type] = (
            summary.count
        )

    open_recs = (
        db.query(CostRecommendation)
        .filter(
            CostRecommendation.user_id == user_id,
            CostRecommendation.status == "open",
        )
        .all()
    )

    return DashboardOverview(
        connected_providers=connected,
        total_cost_usd=round(sum(cost_by_provider.values()), 2),
        cost_by_provider=cost_by_provider,
        cost_trend=calculate_trend(all_rows, period_days),
        resource_counts=resource_counts,
        recommendation_count=len(open_recs),
        high_priority_count=sum(1 for r in open_recs if r.priority == "high"),
        total_potential_savings=round(sum(r.potential_savings for r in open_recs), 2),
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _snapshot_response(snapshot) -> CostSnapshotResponse:
    return CostSnapshotResponse(
        provider=snapshot.provider,
        last_updated_at=(
            snapshot.last_updated_at.isoformat() if snapshot.last_updated_at else None
        ),
        data=snapshot.cost_data or {},
    )
