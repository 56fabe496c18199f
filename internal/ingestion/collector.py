"""
Resource and cost ingestion.

Builds a provider adapter from a user's stored connection, calls the
vendor once, and upserts the results:

* :class:`ResourceCollector` -- resource counts into ``resource_summaries``;
* :class:`CostFetcher` -- the daily cost series into the ``cost-data``
  snapshot row of ``cloud_resources``.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import date, datetime, timedelta, timezone
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from internal.connections.store import ConnectionStore, validate_provider
from pkg.cloud.base import CloudProvider
from pkg.config import Settings, get_settings
from pkg.cost.calculator import series_total, to_usd
from pkg.database import CloudResource, ResourceSummary
from pkg.errors import PersistenceError, ValidationError

logger = logging.getLogger(__name__)

COST_RESOURCE_ID = "cost-data"
COST_RESOURCE_TYPE = "cost"

ProviderFactory = Callable[[str, dict[str, Any]], CloudProvider]


def build_provider(provider: str, credentials: dict[str, Any]) -> CloudProvider:
    """Instantiate the adapter for *provider* from stored credentials.

    SDK modules are imported lazily so a missing vendor SDK only affects
    that vendor.
    """
    provider = validate_provider(provider)
    if provider == "aws":
        from pkg.cloud.aws import AWSProvider

        return AWSProvider(credentials)
    if provider == "azure":
        from pkg.cloud.azure import AzureProvider

        return AzureProvider(credentials)

    from pkg.cloud.gcp import GCPProvider

    return GCPProvider(credentials)


class ResourceCollector:
    """Counts a provider's resources and upserts per-type summaries."""

    def __init__(
        self,
        store: ConnectionStore | None = None,
        provider_factory: ProviderFactory = build_provider,
    ) -> None:
        self._store = store or ConnectionStore()
        self._provider_factory = provider_factory

    async def collect(
        self,
        db: Session,
        user_id: str,
        provider: str,
    ) -> list[ResourceSummary]:
        """Count resources for the user's *provider* connection.

        Raises
        ------
        NoActiveConnectionError
            If the user has not connected *provider*.
        UpstreamServiceError
            If the vendor call fails; nothing is written.
        """
        connection = self._store.get_active(db, user_id, provider)
        adapter = self._provider_factory(connection.provider, connection.credentials)

        logger.info("Collecting %s resource counts for user %s", provider, user_id)
        counts = await adapter.count_resources()

        summaries = self._upsert(db, user_id, connection.provider, counts)
        self._store.mark_synced(connection)
        _commit(db, f"store {provider} resource summaries")

        logger.info(
            "Stored %d %s resource summaries for user %s",
            len(summaries),
            provider,
            user_id,
        )
        return summaries

    def store_summaries(
        self,
        db: Session,
        user_id: str,
        provider: str,
        counts: list[dict[str, Any]],
    ) -> list[ResourceSummary]:
        """Upsert caller-supplied summaries without calling the vendor."""
        provider = validate_provider(provider)
        summaries = self._upsert(db, user_id, provider, counts)
        _commit(db, f"store {provider} resource summaries")
        return summaries

    def list_summaries(
        self,
        db: Session,
        user_id: str,
        provider: str | None = None,
    ) -> list[ResourceSummary]:
        query = db.query(ResourceSummary).filter(ResourceSummary.user_id == user_id)
        if provider:
            query = query.filter(ResourceSummary.provider == validate_provider(provider))
        return query.order_by(ResourceSummary.provider, ResourceSummary.resource_type).all()

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    @staticmethod
    def _upsert(
        db: Session,
        user_id: str,
        provider: str,
        counts: list[dict[str, Any]],
    ) -> list[ResourceSummary]:
        existing = {
            s.resource_type: s
            for s in db.query(ResourceSummary).filter(
                ResourceSummary.user_id == user_id,
                ResourceSummary.provider == provider,
            )
        }

        summaries: list[ResourceSummary] = []
        for item in counts:
            resource_type = item.get("resource_type")
            if not resource_type:
                raise ValidationError("Resource summary is missing resource_type")

            summary = existing.get(resource_type)
            if summary is None:
                summary = ResourceSummary(
                    user_id=user_id,
                    provider=provider,
                    resource_type=resource_type,
                )
                db.add(summary)
                existing[resource_type] = summary

            summary.count = int(item.get("count", 0) or 0)
            if item.get("usage_percentage") is not None:
                summary.usage_percentage = float(item["usage_percentage"])
            if item.get("cost") is not None:
                summary.cost = float(item["cost"])
            summaries.append(summary)

        return summaries


class CostFetcher:
    """Fetches a provider's cost series and stores it as a snapshot."""

    def __init__(
        self,
        settings: Settings | None = None,
        store: ConnectionStore | None = None,
        provider_factory: ProviderFactory = build_provider,
    ) -> None:
        self._settings = settings or get_settings()
        self._store = store or ConnectionStore()
        self._provider_factory = provider_factory

    async def fetch(
        self,
        db: Session,
        user_id: str,
        provider: str,
        end_date: date | None = None,
    ) -> CloudResource:
        """Fetch the last ``cost_lookback_days`` of cost and store them.

        The new document supersedes the previous snapshot entirely.
        """
        connection = self._store.get_active(db, user_id, provider)
        adapter = self._provider_factory(connection.provider, connection.credentials)

        end = end_date or date.today()
        start = end - timedelta(days=self._settings.cost_lookback_days)

        logger.info(
            "Fetching %s costs for user %s (%s to %s)", provider, user_id, start, end
        )
        series = await adapter.get_cost_series(start, end)

        rows = series.get("rows", [])
        currency = series.get("currency", "USD")
        total = series_total(rows)
        document = {
            "provider": connection.provider,
            "currency": currency,
            "start_date": start.isoformat(),
            "end_date": end.isoformat(),
            "rows": rows,
            "total": total,
            "total_usd": round(to_usd(total, currency), 2),
            "raw": series.get("raw"),
        }

        snapshot = self._get_snapshot(db, user_id, connection.provider)
        if snapshot is None:
            snapshot = CloudResource(
                user_id=user_id,
                provider=connection.provider,
                resource_id=COST_RESOURCE_ID,
                resource_type=COST_RESOURCE_TYPE,
                name=f"{connection.provider.upper()} Costs",
            )
            db.add(snapshot)
        snapshot.cost_data = document
        snapshot.last_updated_at = datetime.now(timezone.utc)

        self._store.mark_synced(connection)
        _commit(db, f"store {provider} cost snapshot")
        db.refresh(snapshot)

        logger.info(
            "Stored %s cost snapshot for user %s: %d rows, total %.2f %s",
            provider,
            user_id,
            len(rows),
            total,
            currency,
        )
        return snapshot

    def latest_snapshot(
        self,
        db: Session,
        user_id: str,
        provider: str,
    ) -> CloudResource | None:
        return self._get_snapshot(db, user_id, validate_provider(provider))

    @staticmethod
    def _get_snapshot(db: Session, user_id: str, provider: str) -> CloudResource | None:
        return (
            db.query(CloudResource)
            .filter(
                CloudResource.user_id == user_id,
                CloudResource.provider == provider,
                CloudResource.resource_id == COST_RESOURCE_ID,
                CloudResource.resource_type == COST_RESOURCE_TYPE,
            )
            .first()
        )


def _commit(db: Session, action: str) -> None:
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("Failed to %s: %s", action, exc)
        raise PersistenceError(f"Failed to {action}") from exc
