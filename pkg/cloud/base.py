"""
Abstract base class for multi-cloud provider integrations.

Each concrete provider (AWS, Azure, GCP) is built from one user's stored
connection credentials and must implement this interface so the resource
collector and cost fetcher can work provider-agnostically.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from datetime import date
from typing import Any


class CloudProvider(ABC):
    """Interface that every cloud provider adapter must satisfy."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the canonical provider name (e.g. ``'aws'``)."""
        ...

    @abstractmethod
    async def count_resources(self) -> list[dict[str, Any]]:
        """Count the account's resources per category.

        Each returned dict matches the ``ResourceSummary`` fields:
        ``resource_type``, ``count`` and optionally ``usage_percentage``
        and ``cost``.
        """
        ...

    @abstractmethod
    async def get_cost_series(
        self,
        start_date: date,
        end_date: date,
    ) -> dict[str, Any]:
        """Retrieve the aggregate daily cost series for a date range.

        Returns a dict with ``currency``, ``rows`` (a list of
        ``{"date": "YYYY-MM-DD", "cost": float}`` in date order) and
        ``raw`` (a JSON-serializable copy of the vendor response).
        """
        ...
