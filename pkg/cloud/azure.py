"""
Azure cloud provider integration.

Uses the Azure SDK to count virtual machines, SQL databases and storage
accounts per resource group, and to pull the daily cost series from Azure
Cost Management.
"""

from __future__ import annotations

import logging
from datetime import date, datetime, time, timezone
from typing import Any

from azure.core.exceptions import AzureError
from azure.identity import ClientSecretCredential
from azure.mgmt.compute import ComputeManagementClient
from azure.mgmt.costmanagement import CostManagementClient
from azure.mgmt.costmanagement.models import (
    ExportType,
    QueryAggregation,
    QueryDataset,
    QueryDefinition,
    QueryTimePeriod,
    TimeframeType,
)
from azure.mgmt.resource import ResourceManagementClient
from azure.mgmt.sql import SqlManagementClient
from azure.mgmt.storage import StorageManagementClient

from pkg.cloud.base import CloudProvider
from pkg.errors import UpstreamServiceError

logger = logging.getLogger(__name__)

SERVICE_NAME = "Azure"


class AzureProvider(CloudProvider):
    """Azure resource and cost provider for one stored connection."""

    def __init__(self, credentials: dict[str, Any]):
        self._subscription_id = credentials["subscriptionId"]
        self._tenant_id = credentials["tenantId"]
        self._client_id = credentials["clientId"]
        self._client_secret = credentials["clientSecret"]
        self._credential = None
        self._resource_client = None
        self._compute_client = None
        self._sql_client = None
        self._storage_client = None
        self._cost_client = None
        self._initialized = False

    # ------------------------------------------------------------------
    # Lazy initialization
    # ------------------------------------------------------------------

    def _ensure_clients(self) -> None:
        """Lazily create Azure SDK clients on first use."""
        if self._initialized:
            return

        self._credential = ClientSecretCredential(
            tenant_id=self._tenant_id,
            client_id=self._client_id,
            client_secret=self._client_secret,
        )
        self._resource_client = ResourceManagementClient(
            self._credential, self._subscription_id
        )
        self._compute_client = ComputeManagementClient(
            self._credential, self._subscription_id
        )
        self._sql_client = SqlManagementClient(self._credential, self._subscription_id)
        self._storage_client = StorageManagementClient(
            self._credential, self._subscription_id
        )
        self._cost_client = CostManagementClient(self._credential)
        self._initialized = True

    # ------------------------------------------------------------------
    # CloudProvider interface
    # ------------------------------------------------------------------

    @property
    def name(self) -> str:
        return "azure"

    async def count_resources(self) -> list[dict[str, Any]]:
        """Count VMs, SQL databases and storage accounts.

        A failure while scanning one resource group is logged and the
        group is skipped, so one broken group does not abort the scan.
        """
        self._ensure_clients()

        try:
            groups = [
                group.name
                for group in self._resource_client.resource_groups.list()
                if group.name
            ]
        except AzureError as exc:
            logger.error("Failed to list Azure resource groups: %s", exc)
            raise UpstreamServiceError(SERVICE_NAME, str(exc)) from exc

        vm_count = 0
        sql_count = 0
        storage_count = 0
        for group in groups:
            try:
                vm_count += self._count_vms(group)
                sql_count += self._count_sql_databases(group)
                storage_count += self._count_storage_accounts(group)
            except AzureError as exc:
                logger.warning("Skipping resource group %s: %s", group, exc)

        logger.info(
            "Scanned %d Azure resource groups: %d VMs, %d SQL databases, "
            "%d storage accounts",
            len(groups),
            vm_count,
            sql_count,
            storage_count,
        )
        return [
            {"resource_type": "Virtual Machines", "count": vm_count},
            {"resource_type": "SQL Databases", "count": sql_count},
            {"resource_type": "Storage Accounts", "count": storage_count},
        ]

    async def get_cost_series(
        self,
        start_date: date,
        end_date: date,
    ) -> dict[str, Any]:
        """Query Azure Cost Management for the daily actual cost."""
        self._ensure_clients()

        scope = f"/subscriptions/{self._subscription_id}"
        query = QueryDefinition(
            type=ExportType.ACTUAL_COST,
            timeframe=TimeframeType.CUSTOM,
            time_period=QueryTimePeriod(
                from_property=_midnight_utc(start_date), to=_midnight_utc(end_date)
            ),
            dataset=QueryDataset(
                granularity="Daily",
                aggregation={
                    "totalCost": QueryAggregation(name="Cost", function="Sum"),
                },
            ),
        )

        try:
            result = self._cost_client.query.usage(scope=scope, parameters=query)
        except AzureError as exc:
            logger.error("Failed to fetch Azure costs: %s", exc)
            raise UpstreamServiceError(SERVICE_NAME, str(exc)) from exc

        columns = [col.name for col in result.columns] if result.columns else []
        rows: list[dict[str, Any]] = []
        currency = "USD"
        for row in result.rows or []:
            row_dict = dict(zip(columns, row))
            currency = row_dict.get("Currency", currency)
            rows.append(
                {
                    "date": _usage_date(row_dict.get("UsageDate"), start_date),
                    "cost": float(row_dict.get("Cost", 0) or 0),
                }
            )
        rows.sort(key=lambda r: r["date"])

        logger.info("Fetched %d Azure cost rows", len(rows))
        return {"currency": currency, "rows": rows, "raw": result.as_dict()}

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _count_vms(self, group: str) -> int:
        return sum(1 for _ in self._compute_client.virtual_machines.list(group))

    def _count_sql_databases(self, group: str) -> int:
        count = 0
        for server in self._sql_client.servers.list_by_resource_group(group):
            if not server.name:
                continue
            count += sum(
                1 for _ in self._sql_client.databases.list_by_server(group, server.name)
            )
        return count

    def _count_storage_accounts(self, group: str) -> int:
        return sum(
            1 for _ in self._storage_client.storage_accounts.list_by_resource_group(group)
        )


def _usage_date(value: Any, fallback: date) -> str:
    """Azure returns usage dates as integers ``YYYYMMDD``."""
    if isinstance(value, str) and value.isdigit():
        value = int(value)
    if isinstance(value, (int, float)):
        text = str(int(value))
        return date(int(text[:4]), int(text[4:6]), int(text[6:8])).isoformat()
    if isinstance(value, str) and value:
        return value[:10]
    return fallback.isoformat()


def _midnight_utc(day: date) -> datetime:
    # QueryTimePeriod fields are serialized as ISO datetimes.
    return datetime.combine(day, time.min, tzinfo=timezone.utc)
