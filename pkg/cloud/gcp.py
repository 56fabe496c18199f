"""
GCP cloud provider integration.

Uses a service-account key to count Compute Engine instances, Cloud SQL
instances and persistent disks, and reads the daily cost series from the
BigQuery billing export.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import date
from typing import Any

from pkg.cloud.base import CloudProvider
from pkg.errors import UpstreamServiceError, ValidationError

# GCP project IDs: 6-30 chars, lowercase letters, digits, hyphens
_PROJECT_ID_RE = re.compile(r"^[a-z][a-z0-9\-]{4,28}[a-z0-9]$")

logger = logging.getLogger(__name__)

SERVICE_NAME = "GCP"


class GCPProvider(CloudProvider):
    """Google Cloud Platform resource and cost provider."""

    def __init__(self, credentials: dict[str, Any]):
        # Validate project ID to prevent query injection in BigQuery
        pid = credentials.get("projectId", "")
        if not _PROJECT_ID_RE.match(pid):
            raise ValidationError(
                f"Invalid GCP project ID format: {pid!r}. "
                "Expected 6-30 lowercase alphanumeric/hyphen characters."
            )
        try:
            self._service_account_info = json.loads(credentials["serviceAccountJson"])
        except (KeyError, TypeError, json.JSONDecodeError) as exc:
            raise ValidationError("GCP serviceAccountJson is not valid JSON") from exc

        self._project_id = pid
        self._credentials = None
        self._initialized = False

    # ------------------------------------------------------------------
    # Lazy initialization
    # ------------------------------------------------------------------

    def _ensure_credentials(self) -> None:
        """Lazily build service-account credentials."""
        if self._initialized:
            return

        from google.oauth2 import service_account

        try:
            self._credentials = service_account.Credentials.from_service_account_info(
                self._service_account_info,
                scopes=["https://www.googleapis.com/auth/cloud-platform"],
            )
        except ValueError as exc:
            raise ValidationError(f"Invalid GCP service account key: {exc}") from exc
        self._initialized = True

    # ------------------------------------------------------------------
    # CloudProvider interface
    # ------------------------------------------------------------------

    @property
    def name(self) -> str:
        return "gcp"

    async def count_resources(self) -> list[dict[str, Any]]:
        """Count Compute Engine instances, Cloud SQL instances and disks."""
        self._ensure_credentials()

        from google.api_core.exceptions import GoogleAPIError
        from google.auth.exceptions import GoogleAuthError
        from google.cloud import compute_v1
        from googleapiclient import discovery
        from googleapiclient.errors import HttpError

        try:
            instances = compute_v1.InstancesClient(credentials=self._credentials)
            disks = compute_v1.DisksClient(credentials=self._credentials)
            instance_count = sum(
                len(scoped.instances)
                for _, scoped in instances.aggregated_list(project=self._project_id)
            )
            disk_count = sum(
                len(scoped.disks)
                for _, scoped in disks.aggregated_list(project=self._project_id)
            )

            sqladmin = discovery.build(
                "sqladmin",
                "v1beta4",
                credentials=self._credentials,
                cache_discovery=False,
            )
            sql_response = sqladmin.instances().list(project=self._project_id).execute()
            sql_count = len(sql_response.get("items", []))
        except (GoogleAPIError, GoogleAuthError, HttpError) as exc:
            logger.error("Failed to count GCP resources: %s", exc)
            raise UpstreamServiceError(SERVICE_NAME, str(exc)) from exc

        logger.info(
            "Counted GCP resources: %d instances, %d Cloud SQL, %d disks",
            instance_count,
            sql_count,
            disk_count,
        )
        return [
            {"resource_type": "Compute Instances", "count": instance_count},
            {"resource_type": "Cloud SQL", "count": sql_count},
            {"resource_type": "Persistent Disks", "count": disk_count},
        ]

    async def get_cost_series(
        self,
        start_date: date,
        end_date: date,
    ) -> dict[str, Any]:
        """Sum the BigQuery billing export per day."""
        self._ensure_credentials()

        from google.api_core.exceptions import GoogleAPIError
        from google.cloud import bigquery

        bq_client = bigquery.Client(
            project=self._project_id, credentials=self._credentials
        )

        # Standard billing export table naming convention
        query = f"""
            SELECT
                DATE(usage_start_time) AS usage_date,
                SUM(cost) AS cost,
                ANY_VALUE(currency) AS currency
            FROM `{self._project_id}.billing_export.gcp_billing_export_v1_*`
            WHERE DATE(usage_start_time) >= @start_date
              AND DATE(usage_start_time) < @end_date
            GROUP BY usage_date
            ORDER BY usage_date
        """
        job_config = bigquery.QueryJobConfig(
            query_parameters=[
                bigquery.ScalarQueryParameter(
                    "start_date", "DATE", start_date.isoformat()
                ),
                bigquery.ScalarQueryParameter("end_date", "DATE", end_date.isoformat()),
            ]
        )

        try:
            results = bq_client.query(query, job_config=job_config).result()
        except GoogleAPIError as exc:
            logger.error("Failed to fetch GCP costs: %s", exc)
            raise UpstreamServiceError(SERVICE_NAME, str(exc)) from exc

        rows: list[dict[str, Any]] = []
        currency = "USD"
        for row in results:
            currency = row.currency or currency
            rows.append(
                {"date": row.usage_date.isoformat(), "cost": float(row.cost or 0)}
            )

        logger.info("Fetched %d GCP cost rows", len(rows))
        return {"currency": currency, "rows": rows, "raw": {"rows": rows}}
