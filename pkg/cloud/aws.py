"""
AWS cloud provider integration.

Uses boto3 to count EC2 instances, RDS databases and EBS volumes, and to
pull the daily cost series from AWS Cost Explorer.
"""

from __future__ import annotations

import logging
from datetime import date
from typing import Any

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from pkg.cloud.base import CloudProvider
from pkg.config import Settings, get_settings
from pkg.errors import UpstreamServiceError

logger = logging.getLogger(__name__)

SERVICE_NAME = "AWS"


class AWSProvider(CloudProvider):
    """AWS resource and cost provider for one stored connection."""

    def __init__(self, credentials: dict[str, Any], settings: Settings | None = None):
        self._settings = settings or get_settings()
        self._credentials = credentials
        self._region = credentials.get("region") or self._settings.aws_default_region
        self._session = self._build_session()

    # ------------------------------------------------------------------
    # CloudProvider interface
    # ------------------------------------------------------------------

    @property
    def name(self) -> str:
        return "aws"

    async def count_resources(self) -> list[dict[str, Any]]:
        """Count EC2 instances, RDS databases and EBS volumes."""
        try:
            ec2 = self._session.client("ec2", region_name=self._region)
            rds = self._session.client("rds", region_name=self._region)

            reservations = ec2.describe_instances().get("Reservations", [])
            instance_count = sum(len(r.get("Instances", [])) for r in reservations)
            db_count = len(rds.describe_db_instances().get("DBInstances", []))
            volume_count = len(ec2.describe_volumes().get("Volumes", []))
        except (BotoCoreError, ClientError) as exc:
            logger.error("Failed to count AWS resources: %s", exc)
            raise UpstreamServiceError(SERVICE_NAME, _describe_error(exc)) from exc

        counts = [
            {"resource_type": "EC2 Instances", "count": instance_count},
            {"resource_type": "RDS Databases", "count": db_count},
            {"resource_type": "EBS Volumes", "count": volume_count},
        ]
        logger.info(
            "Counted AWS resources: %d instances, %d databases, %d volumes",
            instance_count,
            db_count,
            volume_count,
        )
        return counts

    async def get_cost_series(
        self,
        start_date: date,
        end_date: date,
    ) -> dict[str, Any]:
        """Pull the daily unblended cost from AWS Cost Explorer."""
        try:
            ce = self._session.client("ce", region_name="us-east-1")
            response = ce.get_cost_and_usage(
                TimePeriod={
                    "Start": start_date.isoformat(),
                    "End": end_date.isoformat(),
                },
                Granularity="DAILY",
                Metrics=["UnblendedCost"],
            )
        except (BotoCoreError, ClientError) as exc:
            logger.error("Failed to fetch AWS costs: %s", exc)
            raise UpstreamServiceError(SERVICE_NAME, _describe_error(exc)) from exc

        rows: list[dict[str, Any]] = []
        currency = "USD"
        for result_by_time in response.get("ResultsByTime", []):
            metric = result_by_time.get("Total", {}).get("UnblendedCost", {})
            currency = metric.get("Unit", currency)
            rows.append(
                {
                    "date": result_by_time["TimePeriod"]["Start"],
                    "cost": float(metric.get("Amount", 0)),
                }
            )

        logger.info("Fetched %d AWS cost rows", len(rows))
        return {
            "currency": currency,
            "rows": rows,
            "raw": {"ResultsByTime": response.get("ResultsByTime", [])},
        }

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _build_session(self) -> boto3.Session:
        return boto3.Session(
            aws_access_key_id=self._credentials.get("accessKeyId"),
            aws_secret_access_key=self._credentials.get("secretAccessKey"),
            region_name=self._region,
        )


def _describe_error(exc: Exception) -> str:
    if isinstance(exc, ClientError):
        error = exc.response.get("Error", {})
        return f"{error.get('Code', 'ClientError')}: {error.get('Message', '')}"
    return str(exc)
