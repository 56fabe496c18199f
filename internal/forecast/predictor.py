"""
Next-month cost prediction.

Folds the latest cost snapshot into monthly points and asks the
text-generation service to extrapolate one more month.
"""

from __future__ import annotations

import json
import logging
import re
from datetime import date
from typing import Any

from sqlalchemy.orm import Session

from internal.ingestion.collector import CostFetcher
from pkg.cost.calculator import monthly_points, next_month_label
from pkg.errors import UpstreamServiceError, ValidationError
from pkg.llm.client import TextGenerator

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a cloud cost analysis AI. Provide predictions in JSON format."
)

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


def parse_prediction(text: str) -> tuple[float, float]:
    """Extract ``(predicted_cost, predicted_savings)`` from a JSON answer."""
    cleaned = _FENCE_RE.sub("", text.strip())
    try:
        payload = json.loads(cleaned)
        cost = round(float(payload["predicted_cost"]), 2)
        savings = round(float(payload["predicted_savings"]), 2)
    except (json.JSONDecodeError, KeyError, TypeError, ValueError) as exc:
        raise UpstreamServiceError(
            "Azure OpenAI", f"unusable prediction: {text[:200]!r}", 400
        ) from exc
    return cost, savings


class CostPredictor:
    """Predicts next month's cost and savings from the cost snapshot."""

    def __init__(
        self,
        text_generator: TextGenerator,
        deployment: str | None = None,
        fetcher: CostFetcher | None = None,
    ) -> None:
        self._text_generator = text_generator
        self._deployment = deployment
        self._fetcher = fetcher or CostFetcher()

    def predict(
        self,
        db: Session,
        user_id: str,
        provider: str,
        today: date | None = None,
    ) -> list[dict[str, Any]]:
        """Historical monthly points followed by one predicted point."""
        snapshot = self._fetcher.latest_snapshot(db, user_id, provider)
        if snapshot is None or not snapshot.cost_data:
            raise ValidationError(
                f"No {provider.upper()} cost data yet; fetch costs first"
            )

        points = monthly_points(snapshot.cost_data.get("rows", []))
        prompt = (
            f"Based on this cost data for the last months: {json.dumps(points)}, "
            "predict the cost and potential savings for the next month. Return "
            "only a JSON object with two numbers: predicted_cost and "
            "predicted_savings. Consider seasonality and trends."
        )
        text = self._text_generator.complete(
            SYSTEM_PROMPT, prompt, deployment=self._deployment
        )
        cost, savings = parse_prediction(text)

        logger.info(
            "Predicted next-month %s cost %.2f (savings %.2f) for user %s",
            provider,
            cost,
            savings,
            user_id,
        )
        return points + [
            {
                "month": next_month_label(today),
                "cost": cost,
                "savings": savings,
                "is_predicted": True,
            }
        ]
