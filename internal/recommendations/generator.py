"""
Recommendation generator.

Asks the text-generation service for cost-optimization advice, parses
the free-text answer into drafts and replaces the user's recommendation
set for that provider in a single transaction.
"""

from __future__ import annotations

import json
import logging
import uuid
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from internal.connections.store import validate_provider
from internal.recommendations.parser import RecommendationDraft, parse_recommendations
from pkg.database import CostRecommendation
from pkg.errors import NotFoundError, PersistenceError
from pkg.llm.client import TextGenerator

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a cloud cost optimization expert. Analyze the provided data and "
    "give specific, actionable recommendations."
)

_PROVIDER_LABELS = {"aws": "AWS", "azure": "Azure", "gcp": "GCP"}

_FORMAT_INSTRUCTIONS = """
Format the answer as a numbered list. Start each recommendation with
"<n>. <short title>", follow it with one or more lines of explanation,
then a line "Priority: High|Medium|Low" and a line
"Potential savings: $<amount>/month"."""


def build_resource_prompt(provider: str, resource: dict[str, Any]) -> str:
    """Prompt for advice about a single resource category."""
    label = _PROVIDER_LABELS.get(provider, provider)
    return f"""You are an {label} cost optimization assistant. Analyze the following {label} resource details and provide accurate, actionable cost-saving recommendations:

Resource Type: {resource.get("resource_type")}
Count: {resource.get("count")}
Usage Percentage: {resource.get("usage_percentage")}%
Monthly Cost: {resource.get("cost")} USD

Focus on:
- Scaling opportunities
- Resource allocation efficiency
- Reserved instance recommendations
- Specific {label} cost management best practices
{_FORMAT_INSTRUCTIONS}"""


def build_analysis_prompt(cost_data: Any, resource_data: Any) -> str:
    """Prompt for a bulk analysis of cost and resource data."""
    return f"""Analyze the following cloud resource cost data and provide optimization recommendations:
Cost Data: {json.dumps(cost_data, default=str)}
Resource Data: {json.dumps(resource_data, default=str)}

Cover cost trends and patterns, potential cost optimization opportunities,
specific recommendations for cost reduction, and a priority level for each
recommendation (High/Medium/Low).
{_FORMAT_INSTRUCTIONS}"""


class RecommendationGenerator:
    """Generates, parses and persists AI cost recommendations."""

    def __init__(self, text_generator: TextGenerator) -> None:
        self._text_generator = text_generator

    # ------------------------------------------------------------------
    # Triggers
    # ------------------------------------------------------------------

    def generate_for_resource(
        self,
        db: Session,
        user_id: str,
        provider: str,
        resource: dict[str, Any],
    ) -> list[CostRecommendation]:
        """Recommendations for one resource category of *provider*."""
        provider = validate_provider(provider)
        logger.info(
            "Generating recommendations for %s %s (user %s)",
            provider,
            resource.get("resource_type"),
            user_id,
        )
        prompt = build_resource_prompt(provider, resource)
        resource_ids = [resource["resource_type"]] if resource.get("resource_type") else []
        return self._generate(
            db, user_id, provider, prompt, resource_ids, {"resource": resource}
        )

    def analyze(
        self,
        db: Session,
        user_id: str,
        cost_data: list[dict[str, Any]],
        resource_data: dict[str, Any],
    ) -> list[CostRecommendation]:
        """Recommendations from a bulk cost / resource analysis."""
        provider = validate_provider(resource_data.get("provider", ""))
        logger.info(
            "Analyzing %d %s cost entries (user %s)", len(cost_data), provider, user_id
        )
        prompt = build_analysis_prompt(cost_data, resource_data)
        resource_ids = list(resource_data.get("resourceIds") or [])
        return self._generate(
            db,
            user_id,
            provider,
            prompt,
            resource_ids,
            {"costData": cost_data, "resourceData": resource_data},
        )

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def list_for_user(
        self,
        db: Session,
        user_id: str,
        provider: str | None = None,
        priority: str | None = None,
        status: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[CostRecommendation]:
        query = db.query(CostRecommendation).filter(
            CostRecommendation.user_id == user_id
        )
        if provider:
            query = query.filter(CostRecommendation.provider == validate_provider(provider))
        if priority:
            query = query.filter(CostRecommendation.priority == priority.lower())
        if status:
            query = query.filter(CostRecommendation.status == status)

        return (
            query.order_by(CostRecommendation.provider, CostRecommendation.position)
            .offset(offset)
            .limit(limit)
            .all()
        )

    def resolve(self, db: Session, user_id: str, recommendation_id: str) -> CostRecommendation:
        """Mark one of the user's recommendations as resolved."""
        try:
            rec_uuid = uuid.UUID(str(recommendation_id))
        except ValueError as exc:
            raise NotFoundError("Recommendation not found") from exc

        rec = (
            db.query(CostRecommendation)
            .filter(
                CostRecommendation.id == rec_uuid,
                CostRecommendation.user_id == user_id,
            )
            .first()
        )
        if rec is None:
            raise NotFoundError("Recommendation not found")

        rec.status = "resolved"
        try:
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            raise PersistenceError("Failed to resolve recommendation") from exc
        db.refresh(rec)
        return rec

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _generate(
        self,
        db: Session,
        user_id: str,
        provider: str,
        prompt: str,
        resource_ids: list[str],
        request: dict[str, Any],
    ) -> list[CostRecommendation]:
        # A failure here leaves the existing set untouched.
        text = self._text_generator.complete(SYSTEM_PROMPT, prompt)
        drafts = parse_recommendations(text)
        logger.info("Parsed %d recommendations from %d characters", len(drafts), len(text))

        analysis = {
            "deployment": getattr(self._text_generator, "deployment", None),
            "request": request,
            "response": text,
        }
        return self.replace(db, user_id, provider, drafts, resource_ids, analysis)

    @staticmethod
    def replace(
        db: Session,
        user_id: str,
        provider: str,
        drafts: list[RecommendationDraft],
        resource_ids: list[str],
        analysis: dict[str, Any],
    ) -> list[CostRecommendation]:
        """Swap the (user, provider) set for *drafts* in one transaction."""
        rows = [
            CostRecommendation(
                user_id=user_id,
                provider=provider,
                title=draft.title,
                description=draft.description,
                priority=draft.priority,
                potential_savings=draft.potential_savings,
                position=position,
                resource_ids=resource_ids,
                ai_analysis=analysis,
                status="open",
            )
            for position, draft in enumerate(drafts)
        ]

        try:
            deleted = (
                db.query(CostRecommendation)
                .filter(
                    CostRecommendation.user_id == user_id,
                    CostRecommendation.provider == provider,
                )
                .delete(synchronize_session=False)
            )
            db.add_all(rows)
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error(
                "Failed to replace %s recommendations for user %s: %s",
                provider,
                user_id,
                exc,
            )
            raise PersistenceError("Failed to store recommendations") from exc

        for row in rows:
            db.refresh(row)

        logger.info(
            "Replaced %d %s recommendations with %d for user %s",
            deleted,
            provider,
            len(rows),
            user_id,
        )
        return rows
