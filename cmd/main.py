"""
CostLens - Multi-Cloud Cost Dashboard API

Connects AWS, Azure and GCP accounts, collects resource counts and cost
series, and turns AI-generated advice into structured cost-optimization
recommendations.
"""

from __future__ import annotations

import logging
import os
import sys

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# ---------------------------------------------------------------------------
# Ensure the project root is on ``sys.path`` so absolute imports work when
# running ``python cmd/main.py`` from the project directory.
# ---------------------------------------------------------------------------
_PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if _PROJECT_ROOT not in sys.path:
    sys.path.insert(0, _PROJECT_ROOT)

from api.errors import register_error_handlers  # noqa: E402
from api.routes import configure_routes, router as api_router  # noqa: E402
from internal.connections.store import ConnectionStore  # noqa: E402
from internal.forecast.predictor import CostPredictor  # noqa: E402
from internal.ingestion.collector import CostFetcher, ResourceCollector  # noqa: E402
from internal.recommendations.generator import RecommendationGenerator  # noqa: E402
from pkg.config import Settings, get_settings  # noqa: E402
from pkg.database import create_tables, init_engine  # noqa: E402
from pkg.llm.client import TextGenerationClient  # noqa: E402

logger = logging.getLogger("costlens")

# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app(settings: Settings | None = None) -> FastAPI:
    """Build and configure the FastAPI application."""

    settings = settings or get_settings()

    # -- Logging -------------------------------------------------------
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    # -- FastAPI --------------------------------------------------------
    app = FastAPI(
        title="CostLens - Multi-Cloud Cost Dashboard",
        description=(
            "Multi-cloud cost dashboard API providing resource counts, cost "
            "snapshots, predictions and AI cost-optimization recommendations."
        ),
        version="0.1.0",
    )

    # -- CORS -----------------------------------------------------------
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)

    # -- Singleton services --------------------------------------------
    if not settings.text_generation_configured:
        logger.warning(
            "Azure OpenAI is not configured; recommendation and prediction "
            "endpoints will fail until AZURE_OPENAI_ENDPOINT and "
            "AZURE_OPENAI_API_KEY are set."
        )
    text_client = TextGenerationClient(settings)
    store = ConnectionStore()
    fetcher = CostFetcher(settings, store)

    # Inject services into the route module
    configure_routes(
        collector=ResourceCollector(store),
        fetcher=fetcher,
        generator=RecommendationGenerator(text_client),
        predictor=CostPredictor(
            text_client,
            deployment=settings.azure_openai_prediction_deployment,
            fetcher=fetcher,
        ),
        store=store,
    )

    # -- Routers -------------------------------------------------------
    app.include_router(api_router)

    # -- Health check (standalone, outside versioned router) ------------
    @app.get("/health")
    async def health_check():
        return {"status": "healthy", "service": "costlens"}

    # -- Lifecycle events -----------------------------------------------
    @app.on_event("startup")
    async def on_startup():
        logger.info("Initializing database engine ...")
        init_engine(settings.postgres_url)
        create_tables()
        logger.info("Database tables created / verified.")

    @app.on_event("shutdown")
    async def on_shutdown():
        logger.info("CostLens shutting down.")

    return app


# ---------------------------------------------------------------------------
# Module-level app instance (served by ``python cmd/main.py``)
# ---------------------------------------------------------------------------
app = create_app()

if __name__ == "__main__":
    settings = get_settings()
    print("==============================================")
    print("  CostLens - Multi-Cloud Cost Dashboard")
    print("==============================================")
    uvicorn.run(app, host="0.0.0.0", port=settings.costlens_port)
