"""FastAPI application: enrichment, quota status and cache administration."""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any

import structlog
from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from folio_enrich import __version__
from folio_enrich.config import Settings, validate_environment_variables
from folio_enrich.exceptions import (
    ConfigurationError,
    InvalidBatchError,
    ProviderRejectedError,
    QuotaExhaustedError,
    TransientProviderError,
)
from folio_enrich.services import Services, build_services

logger = structlog.get_logger(__name__)


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


class EnrichRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    # Validated by the pipeline so malformed batches map to 400, not 422
    positions: Any = None
    per_symbol_cost: int = Field(default=1, ge=1, alias="perSymbolCost")


class LimitsActionRequest(BaseModel):
    action: str
    provider: str | None = None
    count: int = Field(default=1, ge=1, le=1000)


# --- error handlers ---


async def invalid_batch_handler(request: Request, exc: InvalidBatchError):
    return JSONResponse(
        status_code=400,
        content={"success": False, "error": str(exc), "code": "INVALID_BATCH"},
    )


async def configuration_error_handler(request: Request, exc: ConfigurationError):
    logger.error("configuration_error", path=request.url.path, error=str(exc))
    return JSONResponse(
        status_code=500,
        content={
            "success": False,
            "error": str(exc),
            "code": "CONFIGURATION_ERROR",
            "details": {"missing": exc.missing},
        },
    )


async def upstream_error_handler(request: Request, exc: Exception):
    logger.warning("upstream_unavailable", path=request.url.path, error=str(exc))
    return JSONResponse(
        status_code=503,
        content={"success": False, "error": str(exc), "code": "UPSTREAM_UNAVAILABLE"},
    )


def get_services(request: Request) -> Services:
    return request.app.state.services


def create_app(services: Services | None = None, settings: Settings | None = None) -> FastAPI:
    """
    Build the app. Services are created in the lifespan unless injected
    (tests pass a pre-built container).
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = services is None
        if owned:
            resolved = settings or Settings()
            validate_environment_variables(resolved)
            app.state.services = build_services(resolved)
        else:
            app.state.services = services
        logger.info("startup", version=__version__)
        yield
        if owned:
            await app.state.services.aclose()
        logger.info("shutdown")

    app = FastAPI(
        title="folio-enrich",
        version=__version__,
        description="Portfolio enrichment with quota-aware provider fallback",
        lifespan=lifespan,
    )

    app.add_exception_handler(InvalidBatchError, invalid_batch_handler)
    app.add_exception_handler(ConfigurationError, configuration_error_handler)
    for exc_type in (QuotaExhaustedError, ProviderRejectedError, TransientProviderError):
        app.add_exception_handler(exc_type, upstream_error_handler)

    @app.get("/health")
    async def health():
        return {"status": "ok", "version": __version__}

    @app.post("/api/enrich")
    async def enrich(body: EnrichRequest, svc: Services = Depends(get_services)):
        result = await svc.pipeline.enrich(body.positions, body.per_symbol_cost)
        return result.to_dict()

    @app.get("/api/portfolio/enriched")
    async def portfolio_enriched(svc: Services = Depends(get_services)):
        positions = await svc.broker.get_positions()
        if not positions:
            return {
                "enrichedPositions": [],
                "summary": None,
                "message": "No open positions",
            }
        result = await svc.pipeline.enrich(positions)
        return result.to_dict()

    @app.get("/api/trading212/account")
    async def trading212_account(svc: Services = Depends(get_services)):
        return await svc.broker.get_account_cash()

    @app.get("/api/limits/status")
    async def limits_status(svc: Services = Depends(get_services)):
        return {
            "success": True,
            "data": svc.ledger.summary().to_dict(),
            "fallback": svc.orchestrator.fallback_status(),
            "timestamp": _timestamp(),
        }

    @app.post("/api/limits/status")
    async def limits_action(body: LimitsActionRequest, svc: Services = Depends(get_services)):
        if body.action == "reset":
            svc.ledger.reset(body.provider)
            if body.provider:
                schedulers = [svc.scheduler_for(body.provider)]
            else:
                schedulers = [route.scheduler for route in (svc.primary, svc.secondary)]
            for scheduler in schedulers:
                if scheduler is not None:
                    scheduler.drain()
            return {
                "success": True,
                "message": (
                    f"Reset usage for {body.provider}"
                    if body.provider
                    else "Reset usage for all providers"
                ),
                "timestamp": _timestamp(),
            }

        if body.action == "simulate" and body.provider:
            if svc.ledger.get_provider(body.provider) is None:
                return JSONResponse(
                    status_code=400,
                    content={
                        "success": False,
                        "error": f"Unknown API provider: {body.provider}",
                        "timestamp": _timestamp(),
                    },
                )
            for _ in range(body.count):
                svc.ledger.record_call(body.provider, success=True)
            return {
                "success": True,
                "message": f"Simulated {body.count} API calls for {body.provider}",
                "data": svc.ledger.summary().to_dict(),
                "timestamp": _timestamp(),
            }

        return JSONResponse(
            status_code=400,
            content={
                "success": False,
                "error": 'Invalid action. Use "reset" or "simulate" with provider name.',
                "timestamp": _timestamp(),
            },
        )

    @app.get("/api/cache/stats")
    async def cache_stats(svc: Services = Depends(get_services)):
        return {
            cache.namespace: {**cache.stats().to_dict(), **cache.info()}
            for cache in svc.caches
        }

    @app.post("/api/cache/clear")
    async def cache_clear(svc: Services = Depends(get_services)):
        for cache in svc.caches:
            cache.clear()
        return {"success": True, "message": "All fundamentals caches cleared"}

    return app
