"""
FastAPI Service for Visitor Fingerprinting

Cookie-free visitor identification service providing:
- Visit recording with fingerprint identifiers and geolocation
- Per-visit anomaly scores and behavioral patterns
- Per-visitor insight and dashboard analytics
- Prometheus metrics and health reporting
"""

import time
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

import structlog
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from fingerprinting.core.geo.resolver import client_address_from_headers
from fingerprinting.core.models.config import FingerprintConfig
from fingerprinting.core.models.visits import VisitorInsight
from fingerprinting.core.utils.errors import ConfigurationError
from fingerprinting.core.utils.log_config import configure_logging
from fingerprinting.core.utils.metrics import ACTIVE_REQUESTS, ERROR_COUNT, REQUEST_COUNT, REQUEST_DURATION
from fingerprinting.service.engine import VisitorIntelligenceService
from fingerprinting.service.schemas import (
    DashboardResponse, ErrorDetail, ErrorResponse, FingerprintCheckResponse, FingerprintVisitor,
    HealthResponse, HealthStatus, VisitRequest, VisitResponse
)

logger = structlog.get_logger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _error_response(request: Request, status_code: int, error_code: str,
                    message: str, error_type: str) -> JSONResponse:
    error_detail = ErrorDetail(
        error_code=error_code,
        error_message=message,
        error_type=error_type,
        timestamp=_now(),
        request_id=getattr(request.state, "request_id", "unknown")
    )
    payload = ErrorResponse(error=error_detail)
    return JSONResponse(status_code=status_code, content=payload.model_dump(mode="json"))


def get_request_id(request: Request) -> str:
    """Get request ID from request state."""
    return getattr(request.state, "request_id", "unknown")


def get_service(request: Request) -> VisitorIntelligenceService:
    service = getattr(request.app.state, "service", None)
    if service is None:
        raise HTTPException(status_code=503, detail="Service not initialized")
    return service


def create_app(config: Optional[FingerprintConfig] = None,
               service: Optional[VisitorIntelligenceService] = None) -> FastAPI:
    """Build the API around a (possibly injected) service instance."""
    config = config or FingerprintConfig.from_env()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager for startup and shutdown."""
        configure_logging(config.logging)
        logger.info("Starting visitor fingerprinting service", environment=config.environment)

        try:
            app.state.service = service or VisitorIntelligenceService(config)
            await app.state.service.start()
            app.state.started_at = time.perf_counter()
            logger.info("Service startup completed")
        except Exception as e:
            logger.error("Service startup failed", error=str(e))
            raise

        try:
            yield
        finally:
            logger.info("Shutting down visitor fingerprinting service")
            try:
                await app.state.service.close()
            except Exception as e:
                logger.warning("Service close failed", error=str(e))
            logger.info("Service shutdown completed")

    app = FastAPI(
        title=config.api.title,
        description=config.api.description,
        version=config.api.version,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.api.cors_origins,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def request_middleware(request: Request, call_next):
        """Request middleware for logging, timing, and metrics."""
        start_time = time.perf_counter()
        request_id = request.headers.get("x-request-id") or str(uuid.uuid4())
        request.state.request_id = request_id

        ACTIVE_REQUESTS.inc()
        method = request.method
        path = request.url.path
        status_code = 500
        response: Optional[Response] = None

        logger.debug("Request started", request_id=request_id, method=method, path=path)

        try:
            response = await call_next(request)
            status_code = response.status_code
            return response
        except Exception as e:
            ERROR_COUNT.labels(error_type="unhandled", endpoint=path).inc()
            logger.exception("Request failed with exception", request_id=request_id, error=str(e))
            raise
        finally:
            ACTIVE_REQUESTS.dec()
            duration = time.perf_counter() - start_time
            route = request.scope.get("route")
            endpoint = getattr(route, "path", path)

            REQUEST_COUNT.labels(method=method, endpoint=endpoint, status=str(status_code)).inc()
            REQUEST_DURATION.labels(endpoint=endpoint).observe(duration)

            logger.info("Request completed", request_id=request_id, path=path,
                        status_code=status_code, duration_ms=duration * 1000.0)

            if response is not None:
                response.headers["X-Request-ID"] = request_id
                response.headers["X-Process-Time"] = f"{duration:.6f}"

    # === Exception Handlers ===

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        ERROR_COUNT.labels(error_type="validation", endpoint=request.url.path).inc()
        logger.warning("Request validation failed", request_id=get_request_id(request), errors=exc.errors())
        return _error_response(request, 422, "VALIDATION_ERROR",
                               f"Request validation failed: {exc.errors()}", "validation")

    @app.exception_handler(HTTPException)
    async def http_exception_handler(request: Request, exc: HTTPException):
        ERROR_COUNT.labels(error_type="http", endpoint=request.url.path).inc()
        return _error_response(request, exc.status_code, f"HTTP_{exc.status_code}", str(exc.detail), "http")

    @app.exception_handler(ConfigurationError)
    async def configuration_exception_handler(request: Request, exc: ConfigurationError):
        ERROR_COUNT.labels(error_type="configuration", endpoint=request.url.path).inc()
        logger.error("Configuration error", request_id=get_request_id(request), error=str(exc))
        return _error_response(request, 500, "CONFIGURATION_ERROR", str(exc), "configuration")

    # === Health and Monitoring Endpoints ===

    @app.get("/health", response_model=HealthResponse)
    async def health_check(service: VisitorIntelligenceService = Depends(get_service)):
        components = await service.health()
        model_healthy = components["model"]["status"] == "healthy"
        store_healthy = components["store"]["status"] == "healthy"

        if model_healthy and store_healthy:
            status = HealthStatus.HEALTHY
        elif model_healthy:
            status = HealthStatus.DEGRADED
        else:
            status = HealthStatus.UNHEALTHY

        return HealthResponse(
            status=status,
            timestamp=_now(),
            version=config.api.version,
            components=components,
            uptime_seconds=time.perf_counter() - getattr(app.state, "started_at", time.perf_counter()),
        )

    @app.get("/metrics")
    async def metrics():
        """Prometheus metrics endpoint."""
        return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    # === Visitor Endpoints ===

    @app.post("/visitor", response_model=VisitResponse)
    async def record_visit(body: VisitRequest, request: Request,
                           request_id: str = Depends(get_request_id),
                           service: VisitorIntelligenceService = Depends(get_service)):
        """Record a visit and return the stored visitor with its enrichment."""
        client_address = client_address_from_headers(request.headers)
        if client_address is None and request.client is not None:
            client_address = request.client.host

        payload = body.model_dump()
        record, result = await service.record_visit(payload, client_address=client_address)
        return VisitResponse(
            request_id=request_id,
            visitor=record,
            anomaly=result.anomaly,
            patterns=result.patterns,
        )

    @app.get("/visitor/check-fingerprint", response_model=FingerprintCheckResponse)
    async def check_fingerprint(fingerprint: str = Query(..., min_length=1),
                                service: VisitorIntelligenceService = Depends(get_service)):
        """Whether a fingerprint is already known, with minimal visitor data."""
        record = await service.check_fingerprint(fingerprint)
        if record is None:
            return FingerprintCheckResponse(exists=False)
        return FingerprintCheckResponse(
            exists=True,
            visitor=FingerprintVisitor(first_visit=record.first_visit, visit_count=record.visit_count)
        )

    @app.get("/visitor/{visitor_id}", response_model=VisitorInsight)
    async def get_visitor(visitor_id: str, service: VisitorIntelligenceService = Depends(get_service)):
        insight = await service.visitor_insight(visitor_id)
        if insight is None:
            raise HTTPException(status_code=404, detail="Visitor not found")
        return insight

    @app.get("/visitors/summary", response_model=DashboardResponse)
    async def visitors_summary(service: VisitorIntelligenceService = Depends(get_service)):
        """Dashboard analytics over recent visitors."""
        summary, recent = await service.dashboard_summary()
        return DashboardResponse(**summary.model_dump(), recent_visitors=recent)

    return app
