"""
FastAPI middleware for observability.

Provides:
1. Request/response metrics (latency, status codes, in-flight)
2. Correlation ID propagation
3. Request logging

Usage:
    app = FastAPI()
    setup_observability(app, service_name="flash-sale-service")
"""

import time
import uuid
import logging
from typing import Callable
from fastapi import FastAPI, Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from .metrics import (
    HTTP_REQUEST_LATENCY,
    HTTP_REQUEST_TOTAL,
    HTTP_IN_FLIGHT_REQUESTS,
    HTTP_ERRORS_TOTAL,
    set_service_info,
)

logger = logging.getLogger(__name__)

CORRELATION_HEADER = "X-Correlation-ID"


class MetricsMiddleware(BaseHTTPMiddleware):
    """Tracks request latency, count by status code, in-flight requests and errors."""

    def __init__(self, app, service_name: str):
        super().__init__(app)
        self.service_name = service_name

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        HTTP_IN_FLIGHT_REQUESTS.labels(service=self.service_name).inc()
        start_time = time.time()
        endpoint = self._normalize_path(request.url.path)

        status_code = "500"
        try:
            response = await call_next(request)
            status_code = str(response.status_code)
            if response.status_code >= 400:
                HTTP_ERRORS_TOTAL.labels(
                    service=self.service_name,
                    endpoint=endpoint,
                    error_type="client_error" if response.status_code < 500 else "server_error"
                ).inc()
            return response

        except Exception as e:
            HTTP_ERRORS_TOTAL.labels(
                service=self.service_name,
                endpoint=endpoint,
                error_type="server_error"
            ).inc()
            logger.error(
                f"Request failed: path={request.url.path}, "
                f"correlation_id={get_correlation_id(request)}, error={str(e)}"
            )
            raise

        finally:
            latency = time.time() - start_time
            HTTP_REQUEST_LATENCY.labels(
                service=self.service_name,
                endpoint=endpoint,
                method=request.method,
                status_code=status_code
            ).observe(latency)
            HTTP_REQUEST_TOTAL.labels(
                service=self.service_name,
                endpoint=endpoint,
                method=request.method,
                status_code=status_code
            ).inc()
            HTTP_IN_FLIGHT_REQUESTS.labels(service=self.service_name).dec()

            logger.info(
                f"Request completed: method={request.method}, path={endpoint}, "
                f"status={status_code}, latency={latency:.3f}s, "
                f"correlation_id={get_correlation_id(request)}"
            )

    @staticmethod
    def _normalize_path(path: str) -> str:
        """/orders/6f1c2b8e-... -> /orders/{id}, to keep label cardinality low."""
        normalized = []
        for part in path.split("/"):
            if (len(part) == 36 and part.count("-") == 4) or part.isdigit():
                normalized.append("{id}")
            else:
                normalized.append(part)
        return "/".join(normalized)


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Propagates X-Correlation-ID from request to response and settlement events."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        correlation_id = request.headers.get(
            CORRELATION_HEADER,
            request.headers.get("X-Request-ID", str(uuid.uuid4()))
        )
        request.state.correlation_id = correlation_id

        response = await call_next(request)
        response.headers[CORRELATION_HEADER] = correlation_id
        return response


def setup_observability(
    app: FastAPI,
    service_name: str,
    version: str = "1.0.0",
    environment: str = "production"
):
    """
    Adds:
    - Metrics middleware (latency, errors, in-flight)
    - Correlation ID propagation
    - Prometheus metrics endpoint
    - Health and readiness endpoints
    """
    set_service_info(service_name, version, environment)

    # First added is innermost: correlation id is set before metrics run
    app.add_middleware(MetricsMiddleware, service_name=service_name)
    app.add_middleware(CorrelationIdMiddleware)

    @app.get("/metrics")
    async def metrics():
        """Prometheus metrics endpoint."""
        return Response(
            content=generate_latest(),
            media_type=CONTENT_TYPE_LATEST
        )

    @app.get("/health")
    async def health():
        """Health check endpoint for load balancers."""
        return {
            "status": "healthy",
            "service": service_name,
            "version": version
        }

    @app.get("/ready")
    async def ready(request: Request):
        """Readiness check: the lifespan has wired the components."""
        container = getattr(request.app.state, "container", None)
        return {"status": "ready" if container is not None else "starting"}

    logger.info(f"Observability setup complete for {service_name}")


def get_correlation_id(request: Request) -> str:
    return getattr(request.state, "correlation_id", None) or str(uuid.uuid4())
