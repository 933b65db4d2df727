# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""FastAPI status application for the mail relay.

The relay itself speaks SMTP; this small HTTP application exposes its health
and Prometheus metrics for container orchestration and monitoring:

- ``GET /health``: liveness probe, never authenticated
- ``GET /status``: configuration summary
- ``GET /metrics``: Prometheus text exposition

When a token is configured, ``/status`` and ``/metrics`` require it in the
``X-API-Token`` header.

Example:
    Creating and running the application::

        app = create_app(metrics, config=config, api_token="secret-token")
        uvicorn.run(app, host="127.0.0.1", port=8025)
"""

from __future__ import annotations

import logging

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import Response
from fastapi.security import APIKeyHeader
from pydantic import BaseModel

from . import __version__
from .models import RelayConfig
from .prometheus import RelayMetrics

logger = logging.getLogger(__name__)

API_TOKEN_HEADER_NAME = "X-API-Token"
api_key_scheme = APIKeyHeader(name=API_TOKEN_HEADER_NAME, auto_error=False)


async def require_token(request: Request, api_token: str | None = Depends(api_key_scheme)) -> None:
    """Validate the API token carried in the ``X-API-Token`` header.

    When no token has been configured through :func:`create_app` the
    dependency is bypassed.
    """
    expected = getattr(request.app.state, "api_token", None)
    if expected is None:
        return
    if not api_token or api_token != expected:
        raise HTTPException(status.HTTP_401_UNAUTHORIZED, "Invalid or missing API token")


auth_dependency = Depends(require_token)


class RouteInfo(BaseModel):
    """Public view of a route (credentials are never exposed)."""

    domains: list[str]
    url: str
    authenticated: bool


class StatusResponse(BaseModel):
    """Relay configuration summary."""

    ok: bool = True
    version: str = __version__
    spam_check: bool | None = None
    flag_threshold: float | None = None
    reject_threshold: float | None = None
    dnsbl_zones: list[str] | None = None
    routes: list[RouteInfo] | None = None


def create_app(
    metrics: RelayMetrics,
    *,
    config: RelayConfig | None = None,
    api_token: str | None = None,
) -> FastAPI:
    """Build the status application.

    Args:
        metrics: Metrics collector whose registry is exported on ``/metrics``.
        config: Relay configuration summarized on ``/status``.
        api_token: Optional token required by the protected endpoints.
    """
    api = FastAPI(title="Mail Relay", version=__version__)
    api.state.api_token = api_token

    @api.get("/health")
    async def health():
        """Health check endpoint for container monitoring (no authentication required)."""
        return {"status": "ok"}

    @api.get("/status", response_model=StatusResponse, response_model_exclude_none=True, dependencies=[auth_dependency])
    async def relay_status():
        """Return the relay configuration summary."""
        if config is None:
            return StatusResponse()
        return StatusResponse(
            spam_check=config.spam.enabled,
            flag_threshold=config.spam.flag_threshold,
            reject_threshold=config.spam.reject_threshold,
            dnsbl_zones=list(config.spam.dnsbl_zones),
            routes=[
                RouteInfo(
                    domains=list(route.domains),
                    url=route.target.url,
                    authenticated=route.target.credentials is not None,
                )
                for route in config.routes
            ],
        )

    @api.get("/metrics", dependencies=[auth_dependency])
    async def relay_metrics():
        """Expose Prometheus metrics."""
        return Response(content=metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    return api
