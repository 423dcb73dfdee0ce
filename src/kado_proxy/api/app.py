"""FastAPI application for the proxy."""

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

import httpx
from fastapi import FastAPI, Request, Response

from kado_proxy.auth.credentials import CredentialProvider
from kado_proxy.config import Settings, get_settings
from kado_proxy.proxy.dispatcher import RequestDispatcher
from kado_proxy.proxy.interceptor import ResponseInterceptor
from kado_proxy.quota.limiter import AdmissionGate

logger = logging.getLogger(__name__)

PROXY_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]


def build_http_client(settings: Settings) -> httpx.AsyncClient:
    """Create the shared upstream client."""
    return httpx.AsyncClient(
        timeout=httpx.Timeout(
            connect=settings.http_timeout_connect,
            read=settings.http_timeout_read,
            write=settings.http_timeout_connect,
            pool=settings.http_timeout_connect,
        ),
        follow_redirects=False,
    )


def create_app(
    settings: Settings | None = None,
    gate: AdmissionGate | None = None,
    http_client: httpx.AsyncClient | None = None,
    interceptor: ResponseInterceptor | None = None,
) -> FastAPI:
    """
    Create and configure the proxy application.

    Args:
        settings: Configuration; defaults to environment settings
        gate: Admission gate; defaults to one built from settings
        http_client: Upstream client; created and owned by the app if None
        interceptor: Response hook; defaults to a ResponseInterceptor
    """
    settings = settings or get_settings()
    gate = gate or AdmissionGate.from_settings(settings)
    identity = settings.app_identity()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        owns_client = http_client is None
        client = http_client or build_http_client(settings)
        app.state.dispatcher = RequestDispatcher(
            upstream_url=settings.upstream_url,
            identity=identity,
            gate=gate,
            credentials=CredentialProvider(client, upstream_url=settings.upstream_url),
            client=client,
            interceptor=interceptor,
            admission_timeout=settings.admission_timeout_seconds,
        )
        if identity.is_configured:
            logger.info(f"Minting installation tokens for GitHub App {identity.app_id}")
        else:
            logger.info("No GitHub App configured; passing caller credentials through")
        logger.info(
            f"Proxying to {settings.upstream_url} at "
            f"{settings.rate_limit_requests} requests per {settings.rate_limit_window_seconds:g}s"
        )
        yield
        if owns_client:
            await client.aclose()
            logger.info("Upstream client closed")

    # Docs routes are disabled so every path reaches the upstream
    app = FastAPI(
        title="kado-proxy",
        version="0.1.0",
        lifespan=lifespan,
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )
    app.state.gate = gate

    # Request logging middleware
    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        start_time = time.perf_counter()
        response = await call_next(request)
        process_time = (time.perf_counter() - start_time) * 1000
        logger.info(
            f"{request.method} {request.url.path} -> {response.status_code} "
            f"({process_time:.2f}ms)"
        )
        return response

    @app.api_route("/{path:path}", methods=PROXY_METHODS, include_in_schema=False)
    async def proxy(request: Request) -> Response:
        return await request.app.state.dispatcher.dispatch(request)

    return app
