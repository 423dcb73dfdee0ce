"""Per-request orchestration: admission, authorization, forwarding."""

import asyncio
import logging
from collections import deque
from typing import AsyncIterator

import httpx
from fastapi import Request, Response, status
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.background import BackgroundTask
from starlette.requests import ClientDisconnect
from starlette.types import Message, Receive

from kado_proxy.auth.credentials import (
    AppIdentity,
    CredentialProvider,
    ExchangeError,
    SigningError,
)
from kado_proxy.proxy.interceptor import ResponseInterceptor, UpstreamDecodeError
from kado_proxy.quota.limiter import AdmissionGate, RateLimitExceeded

logger = logging.getLogger(__name__)

# Connection-scoped headers never relayed across the proxy (RFC 9110 7.6.1)
HOP_BY_HOP_HEADERS = frozenset(
    {
        "connection",
        "keep-alive",
        "proxy-authenticate",
        "proxy-authorization",
        "proxy-connection",
        "te",
        "trailer",
        "transfer-encoding",
        "upgrade",
    }
)

# Host is rewritten by the client and Authorization is set per policy
DROPPED_REQUEST_HEADERS = HOP_BY_HOP_HEADERS | {"host", "authorization"}

# Non-standard status for a client that went away mid-request (nginx)
CLIENT_CLOSED_REQUEST = 499


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def _has_body(request: Request) -> bool:
    headers = request.headers
    return "content-length" in headers or "transfer-encoding" in headers


class DisconnectWatcher:
    """
    Watches the ASGI receive channel while a request waits for admission.

    Messages read during the wait are kept and handed out again by
    ``receive``, so the request body can still be streamed afterwards.
    """

    def __init__(self, receive: Receive) -> None:
        self._receive = receive
        self._buffered: deque[Message] = deque()
        self._task: asyncio.Task[None] | None = None
        self.disconnected = asyncio.Event()

    async def __aenter__(self) -> "DisconnectWatcher":
        self._task = asyncio.create_task(self._watch())
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _watch(self) -> None:
        while True:
            message = await self._receive()
            self._buffered.append(message)
            if message["type"] == "http.disconnect":
                self.disconnected.set()
                return

    async def receive(self) -> Message:
        """Buffered messages first, then the live channel."""
        if self._buffered:
            return self._buffered.popleft()
        return await self._receive()


class RequestDispatcher:
    """
    Forwards inbound requests to the single upstream host.

    Every request passes the admission gate first, then receives exactly
    one authorization strategy before being streamed to the upstream.
    """

    def __init__(
        self,
        upstream_url: str,
        identity: AppIdentity,
        gate: AdmissionGate,
        credentials: CredentialProvider,
        client: httpx.AsyncClient,
        interceptor: ResponseInterceptor | None = None,
        admission_timeout: float | None = None,
    ) -> None:
        """
        Initialize the dispatcher.

        Args:
            upstream_url: Base URL of the upstream API
            identity: App identity; unconfigured means pass-through auth
            gate: Admission gate shared by all requests
            credentials: Provider for minted installation tokens
            client: Shared HTTP client used for forwarding
            interceptor: Response hook; defaults to a ResponseInterceptor
            admission_timeout: Maximum seconds to wait for admission
        """
        self._upstream_url = upstream_url.rstrip("/")
        self._identity = identity
        self._gate = gate
        self._credentials = credentials
        self._client = client
        self._interceptor = interceptor or ResponseInterceptor()
        self._admission_timeout = admission_timeout

    def target_url(self, request: Request) -> str:
        """Upstream URL with the inbound path and query preserved."""
        # raw_path keeps percent-encoding (e.g. %2F in ref names) intact
        raw_path = request.scope.get("raw_path")
        path = raw_path.split(b"?", 1)[0].decode("latin-1") if raw_path else request.url.path
        url = f"{self._upstream_url}{path}"
        query = request.url.query
        if query:
            url = f"{url}?{query}"
        return url

    def outbound_headers(
        self, request: Request, authorization: str | None
    ) -> list[tuple[bytes, bytes]]:
        """Inbound headers minus Host, hop-by-hop and Authorization."""
        headers = [
            (name, value)
            for name, value in request.headers.raw
            if name.lower().decode("latin-1") not in DROPPED_REQUEST_HEADERS
        ]
        if authorization is not None:
            headers.append((b"authorization", authorization.encode("latin-1")))
        return headers

    async def dispatch(self, request: Request) -> Response:
        """
        Handle one inbound request end to end.

        Args:
            request: Inbound request

        Returns:
            The relayed upstream response, or an error response
        """
        watcher = DisconnectWatcher(request.receive)
        try:
            async with watcher:
                admission = await self._gate.acquire(
                    timeout=self._admission_timeout, cancel=watcher.disconnected
                )
        except RateLimitExceeded as e:
            if watcher.disconnected.is_set():
                logger.info(
                    f"Client disconnected while waiting for admission: "
                    f"{request.method} {request.url.path}"
                )
            else:
                logger.warning(f"Admission denied for {request.method} {request.url.path}: {e}")
            return _error(status.HTTP_429_TOO_MANY_REQUESTS, "Rate limit exceeded")

        if admission.waited > 0:
            logger.info(
                f"Admitted {request.method} {request.url.path} after {admission.waited:.3f}s "
                f"({admission.remaining} tokens left)"
            )

        try:
            authorization = await self._credentials.select_authorization(
                self._identity, request.headers.get("authorization")
            )
        except SigningError as e:
            logger.error(f"Failed to generate JWT: {e}")
            return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to generate JWT")
        except ExchangeError as e:
            logger.error(f"Failed to get installation token: {e}")
            return _error(
                status.HTTP_500_INTERNAL_SERVER_ERROR, "Failed to get installation token"
            )

        # Body messages read by the watcher are replayed ahead of the live ones
        content: AsyncIterator[bytes] | None = None
        if _has_body(request):
            content = Request(request.scope, receive=watcher.receive).stream()
        outbound = self._client.build_request(
            request.method,
            self.target_url(request),
            headers=self.outbound_headers(request, authorization),
            content=content,
        )

        try:
            upstream = await self._client.send(outbound, stream=True)
        except ClientDisconnect:
            logger.info(
                f"Client disconnected while sending {request.method} {request.url.path}"
            )
            return Response(status_code=CLIENT_CLOSED_REQUEST)
        except httpx.HTTPError as e:
            logger.error(f"Upstream request {request.method} {outbound.url.path} failed: {e}")
            return _error(status.HTTP_502_BAD_GATEWAY, "Bad gateway")

        try:
            upstream = await self._interceptor.intercept(upstream)
        except (UpstreamDecodeError, httpx.HTTPError) as e:
            await upstream.aclose()
            logger.error(f"Failed to process upstream response: {e}")
            return _error(status.HTTP_502_BAD_GATEWAY, "Bad gateway")

        return self._relay(upstream)

    def _relay(self, upstream: httpx.Response) -> StreamingResponse:
        """Stream the upstream body to the client without decoding it."""
        response = StreamingResponse(
            upstream.aiter_raw(),
            status_code=upstream.status_code,
            background=BackgroundTask(upstream.aclose),
        )
        response.raw_headers = [
            (name.lower(), value)
            for name, value in upstream.headers.raw
            if name.lower().decode("latin-1") not in HOP_BY_HOP_HEADERS
        ]
        return response
