"""
Upstream response interceptor.

Recognises GitHub's rate-limit exhaustion signal (a 403 carrying the
rate-limit envelope) and holds the response until the quota resets.
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable

import httpx

logger = logging.getLogger(__name__)


class UpstreamDecodeError(Exception):
    """Raised when a 403 body does not match the rate-limit envelope."""

    pass


@dataclass(frozen=True)
class RateBudget:
    """Core quota reported by the upstream."""

    limit: int
    remaining: int
    reset_at: datetime

    def wait_seconds(self, now: datetime) -> float:
        """Seconds from ``now`` until the quota resets (negative if past)."""
        return (self.reset_at - now).total_seconds()


def _require_int(core: dict[str, Any], field: str) -> int:
    value = core.get(field)
    # bool is an int subclass but never a valid quota field
    if not isinstance(value, int) or isinstance(value, bool):
        raise UpstreamDecodeError(f"Rate limit field '{field}' is not an integer")
    return value


def parse_rate_budget(body: bytes) -> RateBudget:
    """
    Decode ``{"resources": {"core": {"limit", "remaining", "reset"}}}``.

    Raises:
        UpstreamDecodeError: If the body is not the expected envelope
    """
    try:
        data = json.loads(body)
    except ValueError as e:
        raise UpstreamDecodeError(f"Rate limit body is not valid JSON: {e}") from e

    try:
        core = data["resources"]["core"]
    except (KeyError, TypeError) as e:
        raise UpstreamDecodeError("Rate limit body missing resources.core") from e
    if not isinstance(core, dict):
        raise UpstreamDecodeError("Rate limit resources.core is not an object")

    reset = _require_int(core, "reset")
    try:
        reset_at = datetime.fromtimestamp(reset, tz=timezone.utc)
    except (OverflowError, OSError, ValueError) as e:
        raise UpstreamDecodeError(f"Rate limit reset {reset} is out of range") from e

    return RateBudget(
        limit=_require_int(core, "limit"),
        remaining=_require_int(core, "remaining"),
        reset_at=reset_at,
    )


class ResponseInterceptor:
    """
    Post-forwarding hook that stalls on upstream quota exhaustion.

    The stall suspends only the task serving the current request; other
    requests keep flowing through the event loop. It is not interrupted
    by a client disconnect.
    """

    def __init__(
        self,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._sleep = sleep
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def intercept(self, response: httpx.Response) -> httpx.Response:
        """
        Inspect an upstream response before it is relayed.

        Args:
            response: Streaming upstream response

        Returns:
            The same response when untouched, otherwise an equivalent
            response replaying the buffered body

        Raises:
            UpstreamDecodeError: If a 403 body is not the rate-limit envelope
        """
        if response.status_code != httpx.codes.FORBIDDEN:
            return response

        # Raw bytes are kept for replay; decoding happens on a copy
        try:
            raw = b"".join([chunk async for chunk in response.aiter_raw()])
        finally:
            await response.aclose()

        try:
            decoded = httpx.Response(
                response.status_code, headers=response.headers, content=raw
            ).content
        except httpx.DecodingError as e:
            raise UpstreamDecodeError(f"Rate limit body could not be decoded: {e}") from e
        budget = parse_rate_budget(decoded)

        wait = budget.wait_seconds(self._clock())
        logger.warning(
            f"Rate limit reached. Remaining: {budget.remaining}, "
            f"Reset: {budget.reset_at.isoformat()}, Waiting: {max(wait, 0.0):.1f}s"
        )

        if budget.remaining == 0 and wait > 0:
            await self._sleep(wait)

        return httpx.Response(
            status_code=response.status_code,
            headers=response.headers,
            stream=httpx.ByteStream(raw),
            extensions=response.extensions,
        )
