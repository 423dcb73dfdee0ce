"""Tests for the rate-limit response interceptor."""

import gzip
import json
import logging
import time
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import httpx
import pytest

from kado_proxy.proxy.interceptor import (
    RateBudget,
    ResponseInterceptor,
    UpstreamDecodeError,
    parse_rate_budget,
)

NOW = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)
NOW_TS = int(NOW.timestamp())


@pytest.fixture
def sleep() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def interceptor(sleep: AsyncMock) -> ResponseInterceptor:
    """Interceptor with a frozen clock and a recorded sleep."""
    return ResponseInterceptor(sleep=sleep, clock=lambda: NOW)


async def read_raw(response: httpx.Response) -> bytes:
    return b"".join([chunk async for chunk in response.aiter_raw()])


class TestParseRateBudget:
    """Tests for rate-limit envelope decoding."""

    def test_valid_envelope(self, rate_limit_body) -> None:
        budget = parse_rate_budget(rate_limit_body(remaining=12, reset=NOW_TS + 30))

        assert budget == RateBudget(
            limit=5000,
            remaining=12,
            reset_at=datetime.fromtimestamp(NOW_TS + 30, tz=timezone.utc),
        )
        assert budget.wait_seconds(NOW) == pytest.approx(30.0)

    def test_extra_resources_ignored(self) -> None:
        body = json.dumps(
            {
                "resources": {
                    "core": {"limit": 60, "remaining": 0, "reset": NOW_TS, "used": 60},
                    "search": {"limit": 10, "remaining": 10, "reset": NOW_TS},
                },
                "rate": {"limit": 60},
            }
        ).encode()
        assert parse_rate_budget(body).limit == 60

    @pytest.mark.parametrize(
        "body",
        [
            b"not json",
            b"",
            b'{"message": "Resource not accessible by integration"}',
            b'{"resources": []}',
            b'{"resources": {"core": null}}',
            b'{"resources": {"core": {"limit": 5000, "remaining": "0", "reset": 1}}}',
            b'{"resources": {"core": {"limit": 5000, "remaining": 0}}}',
            b'{"resources": {"core": {"limit": 5000, "remaining": true, "reset": 1}}}',
            b"[1, 2, 3]",
            b'{"resources": {"core": {"limit": 5000, "remaining": 0, "reset": 100000000000000000000}}}',
            b'{"resources": {"core": {"limit": 5000, "remaining": 0, "reset": -100000000000000000000}}}',
        ],
    )
    def test_invalid_envelope(self, body: bytes) -> None:
        with pytest.raises(UpstreamDecodeError):
            parse_rate_budget(body)


class TestResponseInterceptor:
    """Tests for ResponseInterceptor.intercept."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("status_code", [200, 201, 404, 429, 500])
    async def test_non_forbidden_untouched(
        self, interceptor: ResponseInterceptor, sleep: AsyncMock, streamed_response, status_code: int
    ) -> None:
        """Anything but 403 is returned as-is, without reading the body."""
        response = streamed_response(status_code, b"OK")
        result = await interceptor.intercept(response)

        assert result is response
        assert response.is_stream_consumed is False
        assert await read_raw(result) == b"OK"
        sleep.assert_not_called()

    @pytest.mark.asyncio
    async def test_forbidden_with_remaining_quota(
        self, interceptor: ResponseInterceptor, sleep: AsyncMock, streamed_response, rate_limit_body
    ) -> None:
        """A 403 with quota left is not an exhaustion signal."""
        body = rate_limit_body(remaining=42, reset=NOW_TS + 3600)
        response = streamed_response(403, body, [("Content-Type", "application/json")])

        result = await interceptor.intercept(response)

        sleep.assert_not_called()
        assert result.status_code == 403
        assert result.headers["Content-Type"] == "application/json"
        assert await read_raw(result) == body

    @pytest.mark.asyncio
    async def test_exhausted_stalls_until_reset(
        self, interceptor: ResponseInterceptor, sleep: AsyncMock, streamed_response, rate_limit_body
    ) -> None:
        body = rate_limit_body(remaining=0, reset=NOW_TS + 30)
        response = streamed_response(403, body)

        result = await interceptor.intercept(response)

        sleep.assert_awaited_once()
        assert sleep.await_args.args[0] == pytest.approx(30.0)
        assert result.status_code == 403
        assert await read_raw(result) == body
        assert response.is_closed

    @pytest.mark.asyncio
    async def test_exhausted_with_past_reset(
        self, interceptor: ResponseInterceptor, sleep: AsyncMock, streamed_response, rate_limit_body
    ) -> None:
        """A reset time already passed means no stall."""
        body = rate_limit_body(remaining=0, reset=NOW_TS - 5)
        result = await interceptor.intercept(streamed_response(403, body))

        sleep.assert_not_called()
        assert await read_raw(result) == body

    @pytest.mark.asyncio
    async def test_logs_budget(
        self, interceptor: ResponseInterceptor, streamed_response, rate_limit_body, caplog
    ) -> None:
        body = rate_limit_body(remaining=0, reset=NOW_TS + 90)
        with caplog.at_level(logging.WARNING, logger="kado_proxy.proxy.interceptor"):
            await interceptor.intercept(streamed_response(403, body))

        assert "Rate limit reached. Remaining: 0" in caplog.text
        assert "Waiting: 90.0s" in caplog.text

    @pytest.mark.asyncio
    async def test_decode_error(
        self, interceptor: ResponseInterceptor, sleep: AsyncMock, streamed_response
    ) -> None:
        response = streamed_response(403, b'{"message": "Forbidden"}')

        with pytest.raises(UpstreamDecodeError):
            await interceptor.intercept(response)

        sleep.assert_not_called()
        assert response.is_closed

    @pytest.mark.asyncio
    async def test_gzip_body_replayed_verbatim(
        self, interceptor: ResponseInterceptor, sleep: AsyncMock, streamed_response, rate_limit_body
    ) -> None:
        """Compressed bodies are decoded for inspection but relayed as received."""
        compressed = gzip.compress(rate_limit_body(remaining=0, reset=NOW_TS + 10))
        response = streamed_response(403, compressed, [("Content-Encoding", "gzip")])

        result = await interceptor.intercept(response)

        sleep.assert_awaited_once()
        assert result.headers["Content-Encoding"] == "gzip"
        assert await read_raw(result) == compressed

    @pytest.mark.asyncio
    async def test_corrupt_encoding(
        self, interceptor: ResponseInterceptor, streamed_response
    ) -> None:
        response = streamed_response(403, b"not gzip", [("Content-Encoding", "gzip")])
        with pytest.raises(UpstreamDecodeError):
            await interceptor.intercept(response)

    @pytest.mark.asyncio
    async def test_real_stall(self, streamed_response, rate_limit_body) -> None:
        """With the default sleep the response is held until the reset second."""
        interceptor = ResponseInterceptor()
        body = rate_limit_body(remaining=0, reset=int(time.time()) + 2)

        start = time.monotonic()
        result = await interceptor.intercept(streamed_response(403, body))
        elapsed = time.monotonic() - start

        # reset has one-second resolution, so the wait is in (1, 2]
        assert 0.9 <= elapsed <= 3.0
        assert result.status_code == 403
        assert await read_raw(result) == body
