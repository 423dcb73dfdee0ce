"""Pytest configuration and fixtures."""

import json
import time
from collections.abc import Callable

import httpx
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from kado_proxy.auth.credentials import AppIdentity
from kado_proxy.config import Settings


@pytest.fixture(scope="session")
def rsa_private_key() -> rsa.RSAPrivateKey:
    """A 2048-bit RSA key shared across the test session."""
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope="session")
def private_key_pem(rsa_private_key: rsa.RSAPrivateKey) -> bytes:
    """The session key as a traditional "RSA PRIVATE KEY" PEM block."""
    return rsa_private_key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )


@pytest.fixture
def app_identity(private_key_pem: bytes) -> AppIdentity:
    """A fully configured App identity."""
    return AppIdentity(
        app_id="test-app-id",
        private_key=private_key_pem,
        installation_id=12345,
    )


@pytest.fixture
def make_settings() -> Callable[..., Settings]:
    """Build Settings isolated from any .env file, with a roomy gate."""

    def _make(**overrides) -> Settings:
        values = {
            "github_app_id": "",
            "github_app_private_key": "",
            "github_installation_id": 0,
            "upstream_url": "https://api.github.com",
            "rate_limit_requests": 1000,
            "rate_limit_window_seconds": 1.0,
            "rate_limit_burst": 1000,
        }
        values.update(overrides)
        return Settings(_env_file=None, **values)

    return _make


@pytest.fixture
def rate_limit_body() -> Callable[..., bytes]:
    """Serialized upstream rate-limit envelope."""

    def _body(remaining: int = 0, reset: int | None = None, limit: int = 5000) -> bytes:
        if reset is None:
            reset = int(time.time()) + 60
        return json.dumps(
            {"resources": {"core": {"limit": limit, "remaining": remaining, "reset": reset}}}
        ).encode()

    return _body


@pytest.fixture
def streamed_response() -> Callable[..., httpx.Response]:
    """Unread upstream responses, as returned by ``send(..., stream=True)``."""

    def _response(
        status_code: int, body: bytes = b"", headers: list[tuple[str, str]] | None = None
    ) -> httpx.Response:
        return httpx.Response(
            status_code, headers=headers or [], stream=httpx.ByteStream(body)
        )

    return _response
