"""
GitHub App credentials: signed assertions and installation tokens.

An App authenticates as itself with a short-lived RS256 JWT (the
assertion), then redeems it at the installation access-token endpoint
for a scoped token used on the forwarded request.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx
import jwt
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey

logger = logging.getLogger(__name__)

ASSERTION_TTL = timedelta(minutes=10)
GITHUB_MEDIA_TYPE = "application/vnd.github.v3+json"


class SigningError(Exception):
    """Raised when the App private key cannot be used to sign."""

    pass


class ExchangeError(Exception):
    """Raised when an assertion cannot be redeemed for a token."""

    pass


@dataclass(frozen=True)
class AppIdentity:
    """GitHub App identity loaded once at startup."""

    app_id: str = ""
    private_key: bytes = b""
    installation_id: int = 0

    @property
    def is_configured(self) -> bool:
        """Whether minted tokens should replace caller credentials."""
        return bool(self.app_id) and bool(self.private_key)

    def __repr__(self) -> str:
        return (
            f"AppIdentity(app_id={self.app_id!r}, "
            f"installation_id={self.installation_id}, "
            f"private_key={'<set>' if self.private_key else '<unset>'})"
        )


@dataclass(frozen=True)
class SignedAssertion:
    """A signed App JWT."""

    token: str
    """Compact JWS string."""

    issuer: str
    """App ID placed in the ``iss`` claim."""

    issued_at: datetime
    """Value of the ``iat`` claim."""

    expires_at: datetime
    """Value of the ``exp`` claim."""

    def __str__(self) -> str:
        return self.token


def load_private_key(pem: bytes) -> RSAPrivateKey:
    """
    Parse a PEM-encoded RSA private key.

    Raises:
        SigningError: If the bytes are not an unencrypted RSA private key
    """
    try:
        key = serialization.load_pem_private_key(pem, password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm) as e:
        raise SigningError(f"Invalid private key: {e}") from e

    if not isinstance(key, RSAPrivateKey):
        raise SigningError(
            f"Private key must be RSA, got {type(key).__name__}"
        )
    return key


class CredentialProvider:
    """
    Issues App assertions and exchanges them for installation tokens.

    Holds no credential state: every call mints a fresh assertion and
    performs a fresh exchange.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        upstream_url: str = "https://api.github.com",
    ) -> None:
        """
        Initialize the provider.

        Args:
            client: Shared HTTP client used for the token exchange
            upstream_url: Base URL of the upstream API
        """
        self._client = client
        self._upstream_url = upstream_url.rstrip("/")

    def mint_assertion(
        self, identity: AppIdentity, now: datetime | None = None
    ) -> SignedAssertion:
        """
        Build and sign the App JWT.

        Args:
            identity: App identity with ID and PEM private key
            now: Issue time; defaults to the current UTC time

        Returns:
            SignedAssertion valid for ten minutes

        Raises:
            SigningError: If the private key is unusable
        """
        key = load_private_key(identity.private_key)

        issued_at = (now or datetime.now(timezone.utc)).replace(microsecond=0)
        expires_at = issued_at + ASSERTION_TTL
        claims = {
            "iat": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
            "iss": identity.app_id,
        }

        try:
            token = jwt.encode(claims, key, algorithm="RS256")
        except (ValueError, TypeError, jwt.PyJWTError) as e:
            raise SigningError(f"Failed to sign assertion: {e}") from e

        return SignedAssertion(
            token=token,
            issuer=identity.app_id,
            issued_at=issued_at,
            expires_at=expires_at,
        )

    def access_tokens_url(self, installation_id: int) -> str:
        return f"{self._upstream_url}/app/installations/{installation_id}/access_tokens"

    async def exchange_for_installation_token(
        self, assertion: SignedAssertion, installation_id: int
    ) -> str:
        """
        Redeem an assertion for an installation access token.

        Args:
            assertion: Freshly minted App JWT
            installation_id: Installation to scope the token to

        Returns:
            The installation token string

        Raises:
            ExchangeError: On transport failure or an unusable response body
        """
        url = self.access_tokens_url(installation_id)
        headers = {
            "Authorization": f"Bearer {assertion.token}",
            "Accept": GITHUB_MEDIA_TYPE,
        }

        try:
            response = await self._client.post(url, headers=headers)
        except httpx.HTTPError as e:
            raise ExchangeError(f"Token exchange request failed: {e}") from e

        try:
            result: Any = response.json()
        except ValueError as e:
            raise ExchangeError(
                f"Token exchange returned non-JSON body (status {response.status_code})"
            ) from e

        token = result.get("token") if isinstance(result, dict) else None
        if not isinstance(token, str):
            raise ExchangeError(
                f"Unable to get installation token (status {response.status_code})"
            )

        logger.debug(f"Obtained installation token for installation {installation_id}")
        return token

    async def installation_token(self, identity: AppIdentity) -> str:
        """Mint an assertion and redeem it in one step."""
        assertion = self.mint_assertion(identity)
        return await self.exchange_for_installation_token(
            assertion, identity.installation_id
        )

    async def select_authorization(
        self, identity: AppIdentity, inbound: str | None
    ) -> str | None:
        """
        Choose the Authorization header for a forwarded request.

        A configured App identity always wins over caller credentials;
        otherwise a caller header is passed through unchanged.

        Args:
            identity: App identity (may be unconfigured)
            inbound: Authorization header from the client, if any

        Returns:
            Header value to send, or None to send no Authorization

        Raises:
            SigningError: If minting fails
            ExchangeError: If the exchange fails
        """
        if identity.is_configured:
            token = await self.installation_token(identity)
            return f"token {token}"
        if inbound:
            return inbound
        return None
