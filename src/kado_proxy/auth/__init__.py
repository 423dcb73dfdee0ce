"""GitHub App authentication: assertion minting and token exchange."""

from kado_proxy.auth.credentials import (
    AppIdentity,
    CredentialProvider,
    ExchangeError,
    SignedAssertion,
    SigningError,
)

__all__ = [
    "AppIdentity",
    "CredentialProvider",
    "ExchangeError",
    "SignedAssertion",
    "SigningError",
]
