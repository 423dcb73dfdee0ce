"""API package for the proxy."""

from kado_proxy.api.app import create_app

__all__ = ["create_app"]
