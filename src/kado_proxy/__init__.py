"""kado-proxy: authenticating, rate-limit-aware reverse proxy for the GitHub API."""

__version__ = "0.1.0"
