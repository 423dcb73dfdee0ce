"""Request forwarding and upstream response interception."""

from kado_proxy.proxy.dispatcher import DisconnectWatcher, RequestDispatcher
from kado_proxy.proxy.interceptor import (
    RateBudget,
    ResponseInterceptor,
    UpstreamDecodeError,
    parse_rate_budget,
)

__all__ = [
    "DisconnectWatcher",
    "RateBudget",
    "RequestDispatcher",
    "ResponseInterceptor",
    "UpstreamDecodeError",
    "parse_rate_budget",
]
