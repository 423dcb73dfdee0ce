"""
Admission control for outbound traffic.

Provides a token bucket gate that paces requests forwarded to the
upstream to a fixed quota per time window.
"""

from kado_proxy.quota.limiter import (
    AdmissionGate,
    AdmissionResult,
    RateLimitExceeded,
)

__all__ = [
    "AdmissionGate",
    "AdmissionResult",
    "RateLimitExceeded",
]
