"""Outbound pacing and reconnect backoff."""

from .backoff_strategy import ReconnectBackoff
from .rate_limiter import OutboundRateLimiter

__all__ = [
    "OutboundRateLimiter",
    "ReconnectBackoff",
]
