"""Configuration models for the protocol engine."""

from .model import (  # noqa: F401
    EngineConfig,
    RateLimitConfig,
    ReconnectConfig,
    SaslConfig,
    ServerConfig,
    normalize_channel,
)

__all__ = [
    "EngineConfig",
    "RateLimitConfig",
    "ReconnectConfig",
    "SaslConfig",
    "ServerConfig",
    "normalize_channel",
]
