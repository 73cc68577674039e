"""Engine error taxonomy and logging helpers."""

from .handling import classify_error, log_error, wrap_transport_error  # noqa: F401
from .internal import (  # noqa: F401
    CapabilityNegotiationTimeout,
    EngineError,
    ProtocolParseAnomaly,
    ReconnectExhausted,
    RegistrationFailure,
    TransportError,
)

__all__ = [
    "EngineError",
    "ProtocolParseAnomaly",
    "TransportError",
    "RegistrationFailure",
    "CapabilityNegotiationTimeout",
    "ReconnectExhausted",
    "classify_error",
    "log_error",
    "wrap_transport_error",
]
