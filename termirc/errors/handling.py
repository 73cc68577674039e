from __future__ import annotations

import logging
import ssl
from typing import Any

from ..logging_config import log_structured_error
from .internal import (
    CapabilityNegotiationTimeout,
    EngineError,
    ProtocolParseAnomaly,
    RegistrationFailure,
    TransportError,
)


def classify_error(error: BaseException) -> str:
    """Map an exception to the category name used for aggregation."""
    if isinstance(error, TransportError | ssl.SSLError | OSError | ConnectionError):
        return "transport"
    if isinstance(error, ProtocolParseAnomaly):
        return "protocol"
    if isinstance(error, RegistrationFailure):
        return "registration"
    if isinstance(error, CapabilityNegotiationTimeout):
        return "capability"
    if isinstance(error, EngineError):
        return "engine"
    return "unknown"


def log_error(
    message: str,
    error: BaseException,
    context: dict[str, Any] | None = None,
    level: int = logging.ERROR,
) -> None:
    """Logs an error message with the associated exception details.

    The exception is categorised (transport, protocol, registration,
    capability, engine, unknown) and forwarded to structured logging so that
    repeated failures are aggregated per category.

    Args:
        message: A descriptive message about the error context.
        error: The exception instance to be logged.
        context: Optional additional context data for debugging.
        level: Logging level, ERROR unless the caller knows better.
    """
    merged = dict(context or {})
    if isinstance(error, EngineError) and error.data:
        for key, value in error.data.items():
            merged.setdefault(key, value)
    log_structured_error(
        error_type=classify_error(error),
        message=f"{message}: {error}",
        exception=error,
        context=merged or None,
        level=level,
    )


def wrap_transport_error(error: BaseException, *, host: str, port: int) -> TransportError:
    """Wrap a raw socket/TLS exception so the supervisor only sees engine errors."""
    if isinstance(error, TransportError):
        return error
    if isinstance(error, TimeoutError):
        detail = "timed out"
    else:
        detail = str(error) or type(error).__name__
    wrapped = TransportError(
        f"Connection to {host}:{port} failed: {detail}",
        data={"host": host, "port": port, "error_type": type(error).__name__},
    )
    wrapped.__cause__ = error
    return wrapped
