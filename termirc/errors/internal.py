"""Centralized engine error hierarchy.

These exceptions give semantic categories to the failures the protocol
engine has to tell apart. Only raise these inside engine boundaries; raw
``OSError`` / ``ssl.SSLError`` from the transport are wrapped before they
reach the supervisor.

Classes:
  EngineError                  – Base for all engine errors.
  ProtocolParseAnomaly         – Malformed or truncated line (never fatal).
  TransportError               – Socket / TLS failure (triggers reconnect).
  RegistrationFailure          – Nick exhaustion or server rejection (fatal).
  CapabilityNegotiationTimeout – CAP did not finish in time (non-fatal).

Each class carries ``fatal`` telling the supervisor whether the current
connection attempt may be retried automatically.
"""

from __future__ import annotations

from collections.abc import Mapping


class EngineError(Exception):
    """Base class for all engine errors with metadata support.

    Attributes:
        data: Dictionary containing arbitrary structured context data.
        kind: Short machine-readable category used in ``FatalError`` events.
        fatal: Whether the condition ends the engine without further retry.

    Args:
        message: Descriptive error message.
        data: Optional mapping of additional context data.
    """

    kind = "engine_error"
    fatal = False
    data: dict[str, object]

    def __init__(
        self, message: str, *, data: Mapping[str, object] | None = None
    ) -> None:
        super().__init__(message)
        # Copy into a plain dict to avoid unexpected mutations from caller.
        self.data = dict(data) if data else {}


class ProtocolParseAnomaly(EngineError):
    """A received line violated the message grammar or the length bound.

    Absorbed by the engine and surfaced as an informational event.
    """

    kind = "protocol_parse_anomaly"


class TransportError(EngineError):
    """Socket or TLS level failure.

    Moves the connection to Disconnected and lets the reconnect policy decide
    what happens next.
    """

    kind = "transport_error"


class RegistrationFailure(EngineError):
    """Registration could not complete: nick alternatives exhausted or the
    server rejected us (ERROR, 464, 465).

    Fatal to this connection attempt; no automatic retry follows.
    """

    kind = "registration_failure"
    fatal = True


class CapabilityNegotiationTimeout(EngineError):
    """The server did not finish CAP negotiation within the timeout.

    Registration proceeds with whatever was acknowledged so far.
    """

    kind = "capability_negotiation_timeout"


class ReconnectExhausted(EngineError):
    """The reconnect policy ran out of attempts."""

    kind = "reconnect_exhausted"
    fatal = True


__all__ = [
    "EngineError",
    "ProtocolParseAnomaly",
    "TransportError",
    "RegistrationFailure",
    "CapabilityNegotiationTimeout",
    "ReconnectExhausted",
]
