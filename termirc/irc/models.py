"""Shared IRC data models."""

from __future__ import annotations

from enum import Enum, auto

_RFC1459 = str.maketrans("ABCDEFGHIJKLMNOPQRSTUVWXYZ[]\\~", "abcdefghijklmnopqrstuvwxyz{}|^")
_STRICT_RFC1459 = str.maketrans("ABCDEFGHIJKLMNOPQRSTUVWXYZ[]\\", "abcdefghijklmnopqrstuvwxyz{}|")
_ASCII = str.maketrans("ABCDEFGHIJKLMNOPQRSTUVWXYZ", "abcdefghijklmnopqrstuvwxyz")

_CASEMAPPINGS = {
    "rfc1459": _RFC1459,
    "strict-rfc1459": _STRICT_RFC1459,
    "ascii": _ASCII,
}


class ConnectionState(Enum):
    DISCONNECTED = auto()
    CONNECTING = auto()
    REGISTERING = auto()
    REGISTERED = auto()
    CLOSING = auto()


def irc_lower(text: str, casemapping: str = "rfc1459") -> str:
    """Fold a nick or channel name the way the server compares them.

    Unknown mappings (e.g. ``rfc7613``) fall back to rfc1459.
    """
    return text.translate(_CASEMAPPINGS.get(casemapping.lower(), _RFC1459))
