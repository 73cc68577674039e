"""Consumer-facing events.

A closed set of immutable event types plus the ``RawUnhandled`` catch-all,
so a consumer can match on type and still see anything the engine does not
model yet.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

from .message import Malformed, Message
from .session import ChannelDiff, ChannelState


@dataclass(frozen=True, slots=True)
class Connected:
    host: str
    port: int
    tls: bool = False


@dataclass(frozen=True, slots=True)
class Registered:
    nick: str


@dataclass(frozen=True, slots=True)
class CapabilityChanged:
    capabilities: frozenset[str]


@dataclass(frozen=True, slots=True)
class ChannelJoined:
    name: str
    state: ChannelState


@dataclass(frozen=True, slots=True)
class ChannelUpdated:
    name: str
    diff: ChannelDiff
    state: ChannelState | None = None


@dataclass(frozen=True, slots=True)
class ChannelLeft:
    name: str
    reason: str | None = None


@dataclass(frozen=True, slots=True)
class NickChanged:
    old: str
    new: str


@dataclass(frozen=True, slots=True)
class MessageReceived:
    """PRIVMSG or NOTICE.

    ``source`` is the sender's nick (or server name), ``kind`` the verb.
    ``is_action`` marks a CTCP ACTION whose text has been unwrapped;
    ``from_services`` marks senders listed in ``service_nicks``.
    """

    source: str
    target: str
    text: str
    tags: Mapping[str, str | None] = field(default_factory=dict)
    kind: str = "PRIVMSG"
    is_action: bool = False
    from_services: bool = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "tags", MappingProxyType(dict(self.tags)))


@dataclass(frozen=True, slots=True)
class ParseAnomaly:
    raw: bytes
    reason: str
    message: Message | Malformed | None = None


@dataclass(frozen=True, slots=True)
class RawUnhandled:
    message: Message


@dataclass(frozen=True, slots=True)
class Disconnected:
    reason: str
    will_reconnect: bool = False


@dataclass(frozen=True, slots=True)
class FatalError:
    kind: str
    detail: str = ""


Event = (
    Connected
    | Registered
    | CapabilityChanged
    | ChannelJoined
    | ChannelUpdated
    | ChannelLeft
    | NickChanged
    | MessageReceived
    | ParseAnomaly
    | RawUnhandled
    | Disconnected
    | FatalError
)

__all__ = [
    "CapabilityChanged",
    "ChannelJoined",
    "ChannelLeft",
    "ChannelUpdated",
    "Connected",
    "Disconnected",
    "Event",
    "FatalError",
    "MessageReceived",
    "NickChanged",
    "ParseAnomaly",
    "RawUnhandled",
    "Registered",
]
