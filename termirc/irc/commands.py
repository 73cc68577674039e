"""Commands a consumer submits to the engine. Never mutated after submission."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class Connect:
    host: str
    port: int | None = None
    tls: bool = False


@dataclass(frozen=True, slots=True)
class Join:
    channel: str
    key: str | None = None


@dataclass(frozen=True, slots=True)
class Part:
    channel: str
    reason: str | None = None


@dataclass(frozen=True, slots=True)
class SendMessage:
    target: str
    text: str


@dataclass(frozen=True, slots=True)
class SendNotice:
    target: str
    text: str


@dataclass(frozen=True, slots=True)
class SendAction:
    target: str
    text: str


@dataclass(frozen=True, slots=True)
class ChangeNick:
    nick: str


@dataclass(frozen=True, slots=True)
class SendRaw:
    line: str


@dataclass(frozen=True, slots=True)
class Quit:
    reason: str | None = None


Command = Connect | Join | Part | SendMessage | SendNotice | SendAction | ChangeNick | SendRaw | Quit

__all__ = [
    "ChangeNick",
    "Command",
    "Connect",
    "Join",
    "Part",
    "Quit",
    "SendAction",
    "SendMessage",
    "SendNotice",
    "SendRaw",
]
