"""IRC message codec.

``parse`` turns one line (without CRLF) into a :class:`Message`, or into a
:class:`Malformed` value when the line breaks the grammar. It never raises:
a hostile server must not be able to crash the client with a bad line.
``serialize`` is the exact inverse: a parsed message remembers its wire form,
repeated or trailing spaces included, so ``serialize(parse(line)) == line``.
Messages built in code are rendered canonically.

Grammar::

    [ "@" tags SPACE ] [ ":" prefix SPACE ] command *( SPACE middle ) [ SPACE ":" trailing ]

At most 14 middle parameters are read; whatever follows the 14th is the
final parameter even without a leading ``:``.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

from ..constants import MAX_MIDDLE_PARAMS

_COMMAND_RE = re.compile(r"[A-Za-z]+|[0-9]{3}")
_FORBIDDEN = ("\r", "\n", "\0")

# https://ircv3.net/specs/extensions/message-tags#escaping-values
_TAG_ESCAPES = {";": "\\:", " ": "\\s", "\\": "\\\\", "\r": "\\r", "\n": "\\n"}
_TAG_UNESCAPES = {":": ";", "s": " ", "\\": "\\", "r": "\r", "n": "\n"}


def escape_tag_value(value: str) -> str:
    return "".join(_TAG_ESCAPES.get(c, c) for c in value)


def unescape_tag_value(value: str) -> str:
    """Undo tag value escaping.

    Unknown escapes drop the backslash (``\\x`` -> ``x``) and a lone trailing
    backslash is removed, as IRCv3 message tags require.
    """
    if "\\" not in value:
        return value
    out: list[str] = []
    chars = iter(value)
    for c in chars:
        if c != "\\":
            out.append(c)
            continue
        nxt = next(chars, None)
        if nxt is not None:
            out.append(_TAG_UNESCAPES.get(nxt, nxt))
    return "".join(out)


@dataclass(frozen=True, slots=True)
class Prefix:
    """Message source, either ``nick!user@host`` or a bare server name."""

    nick: str
    user: str | None = None
    host: str | None = None

    @classmethod
    def parse(cls, raw: str) -> Prefix:
        nick, bang, rest = raw.partition("!")
        if bang:
            user, at, host = rest.partition("@")
            return cls(nick, user, host if at else None)
        nick, at, host = raw.partition("@")
        return cls(nick, None, host if at else None)

    @property
    def is_server(self) -> bool:
        return self.user is None and self.host is None and "." in self.nick

    def __str__(self) -> str:
        out = self.nick
        if self.user is not None:
            out += f"!{self.user}"
        if self.host is not None:
            out += f"@{self.host}"
        return out


@dataclass(frozen=True, slots=True)
class Message:
    """A parsed IRC message.

    Attributes:
        command: Verb or three digit numeric, as it appeared on the wire.
        params: Middle parameters followed by the final parameter, if any.
        tags: IRCv3 tags in wire order; ``None`` marks a key sent without ``=``.
        prefix: Raw source string without the leading ``:``.
        trailing: The last parameter was introduced with ``:``.
    """

    command: str
    params: tuple[str, ...] = ()
    tags: Mapping[str, str | None] = field(default_factory=dict)
    prefix: str | None = None
    trailing: bool = False
    # Exact bytes this message was parsed from; dropped by dataclasses.replace.
    _wire: bytes | None = field(default=None, init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "params", tuple(self.params))
        object.__setattr__(self, "tags", MappingProxyType(dict(self.tags)))

    @property
    def verb(self) -> str:
        return self.command.upper()

    @property
    def is_numeric(self) -> bool:
        return len(self.command) == 3 and self.command.isdigit()

    @property
    def source(self) -> Prefix | None:
        return Prefix.parse(self.prefix) if self.prefix else None

    @property
    def nick(self) -> str | None:
        source = self.source
        return source.nick if source else None

    def param(self, index: int, default: str = "") -> str:
        try:
            return self.params[index]
        except IndexError:
            return default

    def tag(self, key: str, default: str | None = None) -> str | None:
        value = self.tags.get(key, default)
        return default if value is None else value

    def to_line(self) -> bytes:
        """Serialized form including the CRLF terminator."""
        return serialize(self) + b"\r\n"

    def __str__(self) -> str:
        return serialize(self).decode("utf-8", "replace")


@dataclass(frozen=True, slots=True)
class Malformed:
    """A line that could not be parsed, kept verbatim for diagnostics."""

    raw: bytes
    reason: str

    @property
    def text(self) -> str:
        return self.raw.decode("utf-8", "replace")


def _decode(line: bytes | bytearray | str) -> tuple[str, bytes]:
    if isinstance(line, str):
        return line, line.encode("utf-8", "surrogateescape")
    raw = bytes(line)
    # surrogateescape keeps undecodable bytes so serialize can restore them.
    return raw.decode("utf-8", "surrogateescape"), raw


def parse(line: bytes | bytearray | str) -> Message | Malformed:
    """Parse one line (without CRLF). Never raises."""
    text, raw = _decode(line)
    if not text:
        return Malformed(raw, "empty line")
    if any(c in text for c in _FORBIDDEN):
        return Malformed(raw, "line contains CR, LF or NUL")

    rest = text
    tags: dict[str, str | None] = {}
    if rest.startswith("@"):
        section, sep, rest = rest[1:].partition(" ")
        if not sep or not rest:
            return Malformed(raw, "tags without command")
        for item in section.split(";"):
            if not item:
                continue
            key, eq, value = item.partition("=")
            if not key:
                return Malformed(raw, "empty tag key")
            tags[key] = unescape_tag_value(value) if eq else None

    prefix: str | None = None
    if rest.startswith(":"):
        prefix, sep, rest = rest[1:].partition(" ")
        if not prefix or not sep or not rest:
            return Malformed(raw, "prefix without command")

    command, _, rest = rest.partition(" ")
    if not _COMMAND_RE.fullmatch(command):
        return Malformed(raw, f"invalid command token {command[:32]!r}")

    params: list[str] = []
    trailing = False
    while rest:
        if rest.startswith(":"):
            params.append(rest[1:])
            trailing = True
            break
        if len(params) == MAX_MIDDLE_PARAMS:
            params.append(rest)
            break
        token, _, rest = rest.partition(" ")
        if token:
            params.append(token)

    message = Message(command, tuple(params), tags, prefix, trailing)
    object.__setattr__(message, "_wire", raw)
    return message


def _needs_colon(param: str, index: int) -> bool:
    if not param or param.startswith(":"):
        return True
    # Past the 14th middle the final parameter may hold spaces without ':'.
    return " " in param and index < MAX_MIDDLE_PARAMS


def serialize(message: Message) -> bytes:
    """Render a message to wire bytes without the CRLF terminator.

    Raises:
        ValueError: a field contains CR/LF/NUL or a middle parameter could
            not be represented (empty, contains a space, starts with ':').
    """
    if message._wire is not None:
        return message._wire
    parts: list[str] = []
    if message.tags:
        parts.append(
            "@"
            + ";".join(
                key if value is None else f"{key}={escape_tag_value(value)}"
                for key, value in message.tags.items()
            )
        )
    if message.prefix:
        parts.append(f":{message.prefix}")
    if not _COMMAND_RE.fullmatch(message.command):
        raise ValueError(f"invalid command {message.command!r}")
    parts.append(message.command)

    last = len(message.params) - 1
    for index, param in enumerate(message.params):
        if index == last and (message.trailing or _needs_colon(param, index)):
            parts.append(f":{param}")
        elif index != last and _needs_colon(param, 0):
            raise ValueError(f"invalid middle parameter {param!r}")
        else:
            parts.append(param)

    text = " ".join(parts)
    if any(c in text for c in _FORBIDDEN):
        raise ValueError("message contains CR, LF or NUL")
    return text.encode("utf-8", "surrogateescape")


def build(
    command: str,
    *params: str,
    tags: Mapping[str, str | None] | None = None,
    trailing: bool = False,
) -> Message:
    """Convenience constructor for outbound messages."""
    return Message(command, tuple(params), tags or {}, None, trailing)


__all__ = [
    "Malformed",
    "Message",
    "Prefix",
    "build",
    "escape_tag_value",
    "parse",
    "serialize",
    "unescape_tag_value",
]
