"""IRCv3 capability negotiation and the SASL hook.

:class:`CapNegotiator` is sans-IO: it consumes CAP / AUTHENTICATE / SASL
numeric messages and returns the messages to send back. The state machine
owns the timeout; calling :meth:`CapNegotiator.abort` ends negotiation with
whatever was acknowledged so far.
"""

from __future__ import annotations

import base64
import logging
from typing import Protocol

from ..config.model import SaslConfig
from ..logs.logger import logger
from .message import Message, build

SASL_CHUNK = 400
SASL_SUCCESS = "903"
SASL_FAILURES = {"902", "904", "905", "906", "908"}
SASL_NUMERICS = SASL_FAILURES | {SASL_SUCCESS, "900", "901", "907"}
_CAP_REQ_BUDGET = 400


class SaslMechanism(Protocol):
    """A SASL mechanism plugged into negotiation.

    ``respond`` receives the decoded server challenge (empty for ``+``) and
    returns the client response, or ``None`` to abort the exchange.
    """

    name: str

    def respond(self, challenge: bytes) -> bytes | None: ...


class SaslPlain:
    name = "PLAIN"

    def __init__(self, username: str, password: str, authzid: str | None = None) -> None:
        self.username = username
        self.password = password
        self.authzid = authzid if authzid is not None else username

    def respond(self, challenge: bytes) -> bytes | None:
        return f"{self.authzid}\0{self.username}\0{self.password}".encode()


def mechanism_from_config(config: SaslConfig | None) -> SaslMechanism | None:
    if config is None:
        return None
    if config.mechanism.upper() == "PLAIN":
        return SaslPlain(config.username, config.password)
    raise ValueError(f"unsupported SASL mechanism {config.mechanism!r}")


def encode_authenticate(payload: bytes) -> list[str]:
    """Split a SASL response into AUTHENTICATE arguments.

    Base64 text is sent in 400 byte pieces; an empty payload, or one whose
    last piece is exactly 400 bytes, is terminated with ``+``.
    """
    encoded = base64.b64encode(payload).decode("ascii")
    chunks = [encoded[i : i + SASL_CHUNK] for i in range(0, len(encoded), SASL_CHUNK)]
    if not chunks or len(chunks[-1]) == SASL_CHUNK:
        chunks.append("+")
    return chunks


def parse_cap_list(text: str) -> dict[str, str | None]:
    """``sasl=PLAIN,EXTERNAL multi-prefix`` -> {'sasl': 'PLAIN,EXTERNAL', 'multi-prefix': None}"""
    caps: dict[str, str | None] = {}
    for token in text.split():
        name, eq, value = token.partition("=")
        caps[name] = value if eq else None
    return caps


def _req_messages(names: list[str]) -> list[Message]:
    messages: list[Message] = []
    current: list[str] = []
    for name in names:
        if current and len(" ".join([*current, name])) > _CAP_REQ_BUDGET:
            messages.append(build("CAP", "REQ", " ".join(current), trailing=True))
            current = []
        current.append(name)
    if current:
        messages.append(build("CAP", "REQ", " ".join(current), trailing=True))
    return messages


class CapNegotiator:
    def __init__(
        self,
        requested: frozenset[str],
        sasl: SaslMechanism | None = None,
        server: str | None = None,
    ) -> None:
        self.requested = frozenset(requested)
        self.sasl = sasl
        self.server = server
        self.offered: dict[str, str | None] = {}
        self.enabled: set[str] = set()
        self.pending: set[str] = set()
        self.finished = False
        self.sasl_state = "idle"  # idle -> running -> succeeded | failed

    def start(self) -> list[Message]:
        return [build("CAP", "LS", "302")]

    def _finish(self) -> list[Message]:
        if self.finished:
            return []
        self.finished = True
        logger.log_event(
            "cap",
            "end",
            level=logging.DEBUG,
            server=self.server,
            enabled=",".join(sorted(self.enabled)) or "-",
        )
        return [build("CAP", "END")]

    def abort(self) -> list[Message]:
        """Stop waiting for the server and end negotiation."""
        self.pending.clear()
        if self.sasl_state == "running":
            self.sasl_state = "failed"
        return self._finish()

    def mark_finished(self) -> None:
        """The server completed registration without us sending CAP END."""
        self.finished = True
        self.pending.clear()

    def _wanted(self) -> list[str]:
        wanted = set(self.requested)
        if self.sasl is not None:
            wanted.add("sasl")
        return sorted(name for name in wanted if name in self.offered and name not in self.enabled)

    def _after_replies(self) -> list[Message]:
        if self.pending or self.finished:
            return []
        if self.sasl is not None and "sasl" in self.enabled and self.sasl_state == "idle":
            self.sasl_state = "running"
            logger.log_event("sasl", "start", server=self.server, mechanism=self.sasl.name)
            return [build("AUTHENTICATE", self.sasl.name)]
        if self.sasl_state == "running":
            return []
        return self._finish()

    def handle(self, message: Message) -> list[Message]:
        """Process a CAP message (``CAP <target> <subcommand> ...``)."""
        sub = message.param(1).upper()
        args = list(message.params[2:])
        if sub == "LS":
            more = len(args) > 1 and args[0] == "*"
            self.offered.update(parse_cap_list(args[-1] if args else ""))
            if more or self.finished:
                return []
            wanted = self._wanted()
            if not wanted:
                return self._finish()
            self.pending.update(wanted)
            logger.log_event(
                "cap", "request", level=logging.DEBUG, server=self.server, caps=" ".join(wanted)
            )
            return _req_messages(wanted)
        if sub in ("ACK", "NAK"):
            names = parse_cap_list(args[-1] if args else "")
            for name in names:
                bare = name.lstrip("-")
                self.pending.discard(bare)
                if sub == "NAK":
                    continue
                if name.startswith("-"):
                    self.enabled.discard(bare)
                else:
                    self.enabled.add(bare)
            if sub == "NAK":
                logger.log_event(
                    "cap", "rejected", level=logging.WARNING, server=self.server, caps=" ".join(names)
                )
            return self._after_replies()
        if sub == "NEW":
            self.offered.update(parse_cap_list(args[-1] if args else ""))
            wanted = [n for n in self._wanted() if n in self.requested]
            return _req_messages(wanted) if self.finished else []
        if sub == "DEL":
            for name in parse_cap_list(args[-1] if args else ""):
                self.offered.pop(name, None)
                self.enabled.discard(name)
            return []
        return []

    def handle_sasl(self, message: Message) -> list[Message]:
        """Process AUTHENTICATE challenges and the SASL numerics."""
        if self.sasl is None or self.sasl_state != "running":
            return []
        if message.verb == "AUTHENTICATE":
            raw = message.param(0)
            try:
                challenge = b"" if raw == "+" else base64.b64decode(raw)
            except ValueError:
                challenge = None
            response = self.sasl.respond(challenge) if challenge is not None else None
            if response is None:
                return [build("AUTHENTICATE", "*")]
            return [build("AUTHENTICATE", chunk) for chunk in encode_authenticate(response)]
        if message.command == SASL_SUCCESS:
            self.sasl_state = "succeeded"
            logger.log_event("sasl", "success", server=self.server)
            return self._finish()
        if message.command in SASL_FAILURES:
            self.sasl_state = "failed"
            logger.log_event(
                "sasl",
                "failed",
                level=logging.WARNING,
                server=self.server,
                numeric=message.command,
                detail=message.param(len(message.params) - 1),
            )
            return self._finish()
        return []
