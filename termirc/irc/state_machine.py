"""Protocol state machine (sans-IO).

The machine never touches a socket or a clock it was not given. Every entry
point returns a list of actions for the supervisor to carry out:

* :class:`Send` - serialize and write a message; ``urgent`` messages bypass
  the outbound rate limiter (PONG, registration, CAP, QUIT).
* :class:`Emit` - deliver an event to the consumer.
* :class:`Close` - tear the transport down. ``error`` explains why; a fatal
  error (or ``final``) means no reconnect.

Timers are exposed through :meth:`next_deadline` and fired by :meth:`tick`,
so registration, capability negotiation and keepalive can be driven by a
fake clock in tests.
"""

from __future__ import annotations

import logging
import secrets
import time
from collections.abc import Callable
from dataclasses import dataclass

from ..config.model import EngineConfig, normalize_channel
from ..constants import DEFAULT_QUIT_MESSAGE, MAX_LINE_LENGTH
from ..errors.handling import log_error
from ..errors.internal import (
    CapabilityNegotiationTimeout,
    EngineError,
    ProtocolParseAnomaly,
    RegistrationFailure,
    TransportError,
)
from ..logs.logger import logger
from .capabilities import SASL_NUMERICS, CapNegotiator, mechanism_from_config
from .commands import (
    ChangeNick,
    Command,
    Connect,
    Join,
    Part,
    Quit,
    SendAction,
    SendMessage,
    SendNotice,
    SendRaw,
)
from .events import (
    CapabilityChanged,
    ChannelJoined,
    ChannelLeft,
    ChannelUpdated,
    Event,
    MessageReceived,
    NickChanged,
    ParseAnomaly,
    RawUnhandled,
    Registered,
)
from .framer import RawLine
from .message import Malformed, Message, build, parse
from .models import ConnectionState
from .nick import alternate_nick
from .session import ChannelDiff, DiffKind, Session
from .text import split_text

NICK_REJECTIONS = {"432", "433", "436", "437"}
REGISTRATION_REJECTIONS = {"464", "465"}


@dataclass(frozen=True, slots=True)
class Send:
    message: Message
    urgent: bool = False


@dataclass(frozen=True, slots=True)
class Emit:
    event: Event


@dataclass(frozen=True, slots=True)
class Close:
    reason: str
    final: bool = False
    error: EngineError | None = None
    # Seconds to wait for the server to hang up first (after QUIT).
    linger: float = 0.0


Action = Send | Emit | Close


class ProtocolStateMachine:
    def __init__(
        self,
        config: EngineConfig,
        clock: Callable[[], float] = time.monotonic,
        server: str | None = None,
    ) -> None:
        self.config = config
        self.clock = clock
        self.server = server
        self.state = ConnectionState.DISCONNECTED
        self.session = Session(nick=config.nickname)
        self.negotiator: CapNegotiator | None = None
        self._sasl = mechanism_from_config(config.sasl)
        self._nick_attempts = 0
        self._pending_names: dict[str, list[tuple[str, frozenset[str]]]] = {}
        self._last_activity = 0.0
        self._ping_sent_at: float | None = None
        self._cap_deadline: float | None = None
        self._registration_deadline: float | None = None
        # Channels rejoined after every registration: folded name -> (name, key)
        self._desired: dict[str, tuple[str, str | None]] = {}
        for channel in config.channels:
            self._desired[self.session.fold(channel)] = (channel, None)
        self._handlers: dict[str, Callable[[Message], list[Action]]] = {
            "PING": self._on_ping,
            "PONG": self._on_pong,
            "CAP": self._on_cap,
            "AUTHENTICATE": self._on_sasl,
            "001": self._on_welcome,
            "005": self._on_isupport,
            "ERROR": self._on_error,
            "JOIN": self._on_join,
            "PART": self._on_part,
            "KICK": self._on_kick,
            "NICK": self._on_nick,
            "QUIT": self._on_quit,
            "MODE": self._on_mode,
            "324": self._on_channel_mode_is,
            "TOPIC": self._on_topic,
            "331": self._on_no_topic,
            "332": self._on_topic_reply,
            "353": self._on_names,
            "366": self._on_end_of_names,
            "PRIVMSG": self._on_chat,
            "NOTICE": self._on_chat,
            "421": self._on_unknown_command,
        }
        for numeric in NICK_REJECTIONS:
            self._handlers[numeric] = self._on_nick_rejected
        for numeric in REGISTRATION_REJECTIONS:
            self._handlers[numeric] = self._on_rejected
        for numeric in SASL_NUMERICS:
            self._handlers[numeric] = self._on_sasl

    # ------------------------------------------------------------------ #
    # helpers
    # ------------------------------------------------------------------ #
    @property
    def registered(self) -> bool:
        return self.state is ConnectionState.REGISTERED

    @property
    def desired_channels(self) -> list[str]:
        return [name for name, _ in self._desired.values()]

    @property
    def _cap_finished(self) -> bool:
        return self.negotiator is None or self.negotiator.finished

    def _set_state(self, new_state: ConnectionState) -> None:
        if self.state is not new_state:
            logger.log_event(
                "irc",
                "state_change",
                level=logging.DEBUG,
                server=self.server,
                old_state=self.state.name,
                new_state=new_state.name,
            )
            self.state = new_state

    def _diff_events(self, diffs: tuple[ChannelDiff, ...]) -> list[Action]:
        actions: list[Action] = []
        for diff in diffs:
            if diff.kind is DiffKind.JOINED:
                state = self.session.channel(diff.channel)
                if state is not None:
                    actions.append(Emit(ChannelJoined(diff.channel, state)))
            elif diff.kind is DiffKind.LEFT:
                actions.append(Emit(ChannelLeft(diff.channel, diff.reason)))
            else:
                actions.append(
                    Emit(ChannelUpdated(diff.channel, diff, self.session.channel(diff.channel)))
                )
        return actions

    def _registration_failed(self, reason: str) -> list[Action]:
        error = RegistrationFailure(reason, data={"nick": self.session.nick})
        logger.log_event(
            "irc", "registration_failed", level=logging.ERROR, server=self.server, reason=reason
        )
        return [
            Send(build("QUIT", reason, trailing=True), urgent=True),
            Close(reason, final=True, error=error),
        ]

    def _caps_changed(self, before: frozenset[str]) -> list[Action]:
        if self.negotiator is None:
            return []
        after = frozenset(self.negotiator.enabled)
        if after == before:
            return []
        self.session = self.session.set_capabilities(after)
        return [Emit(CapabilityChanged(after))]

    # ------------------------------------------------------------------ #
    # lifecycle entry points
    # ------------------------------------------------------------------ #
    def connect_requested(self) -> list[Action]:
        self._set_state(ConnectionState.CONNECTING)
        return []

    def connection_made(self) -> list[Action]:
        """Transport is up (TLS handshake included): start registration."""
        now = self.clock()
        self._set_state(ConnectionState.REGISTERING)
        self.session = Session(nick=self.config.nickname)
        self._nick_attempts = 0
        self._pending_names.clear()
        self._ping_sent_at = None
        self._last_activity = now
        self._cap_deadline = now + self.config.cap_timeout
        self._registration_deadline = now + self.config.registration_timeout
        self.negotiator = CapNegotiator(
            self.config.requested_capabilities, self._sasl, server=self.server
        )

        messages: list[Message] = []
        if self.config.password:
            messages.append(build("PASS", self.config.password))
        messages.extend(self.negotiator.start())
        messages.append(build("NICK", self.config.nickname))
        messages.append(
            build(
                "USER",
                self.config.effective_username,
                "0",
                "*",
                self.config.effective_realname,
                trailing=True,
            )
        )
        logger.log_event("irc", "registering", server=self.server, nick=self.config.nickname)
        return [Send(m, urgent=True) for m in messages]

    def connection_lost(self, reason: str) -> list[Action]:
        self.session, diffs = self.session.reset(reason)
        self._pending_names.clear()
        self._ping_sent_at = None
        self._cap_deadline = None
        self._registration_deadline = None
        self.negotiator = None
        self._set_state(ConnectionState.DISCONNECTED)
        return self._diff_events(diffs)

    def next_deadline(self) -> float | None:
        deadlines: list[float] = []
        if self.state is ConnectionState.REGISTERING:
            if self._cap_deadline is not None and not self._cap_finished:
                deadlines.append(self._cap_deadline)
            if self._registration_deadline is not None:
                deadlines.append(self._registration_deadline)
        elif self.state is ConnectionState.REGISTERED:
            if self._ping_sent_at is not None:
                deadlines.append(self._ping_sent_at + self.config.keepalive_grace)
            else:
                deadlines.append(self._last_activity + self.config.keepalive_timeout)
        return min(deadlines) if deadlines else None

    def tick(self) -> list[Action]:
        now = self.clock()
        if self.state is ConnectionState.REGISTERING:
            return self._tick_registering(now)
        if self.state is ConnectionState.REGISTERED:
            return self._tick_keepalive(now)
        return []

    def _tick_registering(self, now: float) -> list[Action]:
        actions: list[Action] = []
        if self._cap_deadline is not None and self._cap_finished:
            self._cap_deadline = None
        if self._cap_deadline is not None and now >= self._cap_deadline:
            assert self.negotiator is not None
            self._cap_deadline = None
            error = CapabilityNegotiationTimeout(
                "Capability negotiation timed out",
                data={"pending": ",".join(sorted(self.negotiator.pending)) or "-"},
            )
            logger.log_event(
                "cap",
                "timeout",
                level=logging.WARNING,
                server=self.server,
                timeout=self.config.cap_timeout,
                error=str(error),
            )
            actions.extend(Send(m, urgent=True) for m in self.negotiator.abort())
            actions.append(Emit(CapabilityChanged(frozenset(self.negotiator.enabled))))
        if self._registration_deadline is not None and now >= self._registration_deadline:
            self._registration_deadline = None
            reason = "registration timed out"
            logger.log_event(
                "irc",
                "registration_timeout",
                level=logging.WARNING,
                server=self.server,
                timeout=self.config.registration_timeout,
            )
            actions.append(Close(reason, error=TransportError(reason)))
        return actions

    def _tick_keepalive(self, now: float) -> list[Action]:
        if self._ping_sent_at is not None:
            if now - self._ping_sent_at >= self.config.keepalive_grace:
                reason = "ping timeout"
                logger.log_event(
                    "irc",
                    "ping_timeout",
                    level=logging.WARNING,
                    server=self.server,
                    grace=self.config.keepalive_grace,
                )
                return [Close(reason, error=TransportError(reason))]
            return []
        if now - self._last_activity >= self.config.keepalive_timeout:
            self._ping_sent_at = now
            token = secrets.token_hex(4)
            logger.log_event(
                "irc", "liveness_check", level=logging.DEBUG, server=self.server, token=token
            )
            return [Send(build("PING", token, trailing=True), urgent=True)]
        return []

    # ------------------------------------------------------------------ #
    # inbound
    # ------------------------------------------------------------------ #
    def line_received(self, line: RawLine) -> list[Action]:
        now = self.clock()
        self._last_activity = now
        self._ping_sent_at = None
        self.session = self.session.touch(now)

        parsed = parse(line.data)
        if isinstance(parsed, Malformed):
            anomaly = ProtocolParseAnomaly(
                f"Malformed line ({parsed.reason})",
                data={"server": self.server, "raw": parsed.text[:120]},
            )
            log_error("Ignored line from server", anomaly, level=logging.WARNING)
            return [Emit(ParseAnomaly(line.data, parsed.reason, parsed))]

        actions: list[Action] = []
        if line.truncated:
            logger.log_event(
                "irc",
                "line_truncated",
                level=logging.WARNING,
                server=self.server,
                command=parsed.command,
                length=len(line.data),
            )
            actions.append(Emit(ParseAnomaly(line.data, "line truncated", parsed)))
        return actions + self.message_received(parsed)

    def message_received(self, message: Message) -> list[Action]:
        if message.verb != "PING":
            logger.log_event(
                "irc", "raw", level=logging.DEBUG, server=self.server, raw=str(message)[:200]
            )
        handler = self._handlers.get(message.verb)
        if handler is None:
            return [Emit(RawUnhandled(message))]
        return handler(message)

    def _on_ping(self, message: Message) -> list[Action]:
        return [Send(Message("PONG", message.params, trailing=message.trailing), urgent=True)]

    def _on_pong(self, message: Message) -> list[Action]:
        return []

    def _on_cap(self, message: Message) -> list[Action]:
        if self.negotiator is None:
            return [Emit(RawUnhandled(message))]
        before = frozenset(self.negotiator.enabled)
        sends = [Send(m, urgent=True) for m in self.negotiator.handle(message)]
        return sends + self._caps_changed(before)

    def _on_sasl(self, message: Message) -> list[Action]:
        if self.negotiator is None:
            return [Emit(RawUnhandled(message))]
        return [Send(m, urgent=True) for m in self.negotiator.handle_sasl(message)]

    def _on_unknown_command(self, message: Message) -> list[Action]:
        # Servers without IRCv3 answer CAP with ERR_UNKNOWNCOMMAND.
        if message.param(1).upper() == "CAP" and self.negotiator is not None:
            self.negotiator.mark_finished()
            return []
        return [Emit(RawUnhandled(message))]

    def _on_welcome(self, message: Message) -> list[Action]:
        if self.state is not ConnectionState.REGISTERING:
            return [Emit(RawUnhandled(message))]
        nick = message.param(0) or self.session.nick
        self.session, _ = self.session.set_nick(nick)
        if self.negotiator is not None and not self.negotiator.finished:
            self.negotiator.mark_finished()
        self._cap_deadline = None
        self._registration_deadline = None
        self._last_activity = self.clock()
        self._set_state(ConnectionState.REGISTERED)
        logger.log_event("irc", "registered", server=self.server, nick=nick)

        actions: list[Action] = [Emit(Registered(nick))]
        for name, key in self._desired.values():
            params = (name, key) if key else (name,)
            actions.append(Send(build("JOIN", *params)))
        return actions

    def _on_isupport(self, message: Message) -> list[Action]:
        tokens = message.params[1:]
        if message.trailing and len(tokens) > 1:
            tokens = tokens[:-1]
        self.session = self.session.apply_isupport(tokens)
        return []

    def _on_nick_rejected(self, message: Message) -> list[Action]:
        if self.state is not ConnectionState.REGISTERING:
            return [Emit(RawUnhandled(message))]
        self._nick_attempts += 1
        if self._nick_attempts > self.config.nick_retry_limit:
            return self._registration_failed(
                f"nickname unavailable after {self.config.nick_retry_limit} retries"
            )
        nick = alternate_nick(self.config.nickname, self._nick_attempts, self.session.nicklen)
        self.session, _ = self.session.set_nick(nick)
        logger.log_event(
            "irc",
            "nick_retry",
            level=logging.WARNING,
            server=self.server,
            numeric=message.command,
            nick=nick,
            attempt=self._nick_attempts,
        )
        return [Send(build("NICK", nick), urgent=True)]

    def _on_rejected(self, message: Message) -> list[Action]:
        if self.state is not ConnectionState.REGISTERING:
            return [Emit(RawUnhandled(message))]
        detail = message.param(len(message.params) - 1) or message.command
        return self._registration_failed(f"server rejected registration ({message.command}): {detail}")

    def _on_error(self, message: Message) -> list[Action]:
        reason = message.param(0) or "server closed the connection"
        if self.state is ConnectionState.CLOSING:
            return [Close(reason, final=True)]
        if self.state is ConnectionState.REGISTERING:
            return self._registration_failed(f"server rejected registration: {reason}")
        logger.log_event("irc", "server_error", level=logging.WARNING, server=self.server, reason=reason)
        return [Close(reason, error=TransportError(reason))]

    def _on_join(self, message: Message) -> list[Action]:
        channel = message.param(0)
        nick = message.nick
        if not channel or not nick:
            return [Emit(RawUnhandled(message))]
        if self.session.is_me(nick):
            self.session, diffs = self.session.join_channel(channel)
            self._desired.setdefault(self.session.fold(channel), (channel, None))
        else:
            self.session, diffs = self.session.upsert_member(channel, nick)
        return self._diff_events(diffs)

    def _on_part(self, message: Message) -> list[Action]:
        channel = message.param(0)
        nick = message.nick
        if not channel or not nick:
            return [Emit(RawUnhandled(message))]
        reason = message.param(1) or None
        if self.session.is_me(nick):
            self.session, diffs = self.session.part_channel(channel, reason)
            self._desired.pop(self.session.fold(channel), None)
        else:
            self.session, diffs = self.session.remove_member(nick, channel, reason)
        return self._diff_events(diffs)

    def _on_kick(self, message: Message) -> list[Action]:
        channel, victim = message.param(0), message.param(1)
        if not channel or not victim:
            return [Emit(RawUnhandled(message))]
        reason = message.param(2) or None
        if self.session.is_me(victim):
            by = message.nick or "server"
            self.session, diffs = self.session.part_channel(
                channel, f"kicked by {by}" + (f": {reason}" if reason else "")
            )
            self._desired.pop(self.session.fold(channel), None)
        else:
            self.session, diffs = self.session.remove_member(victim, channel, reason)
        return self._diff_events(diffs)

    def _on_nick(self, message: Message) -> list[Action]:
        new = message.param(0)
        old = message.nick
        if not new or not old:
            return [Emit(RawUnhandled(message))]
        if self.session.is_me(old):
            self.session, diffs = self.session.set_nick(new)
            logger.log_event("irc", "nick_changed", server=self.server, old=old, new=new)
            return [Emit(NickChanged(old, new)), *self._diff_events(diffs)]
        self.session, diffs = self.session.rename_member(old, new)
        return self._diff_events(diffs)

    def _on_quit(self, message: Message) -> list[Action]:
        nick = message.nick
        if not nick or self.session.is_me(nick):
            return [Emit(RawUnhandled(message))]
        self.session, diffs = self.session.remove_member(nick, None, message.param(0) or None)
        return self._diff_events(diffs)

    def _on_mode(self, message: Message) -> list[Action]:
        target = message.param(0)
        if not self.session.is_channel(target) or len(message.params) < 2:
            return [Emit(RawUnhandled(message))]
        self.session, diffs = self.session.apply_mode_delta(
            target, message.params[1], message.params[2:]
        )
        return self._diff_events(diffs)

    def _on_channel_mode_is(self, message: Message) -> list[Action]:
        if len(message.params) < 3:
            return [Emit(RawUnhandled(message))]
        self.session, diffs = self.session.apply_mode_delta(
            message.params[1], message.params[2], message.params[3:]
        )
        return self._diff_events(diffs)

    def _on_topic(self, message: Message) -> list[Action]:
        self.session, diffs = self.session.set_topic(message.param(0), message.param(1) or None)
        return self._diff_events(diffs)

    def _on_topic_reply(self, message: Message) -> list[Action]:
        self.session, diffs = self.session.set_topic(message.param(1), message.param(2) or None)
        return self._diff_events(diffs)

    def _on_no_topic(self, message: Message) -> list[Action]:
        self.session, diffs = self.session.set_topic(message.param(1), None)
        return self._diff_events(diffs)

    def _on_names(self, message: Message) -> list[Action]:
        if len(message.params) < 3:
            return [Emit(RawUnhandled(message))]
        channel = message.params[-2]
        if self.session.channel(channel) is None:
            return [Emit(RawUnhandled(message))]
        symbols = {symbol: letter for letter, symbol in self.session.prefix_modes.items()}
        entries = self._pending_names.setdefault(self.session.fold(channel), [])
        for item in message.params[-1].split():
            modes: set[str] = set()
            while item and item[0] in symbols:
                modes.add(symbols[item[0]])
                item = item[1:]
            nick = item.split("!", 1)[0]
            if nick:
                entries.append((nick, frozenset(modes)))
        return []

    def _on_end_of_names(self, message: Message) -> list[Action]:
        channel = message.param(1)
        entries = self._pending_names.pop(self.session.fold(channel), None)
        if entries is None:
            return [Emit(RawUnhandled(message))]
        self.session, diffs = self.session.set_members(channel, entries)
        return self._diff_events(diffs)

    def _on_chat(self, message: Message) -> list[Action]:
        if len(message.params) < 2:
            return [Emit(RawUnhandled(message))]
        source = message.nick or ""
        target, text = message.params[0], message.params[1]
        is_action = False
        if text.startswith("\x01ACTION") and message.verb == "PRIVMSG":
            is_action = True
            text = text[len("\x01ACTION") :].removesuffix("\x01").removeprefix(" ")
        services = {self.session.fold(n) for n in self.config.service_nicks}
        from_services = bool(source) and self.session.fold(source) in services
        if from_services:
            logger.log_event(
                "irc", "service_notice", server=self.server, service=source, text=text[:200]
            )
        return [
            Emit(
                MessageReceived(
                    source=source,
                    target=target,
                    text=_display(text),
                    tags={k: v for k, v in message.tags.items()},
                    kind=message.verb,
                    is_action=is_action,
                    from_services=from_services,
                )
            )
        ]

    # ------------------------------------------------------------------ #
    # outbound
    # ------------------------------------------------------------------ #
    def submit(self, command: Command) -> list[Action]:
        """Translate a consumer command into actions.

        ``Connect`` belongs to the supervisor and yields nothing here.
        """
        if isinstance(command, Quit):
            return self.quit(command.reason)
        if isinstance(command, Join):
            return self._join(command)
        if isinstance(command, Part):
            self._desired.pop(self.session.fold(normalize_channel(command.channel)), None)
            params = [normalize_channel(command.channel)]
            if command.reason:
                params.append(command.reason)
            return [Send(build("PART", *params, trailing=bool(command.reason)))]
        if isinstance(command, SendMessage | SendNotice | SendAction):
            return self._chat(command)
        if isinstance(command, ChangeNick):
            return [Send(build("NICK", command.nick))]
        if isinstance(command, SendRaw):
            return self._raw(command.line)
        if isinstance(command, Connect):
            return []
        raise TypeError(f"unsupported command {command!r}")

    def quit(self, reason: str | None = None) -> list[Action]:
        reason = reason or DEFAULT_QUIT_MESSAGE
        if self.state in (ConnectionState.REGISTERING, ConnectionState.REGISTERED):
            self._set_state(ConnectionState.CLOSING)
            return [
                Send(build("QUIT", reason, trailing=True), urgent=True),
                Close("quit", final=True, linger=self.config.quit_grace),
            ]
        return [Close("quit", final=True)]

    def _join(self, command: Join) -> list[Action]:
        name = normalize_channel(command.channel)
        self._desired[self.session.fold(name)] = (name, command.key)
        if not self.registered:
            # Joined from the desired set once registration completes.
            return []
        params = (name, command.key) if command.key else (name,)
        return [Send(build("JOIN", *params))]

    def _chat(self, command: SendMessage | SendNotice | SendAction) -> list[Action]:
        verb = "NOTICE" if isinstance(command, SendNotice) else "PRIVMSG"
        # Room for ":nick!user@host " that the server prepends when relaying.
        overhead = len(f"{verb} {command.target} :".encode()) + len(self.session.nick) + 80
        if isinstance(command, SendAction):
            overhead += len("\x01ACTION \x01")
        actions: list[Action] = []
        for line in command.text.splitlines() or [""]:
            for chunk in split_text(line, max(16, MAX_LINE_LENGTH - overhead)):
                if isinstance(command, SendAction):
                    chunk = f"\x01ACTION {chunk}\x01"
                actions.append(Send(build(verb, command.target, chunk, trailing=True)))
        return actions

    def _raw(self, line: str) -> list[Action]:
        parsed = parse(line.rstrip("\r\n"))
        if isinstance(parsed, Malformed):
            logger.log_event(
                "irc", "raw_rejected", level=logging.WARNING, server=self.server, reason=parsed.reason
            )
            return [Emit(ParseAnomaly(parsed.raw, parsed.reason, parsed))]
        if parsed.verb == "QUIT":
            return self.quit(parsed.param(0) or None)
        return [Send(parsed)]


def _display(text: str) -> str:
    """Make surrogate-escaped bytes printable (latin-1 fallback)."""
    try:
        text.encode("utf-8")
        return text
    except UnicodeEncodeError:
        return text.encode("utf-8", "surrogateescape").decode("latin-1")
