"""Tests for the sans-IO protocol state machine."""

import base64
from dataclasses import replace

import pytest

from termirc.errors.internal import RegistrationFailure, TransportError
from termirc.irc.commands import Join, Part, Quit, SendAction, SendMessage, SendRaw
from termirc.irc.events import (
    CapabilityChanged,
    ChannelJoined,
    ChannelLeft,
    ChannelUpdated,
    MessageReceived,
    NickChanged,
    ParseAnomaly,
    RawUnhandled,
    Registered,
)
from termirc.irc.message import Malformed, serialize
from termirc.irc.models import ConnectionState
from termirc.irc.session import DiffKind
from termirc.irc.state_machine import Close, Emit, ProtocolStateMachine, Send
from termirc.logging_config import error_aggregator
from tests.fixtures.fakes import raw


def sent(actions) -> list[str]:
    return [serialize(a.message).decode() for a in actions if isinstance(a, Send)]


def events(actions) -> list:
    return [a.event for a in actions if isinstance(a, Emit)]


def closes(actions) -> list[Close]:
    return [a for a in actions if isinstance(a, Close)]


def feed(machine, *lines: str) -> list:
    out = []
    for line in lines:
        out.extend(machine.line_received(raw(line)))
    return out


@pytest.fixture
def machine(make_config, clock):
    def _make(**overrides) -> ProtocolStateMachine:
        sm = ProtocolStateMachine(make_config(**overrides), clock)
        sm.connect_requested()
        return sm

    return _make


def register(sm: ProtocolStateMachine, nick: str = "a") -> list:
    sm.connection_made()
    return feed(sm, f":srv 001 {nick} :Welcome to the network")


class TestRegistration:
    def test_connection_made_sends_cap_nick_user_urgently(self, machine):
        sm = machine(nickname="a", realname="Real Name")
        actions = sm.connection_made()
        assert sent(actions) == ["CAP LS 302", "NICK a", "USER a 0 * :Real Name"]
        assert all(a.urgent for a in actions)
        assert sm.state is ConnectionState.REGISTERING

    def test_server_password_sent_first(self, machine):
        sm = machine(password="hunter2")
        assert sent(sm.connection_made())[0] == "PASS hunter2"

    def test_welcome_registers_with_server_given_nick(self, machine):
        sm = machine()
        sm.connection_made()
        actions = feed(sm, ":srv 001 a :Welcome")
        assert events(actions) == [Registered("a")]
        assert sm.state is ConnectionState.REGISTERED
        assert sm.next_deadline() is not None

    def test_nick_collision_retries_then_fails(self, machine):
        sm = machine(nickname="a", nick_retry_limit=3)
        sm.connection_made()
        tried = []
        for _ in range(3):
            actions = feed(sm, ":srv 433 * a :Nickname is already in use")
            tried.extend(sent(actions))
        assert tried == ["NICK a_", "NICK a__", "NICK a___"]
        assert all(a.urgent for a in actions)

        actions = feed(sm, ":srv 433 * a___ :Nickname is already in use")
        (close,) = closes(actions)
        assert close.final is True
        assert isinstance(close.error, RegistrationFailure)
        assert close.error.kind == "registration_failure"
        assert sent(actions)[0].startswith("QUIT :")

    def test_welcome_after_retry_uses_last_attempted_nick(self, machine):
        sm = machine(nickname="a")
        sm.connection_made()
        feed(sm, ":srv 433 * a :in use", ":srv 433 * a_ :in use")
        actions = feed(sm, ":srv 001 a__ :Welcome")
        assert events(actions) == [Registered("a__")]
        assert sm.session.nick == "a__"

    def test_nick_retry_respects_nicklen(self, machine):
        sm = machine(nickname="abcdefghi")
        sm.connection_made()
        feed(sm, ":srv 005 * NICKLEN=9 :are supported")
        assert sent(feed(sm, ":srv 433 * abcdefghi :in use")) == ["NICK abcdefgh1"]

    @pytest.mark.parametrize(
        "line",
        [
            ":srv 464 * :Password incorrect",
            ":srv 465 * :You are banned",
            "ERROR :Closing Link: banned",
        ],
    )
    def test_server_rejection_while_registering_is_fatal(self, machine, line):
        sm = machine()
        sm.connection_made()
        (close,) = closes(feed(sm, line))
        assert close.final
        assert isinstance(close.error, RegistrationFailure)

    def test_registration_timeout_closes_for_retry(self, machine, clock):
        sm = machine(registration_timeout=20, cap_timeout=5)
        sm.connection_made()
        clock.advance(20)
        actions = sm.tick()
        (close,) = closes(actions)
        assert close.final is False
        assert isinstance(close.error, TransportError)
        assert not close.error.fatal


class TestCapabilities:
    def test_request_ack_end(self, machine):
        sm = machine(requested_capabilities=["multi-prefix", "server-time"])
        sm.connection_made()
        assert sent(feed(sm, ":srv CAP * LS :multi-prefix sasl")) == ["CAP REQ :multi-prefix"]
        actions = feed(sm, ":srv CAP a ACK :multi-prefix")
        assert sent(actions) == ["CAP END"]
        assert events(actions) == [CapabilityChanged(frozenset({"multi-prefix"}))]
        assert sm.session.capabilities == frozenset({"multi-prefix"})

    def test_multiline_ls_waits_for_last_line(self, machine):
        sm = machine(requested_capabilities=["multi-prefix", "server-time"])
        sm.connection_made()
        assert sent(feed(sm, ":srv CAP * LS * :multi-prefix")) == []
        assert sent(feed(sm, ":srv CAP * LS :server-time")) == [
            "CAP REQ :multi-prefix server-time"
        ]

    def test_nak_still_ends_negotiation(self, machine):
        sm = machine(requested_capabilities=["multi-prefix"])
        sm.connection_made()
        feed(sm, ":srv CAP * LS :multi-prefix")
        actions = feed(sm, ":srv CAP a NAK :multi-prefix")
        assert sent(actions) == ["CAP END"]
        assert events(actions) == []

    def test_nothing_wanted_ends_immediately(self, machine):
        sm = machine(requested_capabilities=["server-time"])
        sm.connection_made()
        assert sent(feed(sm, ":srv CAP * LS :away-notify")) == ["CAP END"]

    def test_finished_negotiation_drops_cap_deadline(self, machine, clock):
        sm = machine(cap_timeout=10, registration_timeout=60)
        sm.connection_made()
        feed(sm, ":srv CAP * LS :away-notify")
        assert sm.next_deadline() == clock() + 60
        clock.advance(15)
        assert sm.tick() == []
        # Slow 001 must not leave a deadline in the past behind.
        assert sm.next_deadline() > clock()

    def test_timeout_ends_negotiation_without_closing(self, machine, clock):
        sm = machine(cap_timeout=10)
        sm.connection_made()
        feed(sm, ":srv CAP * LS :multi-prefix")
        clock.advance(10)
        actions = sm.tick()
        assert sent(actions) == ["CAP END"]
        assert closes(actions) == []
        assert events(actions) == [CapabilityChanged(frozenset())]
        assert sm.state is ConnectionState.REGISTERING

    def test_server_without_cap_support(self, machine, clock):
        sm = machine()
        sm.connection_made()
        assert feed(sm, ":srv 421 * CAP :Unknown command") == []
        assert sm.negotiator.finished
        clock.advance(60)
        # No CAP END on a timer once the server declared CAP unknown.
        assert sent(sm.tick()) == []

    def test_cap_new_and_del_after_registration(self, machine):
        sm = machine(requested_capabilities=["multi-prefix", "away-notify"])
        sm.connection_made()
        feed(sm, ":srv CAP * LS :multi-prefix cap-notify")
        feed(sm, ":srv CAP a ACK :multi-prefix")
        feed(sm, ":srv 001 a :Welcome")
        assert sent(feed(sm, ":srv CAP a NEW :away-notify")) == ["CAP REQ :away-notify"]
        actions = feed(sm, ":srv CAP a ACK :away-notify")
        assert events(actions) == [CapabilityChanged(frozenset({"multi-prefix", "away-notify"}))]
        actions = feed(sm, ":srv CAP a DEL :multi-prefix")
        assert events(actions) == [CapabilityChanged(frozenset({"away-notify"}))]

    def test_sasl_plain_exchange(self, machine):
        sm = machine(
            requested_capabilities=["multi-prefix"],
            sasl={"username": "acct", "password": "pw"},
        )
        sm.connection_made()
        assert sent(feed(sm, ":srv CAP * LS :multi-prefix sasl=PLAIN")) == [
            "CAP REQ :multi-prefix sasl"
        ]
        assert sent(feed(sm, ":srv CAP a ACK :multi-prefix sasl")) == ["AUTHENTICATE PLAIN"]
        payload = base64.b64encode(b"acct\0acct\0pw").decode()
        assert sent(feed(sm, "AUTHENTICATE +")) == [f"AUTHENTICATE {payload}"]
        assert sent(feed(sm, ":srv 900 a a!u@h acct :You are now logged in")) == []
        assert sent(feed(sm, ":srv 903 a :SASL authentication successful")) == ["CAP END"]

    def test_sasl_failure_does_not_block_registration(self, machine):
        sm = machine(requested_capabilities=[], sasl={"username": "acct", "password": "bad"})
        sm.connection_made()
        feed(sm, ":srv CAP * LS :sasl", ":srv CAP a ACK :sasl", "AUTHENTICATE +")
        actions = feed(sm, ":srv 904 a :SASL authentication failed")
        assert sent(actions) == ["CAP END"]
        assert closes(actions) == []


class TestKeepalive:
    def test_server_ping_answered_with_mirrored_pong(self, machine):
        sm = machine()
        actions = feed(sm, "PING :abc123")
        assert actions == [Send(actions[0].message, urgent=True)]
        assert actions[0].message.to_line() == b"PONG :abc123\r\n"

    def test_idle_triggers_ping_then_timeout(self, machine, clock):
        sm = machine(keepalive_timeout=30, keepalive_grace=10)
        register(sm)
        assert sm.next_deadline() == clock.now + 30
        clock.advance(30)
        ping = sm.tick()
        assert len(sent(ping)) == 1 and sent(ping)[0].startswith("PING :")
        assert ping[0].urgent
        clock.advance(10)
        (close,) = closes(sm.tick())
        assert close.reason == "ping timeout"
        assert not close.final

    def test_any_traffic_counts_as_liveness(self, machine, clock):
        sm = machine(keepalive_timeout=30, keepalive_grace=10)
        register(sm)
        clock.advance(30)
        sm.tick()
        clock.advance(5)
        feed(sm, ":srv PONG srv :whatever")
        clock.advance(9)
        assert sm.tick() == []
        assert sm.next_deadline() == clock.now - 9 + 30


class TestTranslation:
    def test_privmsg_emits_one_event_and_only_touches_last_seen(self, machine, clock):
        sm = machine()
        register(sm)
        before = sm.session
        clock.advance(3)
        actions = feed(sm, ":nick!u@h PRIVMSG #chan :hello")
        assert actions == [
            Emit(MessageReceived(source="nick", target="#chan", text="hello", tags={}))
        ]
        assert sm.session == replace(before, last_seen=clock.now)

    def test_action_and_services_flags(self, machine):
        sm = machine()
        (action,) = events(feed(sm, ":bob!u@h PRIVMSG #c :\x01ACTION waves\x01"))
        assert action.is_action and action.text == "waves"
        (notice,) = events(feed(sm, ":NickServ!s@services NOTICE a :You are identified"))
        assert notice.from_services and notice.kind == "NOTICE"

    def test_tags_reach_the_event(self, machine):
        sm = machine()
        (msg,) = events(feed(sm, "@time=2024-01-01T00:00:00Z :n!u@h PRIVMSG #c :x"))
        assert msg.tags["time"] == "2024-01-01T00:00:00Z"

    def test_channel_lifecycle(self, machine):
        sm = machine()
        register(sm)
        (joined,) = events(feed(sm, ":a!u@h JOIN #chan"))
        assert isinstance(joined, ChannelJoined) and joined.name == "#chan"

        assert feed(sm, ":srv 353 a = #chan :@a +bob carol") == []
        (names,) = events(feed(sm, ":srv 366 a #chan :End of /NAMES list"))
        assert isinstance(names, ChannelUpdated)
        assert names.diff.kind is DiffKind.NAMES
        assert names.diff.members == ("a", "bob", "carol")
        assert names.state.member("bob").modes == frozenset("v")

        (topic,) = events(feed(sm, ":srv 332 a #chan :the topic"))
        assert topic.diff.topic == "the topic"
        (mode,) = events(feed(sm, ":a!u@h MODE #chan +o carol"))
        assert mode.diff.modes_added == (("o", "carol"),)
        (member,) = events(feed(sm, ":dave!u@h JOIN #chan"))
        assert member.diff.kind is DiffKind.MEMBER_JOINED
        (renamed,) = events(feed(sm, ":dave!u@h NICK david"))
        assert renamed.diff.kind is DiffKind.MEMBER_RENAMED
        (quit_,) = events(feed(sm, ":david!u@h QUIT :bye"))
        assert quit_.diff.kind is DiffKind.MEMBER_LEFT

        (left,) = events(feed(sm, ":a!u@h PART #chan :later"))
        assert left == ChannelLeft("#chan", "later")
        assert sm.session.channel("#chan") is None

    def test_duplicate_notifications_are_silent(self, machine):
        sm = machine()
        register(sm)
        feed(sm, ":a!u@h JOIN #chan")
        assert events(feed(sm, ":a!u@h JOIN #chan")) == []
        assert events(feed(sm, ":x!u@h PART #nowhere")) == []

    def test_kicked_channel_is_not_rejoined(self, machine):
        sm = machine(channels=["#chan"])
        register(sm)
        feed(sm, ":a!u@h JOIN #chan")
        (left,) = events(feed(sm, ":op!u@h KICK #chan a :spam"))
        assert left == ChannelLeft("#chan", "kicked by op: spam")
        assert sm.desired_channels == []

    def test_own_nick_change(self, machine):
        sm = machine()
        register(sm)
        actions = feed(sm, ":a!u@h NICK :b")
        assert events(actions)[0] == NickChanged("a", "b")
        assert sm.session.nick == "b"

    def test_unknown_commands_surface_raw(self, machine):
        sm = machine()
        (first,) = events(feed(sm, ":srv 372 a :- message of the day"))
        (second,) = events(feed(sm, "FOO bar"))
        assert isinstance(first, RawUnhandled) and first.message.command == "372"
        assert isinstance(second, RawUnhandled)

    def test_malformed_line_becomes_anomaly(self, machine):
        sm = machine()
        (anomaly,) = events(sm.line_received(raw(b"@a=b")))
        assert isinstance(anomaly, ParseAnomaly)
        assert isinstance(anomaly.message, Malformed)
        assert anomaly.raw == b"@a=b"

    def test_malformed_line_recorded_as_protocol_error(self, machine):
        sm = machine()
        sm.line_received(raw(b"@a=b"))
        last = error_aggregator.get_error_summary()["protocol"]["last_occurrence"]
        assert "tags without command" in last["message"]
        assert last["context"]["raw"] == "@a=b"

    def test_truncated_line_flagged_and_still_processed(self, machine):
        sm = machine()
        found = events(sm.line_received(raw(":n!u@h PRIVMSG #c :hel", truncated=True)))
        assert isinstance(found[0], ParseAnomaly) and found[0].reason == "line truncated"
        assert isinstance(found[1], MessageReceived)

    def test_isupport_updates_session(self, machine):
        sm = machine()
        feed(sm, ":srv 005 a CASEMAPPING=ascii NICKLEN=30 :are supported")
        assert sm.session.casemapping == "ascii"
        assert sm.session.nicklen == 30


class TestOutbound:
    def test_configured_channels_joined_after_welcome(self, machine):
        sm = machine(channels=["chan", "#other"])
        actions = register(sm)
        joins = [a for a in actions if isinstance(a, Send)]
        assert [serialize(a.message).decode() for a in joins] == ["JOIN #chan", "JOIN #other"]
        assert not any(a.urgent for a in joins)

    def test_join_before_registration_is_deferred(self, machine):
        sm = machine()
        sm.connection_made()
        assert sm.submit(Join("#later", "key")) == []
        assert sent(feed(sm, ":srv 001 a :Welcome")) == ["JOIN #later key"]

    def test_channels_rejoined_after_reconnect(self, machine):
        sm = machine()
        register(sm)
        feed(sm, ":a!u@h JOIN #chan")
        lost = events(sm.connection_lost("reset"))
        assert lost == [ChannelLeft("#chan", "reset")]
        assert sm.state is ConnectionState.DISCONNECTED
        sm.connect_requested()
        assert sent(register(sm)) == ["JOIN #chan"]

    def test_part_forgets_channel(self, machine):
        sm = machine(channels=["#chan"])
        register(sm)
        assert sent(sm.submit(Part("#chan", "bye"))) == ["PART #chan :bye"]
        assert sm.desired_channels == []

    def test_long_message_split(self, machine):
        sm = machine()
        register(sm)
        text = "word " * 200
        actions = sm.submit(SendMessage("#c", text))
        assert len(actions) > 1
        assert all(len(serialize(a.message)) <= 510 for a in actions)
        assert " ".join(a.message.params[1] for a in actions) == text
        assert not any(a.urgent for a in actions)

    def test_action_wrapped_in_ctcp(self, machine):
        sm = machine()
        assert sent(sm.submit(SendAction("#c", "waves"))) == ["PRIVMSG #c :\x01ACTION waves\x01"]

    def test_raw_line_validated(self, machine):
        sm = machine()
        assert sent(sm.submit(SendRaw("WHOIS bob"))) == ["WHOIS bob"]
        (anomaly,) = events(sm.submit(SendRaw(":prefix-only")))
        assert isinstance(anomaly, ParseAnomaly)

    def test_quit_sends_quit_then_final_close(self, machine):
        sm = machine(quit_grace=1.5)
        register(sm)
        actions = sm.submit(Quit())
        assert sent(actions) == ["QUIT :Leaving"]
        assert actions[0].urgent
        (close,) = closes(actions)
        assert close.final and close.linger == 1.5
        assert sm.state is ConnectionState.CLOSING
        (after_error,) = closes(feed(sm, "ERROR :Closing Link"))
        assert after_error.final and after_error.error is None

    def test_quit_while_disconnected_closes_immediately(self, machine):
        sm = ProtocolStateMachine(machine().config)
        assert sm.quit("bye") == [Close("quit", final=True)]
