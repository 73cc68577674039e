"""Tests for the immutable session model."""

from termirc.irc.models import irc_lower
from termirc.irc.session import (
    ChannelState,
    DiffKind,
    Session,
    parse_chanmodes,
    parse_prefix,
)


def _joined(*members: str) -> Session:
    session, _ = Session(nick="me").join_channel("#chan")
    for nick in members:
        session, _ = session.upsert_member("#chan", nick)
    return session


class TestChannels:
    def test_join_creates_channel_and_reports_it(self):
        session, diffs = Session(nick="me").join_channel("#Chan")
        assert [d.kind for d in diffs] == [DiffKind.JOINED]
        assert isinstance(session.channel("#chan"), ChannelState)

    def test_duplicate_join_is_noop(self):
        session = _joined()
        again, diffs = session.join_channel("#CHAN")
        assert diffs == ()
        assert again is session

    def test_part_for_absent_channel_is_noop(self):
        session = Session(nick="me")
        after, diffs = session.part_channel("#nowhere", "bye")
        assert diffs == ()
        assert after is session

    def test_part_removes_channel(self):
        session, diffs = _joined("bob").part_channel("#chan", "bye")
        assert session.channel("#chan") is None
        assert diffs[0].kind is DiffKind.LEFT
        assert diffs[0].reason == "bye"

    def test_original_session_is_not_mutated(self):
        before = _joined("bob")
        after, _ = before.remove_member("bob", "#chan")
        assert "bob" in before.channel("#chan").members
        assert "bob" not in after.channel("#chan").members

    def test_reset_drops_channels_and_server_features(self):
        session = _joined("bob").apply_isupport(["NICKLEN=9"])
        session = session.set_capabilities({"multi-prefix"})
        after, diffs = session.reset("gone")
        assert after.channels == {}
        assert after.capabilities == frozenset()
        assert after.nicklen is None
        assert after.nick == "me"
        assert [d.kind for d in diffs] == [DiffKind.LEFT]


class TestMembers:
    def test_upsert_and_remove(self):
        session, diffs = _joined().upsert_member("#chan", "Bob")
        assert diffs[0].kind is DiffKind.MEMBER_JOINED
        assert session.channel("#chan").member("bob").nick == "Bob"
        session, diffs = session.remove_member("BOB", "#chan", "later")
        assert diffs[0].kind is DiffKind.MEMBER_LEFT
        assert diffs[0].nick == "Bob"

    def test_remove_unknown_member_is_noop(self):
        session = _joined()
        after, diffs = session.remove_member("ghost", "#chan")
        assert diffs == ()

    def test_quit_removes_from_every_channel(self):
        session = _joined("bob")
        session, _ = session.join_channel("#other")
        session, _ = session.upsert_member("#other", "bob")
        session, diffs = session.remove_member("bob", None, "Quit: bye")
        assert {d.channel for d in diffs} == {"#chan", "#other"}
        assert all(d.reason == "Quit: bye" for d in diffs)

    def test_rename_keeps_modes_and_order(self):
        session = _joined("alice", "bob", "carol")
        session, _ = session.apply_mode_delta("#chan", "+o", ["bob"])
        session, diffs = session.rename_member("bob", "robert")
        state = session.channel("#chan")
        assert list(state.nicknames) == ["alice", "robert", "carol"]
        assert state.member("robert").modes == frozenset("o")
        assert diffs[0].old_nick == "bob"

    def test_names_replaces_member_list(self):
        session = _joined("old")
        session, diffs = session.set_members("#chan", [("me", {"o"}), ("bob", set())])
        assert diffs[0].kind is DiffKind.NAMES
        assert diffs[0].members == ("me", "bob")
        assert session.channel("#chan").member("old") is None

    def test_set_nick_renames_self_in_channels(self):
        session = _joined("bob")
        session, _ = session.upsert_member("#chan", "me")
        session, diffs = session.set_nick("me2")
        assert session.nick == "me2"
        assert session.channel("#chan").member("me2") is not None
        assert diffs[0].kind is DiffKind.MEMBER_RENAMED


class TestTopicAndModes:
    def test_topic_change_reported_once(self):
        session, diffs = _joined().set_topic("#chan", "hello")
        assert diffs[0].topic == "hello"
        _, again = session.set_topic("#chan", "hello")
        assert again == ()

    def test_mode_delta_with_prefix_and_param_modes(self):
        session = _joined("alice", "bob")
        session, diffs = session.apply_mode_delta("#chan", "+ok-v", ["alice", "secret", "bob"])
        state = session.channel("#chan")
        assert state.member("alice").modes == frozenset("o")
        assert state.modes == {"k": "secret"}
        assert diffs[0].modes_added == (("o", "alice"), ("k", "secret"))
        # bob had no voice, so nothing was removed
        assert diffs[0].modes_removed == ()

    def test_limit_mode_takes_argument_only_when_set(self):
        session = _joined()
        session, _ = session.apply_mode_delta("#chan", "+lnt", ["10"])
        assert session.channel("#chan").modes == {"l": "10", "n": None, "t": None}
        session, diffs = session.apply_mode_delta("#chan", "-l", [])
        assert "l" not in session.channel("#chan").modes
        assert diffs[0].modes_removed == (("l", None),)

    def test_list_modes_reported_not_stored(self):
        session, diffs = _joined().apply_mode_delta("#chan", "+b", ["*!*@spam"])
        assert diffs[0].modes_added == (("b", "*!*@spam"),)
        assert session.channel("#chan").modes == {}

    def test_mode_on_unknown_channel_is_noop(self):
        session = Session(nick="me")
        _, diffs = session.apply_mode_delta("#nowhere", "+o", ["x"])
        assert diffs == ()

    def test_isupport_prefix_drives_member_modes(self):
        session = _joined("bob").apply_isupport(["PREFIX=(qaohv)~&@%+"])
        session, _ = session.apply_mode_delta("#chan", "+h", ["bob"])
        assert session.channel("#chan").member("bob").modes == frozenset("h")


class TestFeatures:
    def test_parse_prefix(self):
        assert parse_prefix("(ov)@+") == {"o": "@", "v": "+"}
        assert parse_prefix("garbage") == {}

    def test_parse_chanmodes(self):
        classes = parse_chanmodes("beI,k,l,imnpst")
        assert classes["b"] == "A" and classes["k"] == "B"
        assert classes["l"] == "C" and classes["n"] == "D"

    def test_isupport_negation_removes_feature(self):
        session = Session().apply_isupport(["NICKLEN=9", "EXCEPTS"])
        assert session.nicklen == 9
        assert session.isupport["EXCEPTS"] is None
        session = session.apply_isupport(["-NICKLEN"])
        assert session.nicklen is None

    def test_casemapping(self):
        assert irc_lower("Nick[]\\~") == "nick{}|^"
        assert irc_lower("Nick[]\\~", "strict-rfc1459") == "nick{}|~"
        assert irc_lower("Nick[]", "ascii") == "nick[]"

    def test_last_seen_touch(self):
        assert Session().touch(42.0).last_seen == 42.0
