"""Session and channel state.

Everything here is an immutable value. Mutations return ``(new_session,
changes)`` where ``changes`` is a tuple of :class:`ChannelDiff`; an empty
tuple means the notification did not change anything (duplicate join,
part for an absent channel and so on), which is never an error. Because
the values are immutable, the state machine can hand them to consumers in
events without copying.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field, replace
from enum import StrEnum
from types import MappingProxyType

from .models import irc_lower

DEFAULT_PREFIX = "(ov)@+"
DEFAULT_CHANMODES = "beI,k,l,imnpst"


def _frozen(mapping: Mapping) -> Mapping:
    return MappingProxyType(dict(mapping))


def parse_prefix(value: str | None) -> dict[str, str]:
    """``(qaohv)~&@%+`` -> ordered mapping of mode letter to symbol."""
    if not value or not value.startswith("(") or ")" not in value:
        return {}
    letters, _, symbols = value[1:].partition(")")
    return dict(zip(letters, symbols, strict=False))


def parse_chanmodes(value: str | None) -> dict[str, str]:
    """``beI,k,l,imnpst`` -> mode letter to its A/B/C/D class."""
    result: dict[str, str] = {}
    for cls, group in zip("ABCD", (value or "").split(","), strict=False):
        for mode in group:
            result[mode] = cls
    return result


class DiffKind(StrEnum):
    JOINED = "joined"
    LEFT = "left"
    NAMES = "names"
    MEMBER_JOINED = "member_joined"
    MEMBER_LEFT = "member_left"
    MEMBER_RENAMED = "member_renamed"
    TOPIC = "topic"
    MODES = "modes"


@dataclass(frozen=True, slots=True)
class ChannelDiff:
    """Description of one change to one channel."""

    kind: DiffKind
    channel: str
    nick: str | None = None
    old_nick: str | None = None
    reason: str | None = None
    topic: str | None = None
    members: tuple[str, ...] = ()
    modes_added: tuple[tuple[str, str | None], ...] = ()
    modes_removed: tuple[tuple[str, str | None], ...] = ()


@dataclass(frozen=True, slots=True)
class Member:
    nick: str
    modes: frozenset[str] = frozenset()


@dataclass(frozen=True, slots=True)
class ChannelState:
    """Topic, channel modes and members of a joined channel.

    ``members`` is keyed by the case-folded nick; ``modes`` maps a channel
    mode letter to its argument (``None`` for flag modes).
    """

    name: str
    topic: str | None = None
    modes: Mapping[str, str | None] = field(default_factory=dict)
    members: Mapping[str, Member] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "modes", _frozen(self.modes))
        object.__setattr__(self, "members", _frozen(self.members))

    @property
    def nicknames(self) -> dict[str, frozenset[str]]:
        """Member nick -> prefix mode letters, in the order members were seen."""
        return {m.nick: m.modes for m in self.members.values()}

    def member(self, nick: str, casemapping: str = "rfc1459") -> Member | None:
        return self.members.get(irc_lower(nick, casemapping))


@dataclass(frozen=True, slots=True)
class Session:
    nick: str = ""
    capabilities: frozenset[str] = frozenset()
    isupport: Mapping[str, str | None] = field(default_factory=dict)
    channels: Mapping[str, ChannelState] = field(default_factory=dict)
    last_seen: float = 0.0

    def __post_init__(self) -> None:
        object.__setattr__(self, "isupport", _frozen(self.isupport))
        object.__setattr__(self, "channels", _frozen(self.channels))

    # ----------------------------- derived views ----------------------------- #
    @property
    def casemapping(self) -> str:
        return self.isupport.get("CASEMAPPING") or "rfc1459"

    @property
    def prefix_modes(self) -> dict[str, str]:
        return parse_prefix(self.isupport.get("PREFIX") or DEFAULT_PREFIX)

    @property
    def chanmodes(self) -> dict[str, str]:
        return parse_chanmodes(self.isupport.get("CHANMODES") or DEFAULT_CHANMODES)

    @property
    def chantypes(self) -> str:
        return self.isupport.get("CHANTYPES") or "#&"

    @property
    def nicklen(self) -> int | None:
        value = self.isupport.get("NICKLEN")
        return int(value) if value and value.isdigit() else None

    def fold(self, name: str) -> str:
        return irc_lower(name, self.casemapping)

    def is_me(self, nick: str | None) -> bool:
        return bool(nick) and bool(self.nick) and self.fold(nick) == self.fold(self.nick)

    def is_channel(self, target: str) -> bool:
        return bool(target) and target[0] in self.chantypes

    def channel(self, name: str) -> ChannelState | None:
        return self.channels.get(self.fold(name))

    def _with_channel(self, state: ChannelState) -> Session:
        channels = dict(self.channels)
        channels[self.fold(state.name)] = state
        return replace(self, channels=channels)

    # ------------------------------- mutations ------------------------------- #
    def touch(self, now: float) -> Session:
        return replace(self, last_seen=now)

    def set_nick(self, nick: str) -> tuple[Session, tuple[ChannelDiff, ...]]:
        if nick == self.nick:
            return self, ()
        old = self.nick
        session = replace(self, nick=nick)
        if not old:
            return session, ()
        return session.rename_member(old, nick)

    def set_capabilities(self, capabilities: Iterable[str]) -> Session:
        return replace(self, capabilities=frozenset(capabilities))

    def apply_isupport(self, tokens: Iterable[str]) -> Session:
        """Merge ``KEY=value`` / ``KEY`` / ``-KEY`` tokens from RPL_ISUPPORT."""
        features = dict(self.isupport)
        for token in tokens:
            if token.startswith("-"):
                features.pop(token[1:].upper(), None)
                continue
            key, eq, value = token.partition("=")
            if key:
                features[key.upper()] = value if eq else None
        return replace(self, isupport=features)

    def join_channel(self, name: str) -> tuple[Session, tuple[ChannelDiff, ...]]:
        if self.channel(name) is not None:
            return self, ()
        state = ChannelState(name)
        return self._with_channel(state), (ChannelDiff(DiffKind.JOINED, name),)

    def part_channel(
        self, name: str, reason: str | None = None
    ) -> tuple[Session, tuple[ChannelDiff, ...]]:
        state = self.channel(name)
        if state is None:
            return self, ()
        channels = dict(self.channels)
        del channels[self.fold(name)]
        diff = ChannelDiff(DiffKind.LEFT, state.name, reason=reason)
        return replace(self, channels=channels), (diff,)

    def clear_channels(self, reason: str | None = None) -> tuple[Session, tuple[ChannelDiff, ...]]:
        diffs = tuple(
            ChannelDiff(DiffKind.LEFT, state.name, reason=reason)
            for state in self.channels.values()
        )
        return replace(self, channels={}), diffs

    def reset(self, reason: str | None = None) -> tuple[Session, tuple[ChannelDiff, ...]]:
        """Forget everything learned from the server; keeps the nick."""
        session, diffs = self.clear_channels(reason)
        return replace(session, capabilities=frozenset(), isupport={}), diffs

    def upsert_member(
        self, channel: str, nick: str, modes: Iterable[str] | None = None
    ) -> tuple[Session, tuple[ChannelDiff, ...]]:
        """Add a member, or replace its prefix modes when ``modes`` is given."""
        state = self.channel(channel)
        if state is None:
            return self, ()
        key = self.fold(nick)
        current = state.members.get(key)
        new_modes = frozenset(modes) if modes is not None else None
        if current is not None and (new_modes is None or new_modes == current.modes):
            return self, ()
        members = dict(state.members)
        members[key] = Member(nick, new_modes if new_modes is not None else frozenset())
        session = self._with_channel(replace(state, members=members))
        if current is None:
            diff = ChannelDiff(DiffKind.MEMBER_JOINED, state.name, nick=nick)
        else:
            diff = ChannelDiff(
                DiffKind.MODES,
                state.name,
                nick=nick,
                modes_added=tuple((m, nick) for m in sorted(new_modes - current.modes)),
                modes_removed=tuple((m, nick) for m in sorted(current.modes - new_modes)),
            )
        return session, (diff,)

    def set_members(
        self, channel: str, entries: Iterable[tuple[str, Iterable[str]]]
    ) -> tuple[Session, tuple[ChannelDiff, ...]]:
        """Replace the member list with a complete NAMES listing."""
        state = self.channel(channel)
        if state is None:
            return self, ()
        members = {self.fold(nick): Member(nick, frozenset(modes)) for nick, modes in entries}
        if members == dict(state.members):
            return self, ()
        session = self._with_channel(replace(state, members=members))
        diff = ChannelDiff(
            DiffKind.NAMES,
            state.name,
            members=tuple(m.nick for m in members.values()),
        )
        return session, (diff,)

    def remove_member(
        self, nick: str, channel: str | None = None, reason: str | None = None
    ) -> tuple[Session, tuple[ChannelDiff, ...]]:
        """Remove a member from one channel, or from every channel when
        ``channel`` is None (QUIT)."""
        key = self.fold(nick)
        if channel is not None:
            state = self.channel(channel)
            targets = [state] if state is not None else []
        else:
            targets = list(self.channels.values())
        session = self
        diffs: list[ChannelDiff] = []
        for state in targets:
            if key not in state.members:
                continue
            members = dict(state.members)
            removed = members.pop(key)
            session = session._with_channel(replace(state, members=members))
            diffs.append(
                ChannelDiff(DiffKind.MEMBER_LEFT, state.name, nick=removed.nick, reason=reason)
            )
        return session, tuple(diffs)

    def rename_member(self, old: str, new: str) -> tuple[Session, tuple[ChannelDiff, ...]]:
        old_key, new_key = self.fold(old), self.fold(new)
        session = self
        diffs: list[ChannelDiff] = []
        for state in self.channels.values():
            member = state.members.get(old_key)
            if member is None:
                continue
            # Rebuild to keep the member's position in the listing.
            members = {
                (new_key if k == old_key else k): (Member(new, m.modes) if k == old_key else m)
                for k, m in state.members.items()
            }
            session = session._with_channel(replace(state, members=members))
            diffs.append(
                ChannelDiff(DiffKind.MEMBER_RENAMED, state.name, nick=new, old_nick=member.nick)
            )
        return session, tuple(diffs)

    def set_topic(
        self, channel: str, topic: str | None
    ) -> tuple[Session, tuple[ChannelDiff, ...]]:
        state = self.channel(channel)
        topic = topic or None
        if state is None or state.topic == topic:
            return self, ()
        session = self._with_channel(replace(state, topic=topic))
        return session, (ChannelDiff(DiffKind.TOPIC, state.name, topic=topic),)

    def apply_mode_delta(
        self, channel: str, modestring: str, args: Iterable[str] = ()
    ) -> tuple[Session, tuple[ChannelDiff, ...]]:
        """Apply a MODE change such as ``+o-v alice bob`` or ``+kl key 10``.

        Member prefix modes update the member's mode set; list modes (class A,
        e.g. bans) are reported but not stored.
        """
        state = self.channel(channel)
        if state is None:
            return self, ()
        prefix_modes = self.prefix_modes
        chanmodes = self.chanmodes
        pending_args = list(args)
        modes = dict(state.modes)
        members = dict(state.members)
        added: list[tuple[str, str | None]] = []
        removed: list[tuple[str, str | None]] = []
        adding = True

        for mode in modestring:
            if mode == "+":
                adding = True
                continue
            if mode == "-":
                adding = False
                continue
            if mode in prefix_modes:
                if not pending_args:
                    continue
                nick = pending_args.pop(0)
                member = members.get(self.fold(nick))
                if member is None:
                    continue
                if adding and mode not in member.modes:
                    members[self.fold(nick)] = Member(member.nick, member.modes | {mode})
                    added.append((mode, nick))
                elif not adding and mode in member.modes:
                    members[self.fold(nick)] = Member(member.nick, member.modes - {mode})
                    removed.append((mode, nick))
                continue

            cls = chanmodes.get(mode, "D")
            takes_arg = cls in ("A", "B") or (cls == "C" and adding)
            arg = pending_args.pop(0) if takes_arg and pending_args else None
            if cls == "A":
                (added if adding else removed).append((mode, arg))
            elif adding:
                if mode not in modes or modes[mode] != arg:
                    modes[mode] = arg
                    added.append((mode, arg))
            elif mode in modes:
                del modes[mode]
                removed.append((mode, arg))

        if not added and not removed:
            return self, ()
        session = self._with_channel(replace(state, modes=modes, members=members))
        diff = ChannelDiff(
            DiffKind.MODES,
            state.name,
            modes_added=tuple(added),
            modes_removed=tuple(removed),
        )
        return session, (diff,)
