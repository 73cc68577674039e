"""IRC protocol package.

Codec, framing, session model, capability negotiation and the sans-IO
protocol state machine, plus the transport used by the supervisor.
"""

from .commands import (  # noqa: F401
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
from .events import (  # noqa: F401
    CapabilityChanged,
    ChannelJoined,
    ChannelLeft,
    ChannelUpdated,
    Connected,
    Disconnected,
    Event,
    FatalError,
    MessageReceived,
    NickChanged,
    ParseAnomaly,
    RawUnhandled,
    Registered,
)
from .framer import LineFramer, RawLine  # noqa: F401
from .message import Malformed, Message, Prefix, build, parse, serialize  # noqa: F401
from .models import ConnectionState  # noqa: F401
from .session import ChannelDiff, ChannelState, DiffKind, Member, Session  # noqa: F401
from .state_machine import Close, Emit, ProtocolStateMachine, Send  # noqa: F401

__all__ = [
    "CapabilityChanged",
    "ChangeNick",
    "ChannelDiff",
    "ChannelJoined",
    "ChannelLeft",
    "ChannelState",
    "ChannelUpdated",
    "Close",
    "Command",
    "Connect",
    "Connected",
    "ConnectionState",
    "DiffKind",
    "Disconnected",
    "Emit",
    "Event",
    "FatalError",
    "Join",
    "LineFramer",
    "Malformed",
    "Member",
    "Message",
    "MessageReceived",
    "NickChanged",
    "ParseAnomaly",
    "Part",
    "Prefix",
    "ProtocolStateMachine",
    "Quit",
    "RawLine",
    "RawUnhandled",
    "Registered",
    "Send",
    "SendAction",
    "SendMessage",
    "SendNotice",
    "SendRaw",
    "Session",
    "build",
    "parse",
    "serialize",
]
