"""Turn a line typed at the console into an engine command.

Pure function, no I/O: the caller decides how to show ``message`` and where
to send ``command``.
"""

from __future__ import annotations

from dataclasses import dataclass

from .config.model import normalize_channel
from .irc.commands import (
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

COMMAND_HELP: tuple[tuple[str, str], ...] = (
    ("/help", "Display all available commands with descriptions"),
    ("/join", "Join a channel: /join #channel [key]"),
    ("/part", "Leave a channel: /part [#channel] [reason]"),
    ("/msg", "Send a private message: /msg target message"),
    ("/notice", "Send a notice: /notice target message"),
    ("/me", "Send an action to the current target: /me waves"),
    ("/nick", "Change nickname: /nick newnick"),
    ("/nickserv", "Send command to NickServ: /nickserv command"),
    ("/raw", "Send a raw protocol line: /raw LINE (alias /quote)"),
    ("/connect", "Connect to a server: /connect host [port] [tls]"),
    ("/quit", "Exit the application: /quit [reason] (alias /exit)"),
)


@dataclass(frozen=True, slots=True)
class InputResult:
    """Outcome of one input line.

    ``command`` is None when nothing must be sent; ``target`` is the current
    target after this line (``/join`` switches it); ``message`` is feedback
    for the user (usage, help, echo).
    """

    command: Command | None = None
    target: str | None = None
    message: str | None = None


def help_text() -> str:
    lines = ["---- Command Help ----"]
    lines.extend(f"{cmd} - {desc}" for cmd, desc in COMMAND_HELP)
    return "\n".join(lines)


def _split(rest: str, count: int) -> list[str]:
    return rest.split(None, count - 1) if rest else []


def parse_input(text: str, current_target: str | None = None) -> InputResult:
    line = text.rstrip("\r\n")
    if not line.strip():
        return InputResult(target=current_target)

    if not line.startswith("/") or line.startswith("//"):
        body = line[1:] if line.startswith("//") else line
        if not current_target:
            return InputResult(
                target=current_target, message="Join a channel first with /join #channel"
            )
        return InputResult(
            SendMessage(current_target, body), current_target, f"-> {current_target}: {body}"
        )

    name, _, rest = line[1:].partition(" ")
    name = name.lower()
    rest = rest.strip()
    handler = _HANDLERS.get(name)
    if handler is None:
        return InputResult(target=current_target, message=f"Unknown command: /{name} (try /help)")
    return handler(rest, current_target)


def _join(rest: str, target: str | None) -> InputResult:
    args = _split(rest, 2)
    if not args:
        return InputResult(target=target, message="Usage: /join #channel [key]")
    channel = normalize_channel(args[0])
    key = args[1] if len(args) > 1 else None
    return InputResult(Join(channel, key), channel, f"Joining channel: {channel}")


def _part(rest: str, target: str | None) -> InputResult:
    args = _split(rest, 2)
    if args and args[0][0] in "#&+!":
        channel, reason = args[0], (args[1] if len(args) > 1 else None)
    elif target:
        channel, reason = target, rest or None
    else:
        return InputResult(target=target, message="Usage: /part [#channel] [reason]")
    new_target = None if target == channel else target
    return InputResult(Part(channel, reason), new_target, f"Leaving channel: {channel}")


def _msg(rest: str, target: str | None) -> InputResult:
    args = _split(rest, 2)
    if len(args) != 2:
        return InputResult(target=target, message="Usage: /msg target message")
    return InputResult(SendMessage(args[0], args[1]), target, f"-> *{args[0]}* {args[1]}")


def _notice(rest: str, target: str | None) -> InputResult:
    args = _split(rest, 2)
    if len(args) != 2:
        return InputResult(target=target, message="Usage: /notice target message")
    return InputResult(SendNotice(args[0], args[1]), target, f"-> -{args[0]}- {args[1]}")


def _me(rest: str, target: str | None) -> InputResult:
    if not rest or not target:
        return InputResult(target=target, message="Usage: /me action (needs a current target)")
    return InputResult(SendAction(target, rest), target, f"* {rest}")


def _nick(rest: str, target: str | None) -> InputResult:
    args = _split(rest, 2)
    if len(args) != 1:
        return InputResult(target=target, message="Usage: /nick newnick")
    return InputResult(ChangeNick(args[0]), target)


def _nickserv(rest: str, target: str | None) -> InputResult:
    if not rest:
        return InputResult(target=target, message="Usage: /nickserv command")
    return InputResult(SendMessage("NickServ", rest), target, f"-> *NickServ* {rest}")


def _raw(rest: str, target: str | None) -> InputResult:
    if not rest:
        return InputResult(target=target, message="Usage: /raw LINE")
    return InputResult(SendRaw(rest), target)


def _connect(rest: str, target: str | None) -> InputResult:
    args = rest.split()
    if not args or len(args) > 3:
        return InputResult(target=target, message="Usage: /connect host [port] [tls]")
    host = args[0]
    port: int | None = None
    tls = False
    for arg in args[1:]:
        if arg.lower() in ("tls", "ssl"):
            tls = True
        elif arg.lstrip("+").isdigit():
            # "+6697" is the usual shorthand for a TLS port.
            tls = tls or arg.startswith("+")
            port = int(arg.lstrip("+"))
        else:
            return InputResult(target=target, message="Usage: /connect host [port] [tls]")
    if port is not None and not 0 < port < 65536:
        return InputResult(target=target, message=f"Invalid port: {port}")
    return InputResult(Connect(host, port, tls), target, f"Connecting to {host}")


def _quit(rest: str, target: str | None) -> InputResult:
    return InputResult(Quit(rest or None), target)


def _help(rest: str, target: str | None) -> InputResult:
    return InputResult(target=target, message=help_text())


_HANDLERS = {
    "join": _join,
    "j": _join,
    "part": _part,
    "leave": _part,
    "msg": _msg,
    "query": _msg,
    "notice": _notice,
    "me": _me,
    "nick": _nick,
    "nickserv": _nickserv,
    "ns": _nickserv,
    "raw": _raw,
    "quote": _raw,
    "connect": _connect,
    "server": _connect,
    "quit": _quit,
    "exit": _quit,
    "help": _help,
}
