#!/usr/bin/env python3
"""
Line-mode console for the termirc engine.

Prints engine events to stdout and reads slash commands from stdin. A real
terminal UI replaces this module; it only exercises the consumer side of the
command and event channels.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
import threading
from collections.abc import Sequence
from typing import TextIO

from pydantic import ValidationError

from .channels import ChannelClosed
from .config.model import EngineConfig
from .engine import EngineThread, IRCEngine
from .errors.handling import log_error
from .input_parser import help_text, parse_input
from .irc.commands import Quit
from .irc.events import (
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
from .irc.session import DiffKind
from .logging_config import LoggerConfigurator


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    env = os.environ
    parser = argparse.ArgumentParser(prog="termirc", description="Terminal IRC client")
    parser.add_argument("host", nargs="?", default=env.get("TERMIRC_SERVER"), help="Server host")
    parser.add_argument("-p", "--port", type=int, default=None, help="Server port")
    parser.add_argument("--tls", action="store_true", help="Connect with TLS")
    parser.add_argument(
        "--no-verify", action="store_true", help="Skip TLS certificate verification"
    )
    parser.add_argument("-n", "--nick", default=env.get("TERMIRC_NICK"), help="Nickname")
    parser.add_argument("--username", default=None, help="USER name (defaults to nick)")
    parser.add_argument("--realname", default=None, help="Real name (defaults to nick)")
    parser.add_argument("--password", default=env.get("TERMIRC_PASSWORD"), help="Server password")
    parser.add_argument(
        "-c", "--channel", action="append", default=[], help="Channel to join (repeatable)"
    )
    parser.add_argument("--sasl-user", default=None, help="SASL PLAIN account name")
    parser.add_argument(
        "--sasl-password", default=env.get("TERMIRC_SASL_PASSWORD"), help="SASL PLAIN password"
    )
    parser.add_argument("--debug", action="store_true", help="Verbose logging")
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> EngineConfig:
    data: dict[str, object] = {
        "nickname": args.nick or "",
        "channels": args.channel,
    }
    for key in ("username", "realname", "password"):
        if getattr(args, key):
            data[key] = getattr(args, key)
    if args.host:
        server: dict[str, object] = {
            "host": args.host,
            "tls": args.tls,
            "tls_verify": not args.no_verify,
        }
        if args.port is not None:
            server["port"] = args.port
        data["server"] = server
    if args.sasl_user and args.sasl_password:
        data["sasl"] = {"username": args.sasl_user, "password": args.sasl_password}
    return EngineConfig.from_dict(data)


def format_event(event: Event) -> str | None:
    """One console line per event; None for events not worth showing."""
    match event:
        case Connected(host=host, port=port, tls=tls):
            return f"*** Connected to {host}:{port}{' (tls)' if tls else ''}"
        case Registered(nick=nick):
            return f"*** Registered as {nick}"
        case CapabilityChanged(capabilities=caps):
            return f"*** Capabilities: {' '.join(sorted(caps)) or '(none)'}"
        case ChannelJoined(name=name):
            return f"*** Joined {name}"
        case ChannelLeft(name=name, reason=reason):
            return f"*** Left {name}" + (f" ({reason})" if reason else "")
        case ChannelUpdated(name=name, diff=diff):
            return _format_diff(name, diff)
        case NickChanged(old=old, new=new):
            return f"*** You are now known as {new} (was {old})"
        case MessageReceived() if event.is_action:
            return f"[{event.target}] * {event.source} {event.text}"
        case MessageReceived(kind="NOTICE"):
            flag = " [services]" if event.from_services else ""
            return f"-{event.source or 'server'}-{flag} {event.text}"
        case MessageReceived():
            return f"[{event.target}] <{event.source}> {event.text}"
        case ParseAnomaly(reason=reason):
            return f"!!! Ignored malformed line: {reason}"
        case RawUnhandled(message=message):
            if message.is_numeric and len(message.params) > 1:
                return f"--- {' '.join(message.params[1:])}"
            return None
        case Disconnected(reason=reason, will_reconnect=again):
            return f"*** Disconnected: {reason}" + (" (reconnecting)" if again else "")
        case FatalError(kind=kind, detail=detail):
            return f"!!! Fatal: {kind}" + (f": {detail}" if detail else "")
    return None


def _format_diff(name, diff) -> str | None:
    if diff.kind is DiffKind.MEMBER_JOINED:
        return f"*** {diff.nick} joined {name}"
    if diff.kind is DiffKind.MEMBER_LEFT:
        return f"*** {diff.nick} left {name}" + (f" ({diff.reason})" if diff.reason else "")
    if diff.kind is DiffKind.MEMBER_RENAMED:
        return f"*** {diff.old_nick} is now known as {diff.nick}"
    if diff.kind is DiffKind.TOPIC:
        return f"*** Topic for {name}: {diff.topic or '(none)'}"
    if diff.kind is DiffKind.NAMES:
        return f"*** Users in {name}: {' '.join(diff.members)}"
    if diff.kind is DiffKind.MODES:
        added = "".join(m for m, _ in diff.modes_added)
        removed = "".join(m for m, _ in diff.modes_removed)
        text = (f"+{added}" if added else "") + (f"-{removed}" if removed else "")
        return f"*** Mode {name} {text}"
    return None


class ConsoleInput:
    """Reads stdin on a daemon thread and feeds the engine."""

    def __init__(self, runner: EngineThread, target: str | None, stream: TextIO = sys.stdin):
        self.runner = runner
        self.target = target
        self.stream = stream
        self._thread = threading.Thread(target=self._loop, name="termirc-input", daemon=True)

    def start(self) -> None:
        self._thread.start()

    def _loop(self) -> None:
        for line in self.stream:
            result = parse_input(line, self.target)
            self.target = result.target
            if result.message:
                print(result.message, flush=True)
            if result.command is None:
                continue
            try:
                self.runner.submit(result.command)
            except ChannelClosed:
                return
            if isinstance(result.command, Quit):
                return
        # EOF
        try:
            self.runner.submit(Quit())
        except ChannelClosed:
            return


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    if args.debug:
        os.environ["DEBUG"] = "true"
    LoggerConfigurator({"summary_on_exit": False}).configure()

    try:
        config = build_config(args)
    except ValidationError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        return 2

    if config.server is None:
        print("No server given; use /connect host [port] [tls]")
    print(help_text())

    runner = EngineThread(IRCEngine(config))
    console = ConsoleInput(runner, config.channels[0] if config.channels else None)
    runner.start()
    console.start()

    exit_code = 0
    try:
        for event in runner.events:
            line = format_event(event)
            if line:
                print(line, flush=True)
            if isinstance(event, FatalError):
                exit_code = 1
    except KeyboardInterrupt:
        runner.stop(timeout=config.quit_grace + 1)
    runner.join(timeout=config.quit_grace + 1)
    if runner.error is not None:
        log_error("Engine crashed", runner.error)
        exit_code = 1
    logging.info("✅ Client shutdown complete")
    return exit_code


def run() -> None:
    """Synchronous entry point for the console script."""
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        sys.exit(0)


if __name__ == "__main__":
    run()
