import pytest

from termirc.input_parser import help_text, parse_input
from termirc.irc.commands import (
    ChangeNick,
    Connect,
    Join,
    Part,
    Quit,
    SendAction,
    SendMessage,
    SendNotice,
    SendRaw,
)


def test_plain_text_goes_to_current_target():
    result = parse_input("hello there\n", "#chan")
    assert result.command == SendMessage("#chan", "hello there")
    assert result.target == "#chan"


def test_plain_text_without_target_asks_for_join():
    result = parse_input("hello", None)
    assert result.command is None
    assert result.message == "Join a channel first with /join #channel"


def test_double_slash_sends_literal_slash():
    assert parse_input("//shrug", "#c").command == SendMessage("#c", "/shrug")


def test_blank_line_is_ignored():
    result = parse_input("   ", "#c")
    assert result.command is None and result.message is None


@pytest.mark.parametrize(
    ("line", "command", "target"),
    [
        ("/join chan", Join("#chan"), "#chan"),
        ("/j #chan secret", Join("#chan", "secret"), "#chan"),
        ("/JOIN #Chan", Join("#Chan"), "#Chan"),
    ],
)
def test_join_switches_target(line, command, target):
    result = parse_input(line, "#old")
    assert result.command == command
    assert result.target == target
    assert result.message == f"Joining channel: {target}"


def test_part_defaults_to_current_target():
    result = parse_input("/part see you", "#chan")
    assert result.command == Part("#chan", "see you")
    assert result.target is None


def test_part_other_channel_keeps_target():
    result = parse_input("/leave #other bye", "#chan")
    assert result.command == Part("#other", "bye")
    assert result.target == "#chan"


@pytest.mark.parametrize(
    ("line", "command"),
    [
        ("/msg bob hi there", SendMessage("bob", "hi there")),
        ("/query bob hi", SendMessage("bob", "hi")),
        ("/notice bob psst", SendNotice("bob", "psst")),
        ("/nick newnick", ChangeNick("newnick")),
        ("/ns IDENTIFY pw", SendMessage("NickServ", "IDENTIFY pw")),
        ("/raw WHOIS bob", SendRaw("WHOIS bob")),
        ("/quote MOTD", SendRaw("MOTD")),
        ("/quit bye all", Quit("bye all")),
        ("/exit", Quit(None)),
    ],
)
def test_commands(line, command):
    assert parse_input(line, "#chan").command == command


def test_me_needs_target():
    assert parse_input("/me waves", "#c").command == SendAction("#c", "waves")
    assert parse_input("/me waves", None).command is None


@pytest.mark.parametrize(
    ("line", "expected"),
    [
        ("/connect irc.example.net", Connect("irc.example.net", None, False)),
        ("/server irc.example.net 6667", Connect("irc.example.net", 6667, False)),
        ("/connect irc.example.net 6697 tls", Connect("irc.example.net", 6697, True)),
        ("/connect irc.example.net +6697", Connect("irc.example.net", 6697, True)),
        ("/connect irc.example.net ssl", Connect("irc.example.net", None, True)),
    ],
)
def test_connect(line, expected):
    assert parse_input(line).command == expected


@pytest.mark.parametrize(
    ("line", "usage"),
    [
        ("/join", "Usage: /join #channel [key]"),
        ("/msg bob", "Usage: /msg target message"),
        ("/notice", "Usage: /notice target message"),
        ("/nick a b", "Usage: /nick newnick"),
        ("/nickserv", "Usage: /nickserv command"),
        ("/raw", "Usage: /raw LINE"),
        ("/connect", "Usage: /connect host [port] [tls]"),
        ("/connect host notaport", "Usage: /connect host [port] [tls]"),
        ("/connect host 70000", "Invalid port: 70000"),
    ],
)
def test_usage_messages(line, usage):
    result = parse_input(line, "#c")
    assert result.command is None
    assert result.message == usage


def test_unknown_command():
    result = parse_input("/frobnicate now", "#c")
    assert result.command is None
    assert result.message == "Unknown command: /frobnicate (try /help)"
    assert result.target == "#c"


def test_help_lists_every_command():
    text = parse_input("/help").message
    assert text == help_text()
    for name in ("/join", "/part", "/msg", "/nick", "/nickserv", "/connect", "/quit"):
        assert name in text
