import base64

import pytest

from termirc.config.model import SaslConfig
from termirc.irc.capabilities import (
    CapNegotiator,
    SaslPlain,
    encode_authenticate,
    mechanism_from_config,
    parse_cap_list,
)
from termirc.irc.message import parse, serialize


def test_parse_cap_list_values():
    assert parse_cap_list("sasl=PLAIN,EXTERNAL multi-prefix") == {
        "sasl": "PLAIN,EXTERNAL",
        "multi-prefix": None,
    }


def test_authenticate_chunks_of_400():
    payload = b"x" * 600  # 800 base64 characters
    chunks = encode_authenticate(payload)
    assert [len(c) for c in chunks] == [400, 400, 1]
    assert chunks[-1] == "+"
    assert base64.b64decode("".join(chunks[:-1])) == payload


def test_authenticate_short_last_chunk_needs_no_plus():
    chunks = encode_authenticate(b"x" * 400)
    assert [len(c) for c in chunks] == [400, 136]
    assert base64.b64decode("".join(chunks)) == b"x" * 400


def test_authenticate_exact_multiple_ends_with_plus():
    payload = b"x" * 300  # 400 base64 characters
    assert encode_authenticate(payload)[-1] == "+"
    assert encode_authenticate(b"") == ["+"]


def test_plain_response():
    assert SaslPlain("acct", "pw").respond(b"") == b"acct\0acct\0pw"


def test_unsupported_mechanism():
    with pytest.raises(ValueError):
        mechanism_from_config(SaslConfig(mechanism="SCRAM-SHA-256", username="a", password="b"))
    assert mechanism_from_config(None) is None


def test_long_request_split_across_lines():
    names = [f"vendor.example/capability-{i:02d}" for i in range(20)]
    negotiator = CapNegotiator(frozenset(names))
    negotiator.start()
    requests = negotiator.handle(parse(f"CAP * LS :{' '.join(names)}"))
    assert len(requests) > 1
    assert all(len(serialize(m)) <= 510 for m in requests)
    requested = " ".join(m.params[-1] for m in requests).split()
    assert requested == sorted(names)


def test_sasl_abort_on_bad_challenge():
    negotiator = CapNegotiator(frozenset(), SaslPlain("a", "b"))
    negotiator.handle(parse("CAP * LS :sasl"))
    assert serialize(negotiator.handle(parse("CAP a ACK :sasl"))[0]) == b"AUTHENTICATE PLAIN"
    reply = negotiator.handle_sasl(parse("AUTHENTICATE !!notbase64"))
    assert [serialize(m) for m in reply] == [b"AUTHENTICATE *"]
