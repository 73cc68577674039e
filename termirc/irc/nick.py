"""Alternate nickname policy used when the preferred nick is taken."""

from __future__ import annotations


def alternate_nick(base: str, attempt: int, nicklen: int | None = None) -> str:
    """Return the nick to try on the given retry (1-based).

    Underscores are appended, one per attempt (``a_``, ``a__``, ...). When
    the server's NICKLEN is known and would be exceeded, the tail of the
    base nick is replaced by the attempt number instead.
    """
    if attempt <= 0:
        return base
    candidate = base + "_" * attempt
    if nicklen is None or len(candidate) <= nicklen:
        return candidate
    suffix = str(attempt)
    return base[: max(1, nicklen - len(suffix))] + suffix
