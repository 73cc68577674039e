"""Splitting outbound text so every line fits the server's length limit."""

from __future__ import annotations

from collections.abc import Iterator


def split_text(text: str, max_bytes: int) -> Iterator[str]:
    """Yield pieces of ``text`` whose UTF-8 encoding fits in ``max_bytes``.

    Splits on the last space inside the budget when there is one, otherwise
    on a code point boundary. An empty string yields one empty piece.
    """
    if max_bytes <= 0:
        raise ValueError("max_bytes must be positive")
    if not text:
        yield ""
        return
    while text:
        if len(text.encode("utf-8", "surrogateescape")) <= max_bytes:
            yield text
            return
        cut = _fit(text, max_bytes)
        space = text.rfind(" ", 0, cut + 1)
        if space > 0:
            yield text[:space]
            text = text[space + 1 :]
        else:
            yield text[:cut]
            text = text[cut:]


def _fit(text: str, max_bytes: int) -> int:
    """Largest number of leading code points that encode within the budget."""
    size = 0
    for index, char in enumerate(text):
        size += len(char.encode("utf-8", "surrogateescape"))
        if size > max_bytes:
            return max(1, index)
    return len(text)
