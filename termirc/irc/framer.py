"""Reassembles an arbitrarily chunked byte stream into protocol lines."""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass

from ..constants import MAX_LINE_LENGTH, MAX_TAGS_LENGTH


@dataclass(frozen=True, slots=True)
class RawLine:
    """One line without its terminator.

    ``truncated`` is set when the line was longer than the framer's bound and
    only its head was kept.
    """

    data: bytes
    truncated: bool = False


class LineFramer:
    """Incremental line splitter.

    CRLF, a bare LF and a bare CR all end a line; empty lines are skipped, so
    a CRLF split across two reads never yields a spurious line. Lines that
    start with ``@`` may use ``max_tags_length`` extra bytes for their tags.
    """

    def __init__(
        self,
        max_length: int = MAX_LINE_LENGTH,
        max_tags_length: int = MAX_TAGS_LENGTH,
    ) -> None:
        self.max_length = max_length
        self.max_tags_length = max_tags_length
        self._buffer = bytearray()
        # Set after an over-long line was emitted; bytes are dropped until
        # the next terminator.
        self._discarding = False

    @property
    def buffered(self) -> int:
        return len(self._buffer)

    def feed(self, chunk: bytes) -> None:
        if chunk:
            self._buffer += chunk

    def _limit_for(self, head: bytes | bytearray) -> int:
        if head[:1] == b"@":
            return self.max_length + self.max_tags_length
        return self.max_length

    def _find_terminator(self) -> int:
        cr = self._buffer.find(b"\r")
        lf = self._buffer.find(b"\n")
        if cr < 0:
            return lf
        if lf < 0:
            return cr
        return min(cr, lf)

    def lines(self) -> Iterator[RawLine]:
        """Yield every complete line buffered so far.

        The generator consumes lazily; lines not yet pulled stay buffered and
        a later call (after more ``feed``) continues where this one stopped.
        """
        while True:
            end = self._find_terminator()
            if end < 0:
                overflow = self._take_overflow()
                if overflow is not None:
                    yield overflow
                return
            data = bytes(self._buffer[:end])
            del self._buffer[: end + 1]
            if self._discarding:
                self._discarding = False
                continue
            if not data:
                continue
            limit = self._limit_for(data)
            if len(data) > limit:
                yield RawLine(data[:limit], truncated=True)
            else:
                yield RawLine(data)

    def _take_overflow(self) -> RawLine | None:
        """Cut the head off an unterminated line that already exceeds the bound."""
        if self._discarding:
            self._buffer.clear()
            return None
        limit = self._limit_for(self._buffer)
        if len(self._buffer) <= limit:
            return None
        line = RawLine(bytes(self._buffer[:limit]), truncated=True)
        self._buffer.clear()
        self._discarding = True
        return line

    def feed_lines(self, chunk: bytes) -> list[RawLine]:
        self.feed(chunk)
        return list(self.lines())

    def reset(self) -> None:
        self._buffer.clear()
        self._discarding = False
