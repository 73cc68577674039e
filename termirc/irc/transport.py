"""Byte-stream transport: TCP, optionally TLS-wrapped."""

from __future__ import annotations

import asyncio
import logging
import ssl
from typing import Protocol

from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from ..constants import CLOSE_TIMEOUT, READ_CHUNK_SIZE
from ..errors.handling import wrap_transport_error
from ..errors.internal import TransportError
from ..logs.logger import logger


class Transport(Protocol):
    """What the supervisor needs from a connection.

    ``read`` returns ``b""`` at end of stream and raises on failure.
    """

    async def read(self) -> bytes: ...

    async def write(self, data: bytes) -> None: ...

    async def close(self) -> None: ...


class StreamTransport:
    """Transport over an asyncio reader/writer pair."""

    def __init__(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        host: str = "",
        port: int = 0,
        close_timeout: float = CLOSE_TIMEOUT,
    ) -> None:
        self.reader = reader
        self.writer = writer
        self.host = host
        self.port = port
        self.close_timeout = close_timeout
        self._closed = False

    async def read(self) -> bytes:
        try:
            return await self.reader.read(READ_CHUNK_SIZE)
        except (OSError, ssl.SSLError) as e:
            raise wrap_transport_error(e, host=self.host, port=self.port) from e

    async def write(self, data: bytes) -> None:
        if self._closed:
            raise TransportError("write on closed transport")
        try:
            self.writer.write(data)
            await self.writer.drain()
        except (OSError, ssl.SSLError) as e:
            raise wrap_transport_error(e, host=self.host, port=self.port) from e

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self.writer.close()
            async with asyncio.timeout(self.close_timeout):
                await self.writer.wait_closed()
        except TimeoutError:
            # Stalled TLS shutdown.
            self.writer.transport.abort()
            logger.log_event(
                "irc", "close_error", level=logging.DEBUG, error=f"aborted after {self.close_timeout}s"
            )
        except (OSError, ssl.SSLError) as e:
            # Peer already gone.
            logger.log_event("irc", "close_error", level=logging.DEBUG, error=str(e))


def _is_transient(error: BaseException) -> bool:
    # Certificate failures are not transient.
    if isinstance(error, ssl.SSLCertVerificationError):
        return False
    return isinstance(error, OSError | TimeoutError)


def build_ssl_context(verify: bool = True) -> ssl.SSLContext:
    context = ssl.create_default_context()
    if not verify:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    return context


async def open_transport(
    host: str,
    port: int,
    tls: bool = False,
    *,
    tls_verify: bool = True,
    timeout: float = 15.0,
    attempts: int = 2,
) -> StreamTransport:
    """Connect to ``host:port``.

    Transient ``OSError`` / timeouts are retried ``attempts`` times with a
    short exponential wait; the reconnect backoff in the supervisor handles
    anything longer. Failures surface as :class:`TransportError`.
    """
    context = build_ssl_context(tls_verify) if tls else None

    async def _connect() -> StreamTransport:
        logger.log_event(
            "irc", "connect_attempt", level=logging.DEBUG, host=host, port=port, tls=tls
        )
        reader, writer = await asyncio.wait_for(
            asyncio.open_connection(
                host, port, ssl=context, server_hostname=host if context else None
            ),
            timeout=timeout,
        )
        return StreamTransport(reader, writer, host, port)

    retrying = AsyncRetrying(
        stop=stop_after_attempt(max(1, attempts)),
        wait=wait_exponential(multiplier=0.5, max=4),
        retry=retry_if_exception(_is_transient),
        reraise=True,
    )
    try:
        return await retrying(_connect)
    except (OSError, TimeoutError, ssl.SSLError) as e:
        raise wrap_transport_error(e, host=host, port=port) from e
