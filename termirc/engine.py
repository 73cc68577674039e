"""Connection supervisor.

:class:`IRCEngine` owns the transport, the protocol state machine, the
outbound rate limiter and the reconnect backoff. One asyncio task runs
:meth:`IRCEngine.run`; it suspends only on transport reads, the next timer
deadline and incoming commands, and it is the only code that touches the
session state. Consumers see the engine through its command and event
channels.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import threading
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from random import SystemRandom

from .channels import ChannelClosed, CommandChannel, EventChannel
from .config.model import EngineConfig, ServerConfig
from .errors.handling import log_error
from .errors.internal import EngineError, ReconnectExhausted, TransportError
from .irc.commands import Command, Connect, Quit
from .irc.events import Connected, Disconnected, Event, FatalError, Registered
from .irc.framer import LineFramer
from .irc.message import Message, build
from .irc.session import Session
from .irc.state_machine import Action, Close, Emit, ProtocolStateMachine, Send
from .irc.transport import Transport, open_transport
from .logs.logger import logger
from .rate.backoff_strategy import ReconnectBackoff
from .rate.rate_limiter import OutboundRateLimiter

TransportFactory = Callable[[ServerConfig], Awaitable[Transport]]


@dataclass(frozen=True, slots=True)
class _Outcome:
    """Why one connection ended."""

    reason: str
    final: bool = False
    error: EngineError | None = None
    linger: float = 0.0
    switch_to: ServerConfig | None = None


async def default_transport_factory(server: ServerConfig) -> Transport:
    return await open_transport(
        server.host,
        server.effective_port,
        server.tls,
        tls_verify=server.tls_verify,
        timeout=server.connect_timeout,
        attempts=server.connect_attempts,
    )


class IRCEngine:
    def __init__(
        self,
        config: EngineConfig,
        *,
        transport_factory: TransportFactory | None = None,
        clock: Callable[[], float] = time.monotonic,
        commands: CommandChannel | None = None,
        events: EventChannel | None = None,
        rng: SystemRandom | None = None,
    ) -> None:
        self.config = config
        self.server: ServerConfig | None = config.server
        self.clock = clock
        self.commands = commands or CommandChannel()
        self.events = events or EventChannel()
        self.machine = ProtocolStateMachine(config, clock)
        self.limiter: OutboundRateLimiter[Message] = OutboundRateLimiter(
            config.rate_limit.interval, config.rate_limit.burst, clock
        )
        self.limiter.pause()
        self.backoff = ReconnectBackoff(
            config.reconnect.base_delay,
            config.reconnect.max_delay,
            config.reconnect.max_attempts,
            config.reconnect.jitter,
            rng=rng,
        )
        self._transport_factory = transport_factory or default_transport_factory
        self._transport: Transport | None = None
        self._framer = LineFramer()
        self._reconnect_cancelled = False
        self._quit_requested: str | None = None
        self._fatal_emitted = False
        self._running = False

    # ------------------------------------------------------------------ #
    # consumer-facing controls (thread-safe)
    # ------------------------------------------------------------------ #
    def submit(self, command: Command) -> None:
        self.commands.submit(command)

    def cancel_reconnect(self) -> None:
        """Abandon a scheduled reconnect; the engine then waits for ``Connect``."""
        self._reconnect_cancelled = True
        self.commands.poke()

    @property
    def running(self) -> bool:
        return self._running

    @property
    def session(self) -> Session:
        return self.machine.session

    # ------------------------------------------------------------------ #
    # main loop
    # ------------------------------------------------------------------ #
    async def run(self) -> None:
        self.commands.bind(asyncio.get_running_loop())
        self._running = True
        logger.log_event("engine", "start", nick=self.config.nickname)
        try:
            await self._supervise()
        except Exception as e:
            log_error("Engine stopped unexpectedly", e)
            self._fatal("internal_error", str(e) or type(e).__name__)
            raise
        finally:
            if self._transport is not None:
                await self._close_transport()
            self.limiter.clear()
            self._running = False
            self.commands.close()
            self.events.close()
            logger.log_event("engine", "stopped")

    async def _supervise(self) -> None:
        while True:
            if self.server is None:
                if not await self._idle():
                    return
            assert self.server is not None
            outcome = await self._run_connection(self.server)

            if outcome.switch_to is not None:
                self._emit(Disconnected(outcome.reason, will_reconnect=True))
                self.server = outcome.switch_to
                self.backoff.reset()
                continue

            error = outcome.error
            if outcome.final or self._quit_requested is not None:
                self._emit(Disconnected(outcome.reason, will_reconnect=False))
                if error is not None and error.fatal:
                    self._fatal(error.kind, str(error))
                return

            if self.backoff.exhausted:
                self._emit(Disconnected(outcome.reason, will_reconnect=False))
                exhausted = ReconnectExhausted(
                    f"gave up after {self.backoff.attempt} reconnect attempts",
                    data={"last_error": outcome.reason},
                )
                log_error("Reconnect attempts exhausted", exhausted)
                self._fatal(exhausted.kind, str(exhausted))
                return

            self._emit(Disconnected(outcome.reason, will_reconnect=True))
            delay = self.backoff.next_delay()
            logger.log_event(
                "engine",
                "reconnect_scheduled",
                delay=round(delay, 2),
                attempt=self.backoff.attempt,
                host=self.server.host,
            )
            if not await self._wait_reconnect(delay):
                return

    async def _wait_reconnect(self, delay: float) -> bool:
        """Sleep out the backoff delay while serving commands.

        Returns False when the engine should stop.
        """
        deadline = self.clock() + delay
        while True:
            if self._reconnect_cancelled:
                logger.log_event("engine", "reconnect_cancelled")
                self._reconnect_cancelled = False
                self.server = None
                return await self._idle()
            remaining = deadline - self.clock()
            if remaining <= 0:
                return True
            try:
                await asyncio.wait_for(self.commands.wait(), timeout=remaining)
            except TimeoutError:
                return True
            verdict = self._serve_offline()
            if verdict is not None:
                return verdict

    async def _idle(self) -> bool:
        """Wait for a ``Connect`` while disconnected. False means stop."""
        logger.log_event("engine", "idle", level=logging.DEBUG)
        while True:
            await self.commands.wait()
            verdict = self._serve_offline()
            if verdict is not None:
                return verdict

    def _serve_offline(self) -> bool | None:
        """Handle commands while no transport is open.

        True: connect now. False: stop. None: keep waiting.
        """
        while (command := self.commands.get_nowait()) is not None:
            if isinstance(command, Quit):
                self._quit_requested = command.reason or ""
                return False
            if isinstance(command, Connect):
                self.server = _server_from(command, self.server or self.config.server)
                self.backoff.reset()
                return True
            self._apply_offline(self.machine.submit(command))
        if self.commands.closed:
            self._quit_requested = ""
            return False
        return None

    def _apply_offline(self, actions: list[Action]) -> None:
        for action in actions:
            if isinstance(action, Send) and not action.urgent:
                self.limiter.submit(action.message)
            elif isinstance(action, Emit):
                self._emit(action.event)

    # ------------------------------------------------------------------ #
    # one connection
    # ------------------------------------------------------------------ #
    async def _run_connection(self, server: ServerConfig) -> _Outcome:
        # A cancel issued from here on applies to the reconnect after this connection.
        self._reconnect_cancelled = False
        self.machine.server = server.host
        self.machine.connect_requested()
        logger.log_event(
            "engine",
            "connecting",
            host=server.host,
            port=server.effective_port,
            tls=server.tls,
        )
        try:
            self._transport = await self._transport_factory(server)
        except TransportError as e:
            log_error("Connection attempt failed", e, level=logging.WARNING)
            self.machine.connection_lost(str(e))
            return _Outcome(str(e), error=e)

        self._framer.reset()
        self._emit(Connected(server.host, server.effective_port, server.tls))
        logger.log_event("engine", "connected", host=server.host, port=server.effective_port)

        outcome = await self._execute(self.machine.connection_made())
        if outcome is None:
            outcome = await self._pump(self._transport)
        await self._teardown(outcome)
        return outcome

    async def _pump(self, transport: Transport) -> _Outcome:
        read_task: asyncio.Task | None = None
        wait_task: asyncio.Task | None = None
        try:
            while True:
                if read_task is None:
                    read_task = asyncio.ensure_future(transport.read())
                if wait_task is None:
                    wait_task = asyncio.ensure_future(self.commands.wait())
                done, _ = await asyncio.wait(
                    {read_task, wait_task},
                    timeout=self._next_timeout(),
                    return_when=asyncio.FIRST_COMPLETED,
                )

                if read_task in done:
                    task, read_task = read_task, None
                    outcome = await self._on_read(task)
                    if outcome is not None:
                        return outcome

                if wait_task in done:
                    wait_task = None
                    outcome = await self._drain_commands()
                    if outcome is not None:
                        return outcome

                outcome = await self._execute(self.machine.tick())
                if outcome is not None:
                    return outcome
        finally:
            for task in (read_task, wait_task):
                if task is not None and not task.done():
                    task.cancel()

    async def _on_read(self, task: asyncio.Task) -> _Outcome | None:
        try:
            data = task.result()
        except TransportError as e:
            log_error("Read failed", e, level=logging.WARNING)
            return _Outcome(str(e), error=e)
        if not data:
            reason = "connection closed by server"
            return _Outcome(reason, error=TransportError(reason))
        self._framer.feed(data)
        for line in self._framer.lines():
            outcome = await self._execute(self.machine.line_received(line))
            if outcome is not None:
                return outcome
        return None

    async def _drain_commands(self) -> _Outcome | None:
        while (command := self.commands.get_nowait()) is not None:
            if isinstance(command, Connect):
                return await self._switch(command)
            if isinstance(command, Quit):
                self._quit_requested = command.reason or ""
            outcome = await self._execute(self.machine.submit(command))
            if outcome is not None:
                return outcome
        if self.commands.closed and self._quit_requested is None:
            self._quit_requested = ""
            return await self._execute(self.machine.quit())
        return None

    async def _switch(self, command: Connect) -> _Outcome:
        target = _server_from(command, self.server or self.config.server)
        logger.log_event("engine", "switch_server", host=target.host, port=target.effective_port)
        await self._write(build("QUIT", "Changing server", trailing=True))
        return _Outcome(f"switching to {target.host}", switch_to=target)

    def _next_timeout(self) -> float | None:
        deadlines = [
            d for d in (self.machine.next_deadline(), self.limiter.next_release()) if d is not None
        ]
        if not deadlines:
            return None
        return max(0.0, min(deadlines) - self.clock())

    # ------------------------------------------------------------------ #
    # actions
    # ------------------------------------------------------------------ #
    async def _execute(self, actions: list[Action]) -> _Outcome | None:
        for action in actions:
            if isinstance(action, Send):
                if action.urgent:
                    if action.message.verb == "QUIT":
                        outcome = await self._drain_backlog(self.config.quit_grace)
                        if outcome is not None:
                            return outcome
                    outcome = await self._write(action.message)
                    if outcome is not None:
                        return outcome
                else:
                    self.limiter.submit(action.message)
            elif isinstance(action, Emit):
                if isinstance(action.event, Registered):
                    self.backoff.reset()
                    self.limiter.resume()
                self._emit(action.event)
            elif isinstance(action, Close):
                return _Outcome(action.reason, action.final, action.error, action.linger)
        return await self._flush_limiter()

    async def _flush_limiter(self) -> _Outcome | None:
        for message in self.limiter.release():
            outcome = await self._write(message)
            if outcome is not None:
                return outcome
        return None

    async def _drain_backlog(self, grace: float) -> _Outcome | None:
        """Before QUIT, send what the limiter still holds at its usual pace.

        Lines still queued after ``grace`` seconds are dropped.
        """
        if self.limiter.paused or not len(self.limiter):
            return None
        try:
            async with asyncio.timeout(grace):
                while len(self.limiter):
                    await self.limiter.wait_ready()
                    outcome = await self._flush_limiter()
                    if outcome is not None:
                        return outcome
        except TimeoutError:
            self.limiter.clear()
        return None

    async def _write(self, message: Message) -> _Outcome | None:
        if self._transport is None:
            return None
        try:
            data = message.to_line()
        except ValueError as e:
            log_error("Dropped unsendable message", e, {"command": message.command}, logging.WARNING)
            return None
        try:
            await self._transport.write(data)
        except TransportError as e:
            log_error("Write failed", e, level=logging.WARNING)
            return _Outcome(str(e), error=e)
        logger.log_event(
            "engine", "sent", level=logging.DEBUG, server=self.machine.server, line=str(message)[:200]
        )
        return None

    def _emit(self, event: Event) -> None:
        try:
            self.events.put(event)
        except ChannelClosed:
            logger.log_event(
                "engine", "event_dropped", level=logging.DEBUG, event=type(event).__name__
            )

    def _fatal(self, kind: str, detail: str) -> None:
        if self._fatal_emitted:
            return
        self._fatal_emitted = True
        logger.log_event("engine", "fatal", level=logging.ERROR, kind=kind, detail=detail)
        self._emit(FatalError(kind, detail))

    # ------------------------------------------------------------------ #
    # teardown
    # ------------------------------------------------------------------ #
    async def _teardown(self, outcome: _Outcome) -> None:
        if outcome.linger > 0 and self._transport is not None:
            await self._linger(self._transport, outcome.linger)
        await self._close_transport()
        self.limiter.pause()
        for action in self.machine.connection_lost(outcome.reason):
            if isinstance(action, Emit):
                self._emit(action.event)
        logger.log_event("engine", "disconnected", reason=outcome.reason)

    async def _linger(self, transport: Transport, grace: float) -> None:
        """After QUIT, give the server ``grace`` seconds to close on its side."""
        try:
            async with asyncio.timeout(grace):
                while data := await transport.read():
                    self._framer.feed(data)
                    for line in self._framer.lines():
                        for action in self.machine.line_received(line):
                            if isinstance(action, Emit):
                                self._emit(action.event)
        except TimeoutError:
            logger.log_event("engine", "quit_grace_expired", level=logging.DEBUG, grace=grace)
        except TransportError as e:
            logger.log_event("engine", "quit_read_failed", level=logging.DEBUG, error=str(e))

    async def _close_transport(self) -> None:
        transport, self._transport = self._transport, None
        if transport is not None:
            await transport.close()


def _server_from(command: Connect, current: ServerConfig | None) -> ServerConfig:
    if current is not None:
        return current.model_copy(
            update={"host": command.host, "port": command.port, "tls": command.tls}
        )
    return ServerConfig(host=command.host, port=command.port, tls=command.tls)


class EngineThread:
    """Run an engine on its own thread and event loop for synchronous consumers."""

    def __init__(self, engine: IRCEngine, name: str = "termirc-engine") -> None:
        self.engine = engine
        self.error: BaseException | None = None
        self._thread = threading.Thread(target=self._main, name=name, daemon=True)

    @property
    def events(self) -> EventChannel:
        return self.engine.events

    def start(self) -> None:
        self._thread.start()

    def _main(self) -> None:
        try:
            asyncio.run(self.engine.run())
        except Exception as e:
            # run() already reported it as a FatalError event.
            self.error = e

    def submit(self, command: Command) -> None:
        self.engine.submit(command)

    def is_alive(self) -> bool:
        return self._thread.is_alive()

    def stop(self, reason: str | None = None, timeout: float | None = None) -> bool:
        """Ask the engine to quit and wait for the thread. True if it exited."""
        with contextlib.suppress(ChannelClosed):
            self.engine.submit(Quit(reason))
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def join(self, timeout: float | None = None) -> None:
        self._thread.join(timeout)
