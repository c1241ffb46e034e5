"""IRC client component.

Manages a single connection to an IRC server: registers with it, runs the read,
write and keepalive loops, and exposes the commands an application needs.

The data flow is:

  stream -> read loop -> parse -> Dispatcher -> handlers
  handlers/application/keepalive -> outbound queue -> write loop -> stream

The transport stream is only ever read by the read loop and written by the
write loop. Everything else talks to it through the outbound queue.
"""

# SPDX-FileCopyrightText: Faidon Liambotis
# SPDX-FileCopyrightText: Wikimedia Foundation
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import asyncio
import errno
import ssl
import time
from typing import Any, Optional

import prometheus_client
import structlog
from prometheus_client import Counter, Gauge

from ._version import __version__
from .dispatcher import Dispatcher, Handler
from .keepalive import KeepaliveMonitor
from .message import (
    JOIN,
    MAX_LINE_LENGTH,
    NICK,
    NOTICE,
    PART,
    PASS,
    PING,
    PRIVMSG,
    QUIT,
    RPL,
    TERMINATOR,
    USER,
    FramingError,
    IRCNumeric,
    compose,
    parse,
    strip_terminator,
)
from .session import ConnectionState, NickTracker, register_builtins

logger = structlog.get_logger()

IRC_VERSION = f"ircevent {__version__}"


class ClientError(Exception):
    """Base class for errors raised by the client."""


class NotConnectedError(ClientError):
    """Raised when an operation is not valid in the current connection state."""


class IRCClient:
    """A client connection to an IRC server.

    Created disconnected; call ``connect()`` (or ``bind()`` with an already
    established stream) to start a session, and ``serve()`` to wait until the
    transport fails. ``disconnect()`` and ``quit()`` end the session; a new one
    can be started afterwards on the same instance.
    """

    # number of background loops, each signalling once on exit
    LOOPS = ("read", "write", "keepalive")

    def __init__(
        self,
        nick: str,
        username: str,
        password: str | None = None,
        version: str = IRC_VERSION,
        queue_size: int = 10,
        check_interval: float = 60,
        idle_timeout: float = 240,
        recapture_interval: float = 900,
    ) -> None:
        self.username = username
        self.password = password
        self.version = version
        self.queue_size = queue_size
        self.keepalive_timings = {
            "check_interval": check_interval,
            "idle_timeout": idle_timeout,
            "recapture_interval": recapture_interval,
        }

        self.log = logger.new()
        self.state = ConnectionState.DISCONNECTED
        self.nick_tracker = NickTracker(nick)
        self.last_message = time.monotonic()

        self.reader: asyncio.StreamReader | None = None
        self.writer: asyncio.StreamWriter | None = None
        self.keepalive: KeepaliveMonitor | None = None
        self._outbound: asyncio.Queue[Optional[str]] | None = None
        self._outbound_closed = True
        self._errors: asyncio.Queue[Optional[BaseException]] | None = None
        self._exits: asyncio.Queue[str] | None = None
        self._tasks: dict[str, asyncio.Task[Any]] = {}

        registry = prometheus_client.CollectorRegistry()
        self.metrics: dict[str, Any] = {
            "received": Counter("ircevent_messages_received", "Count of lines received", registry=registry),
            "sent": Counter("ircevent_messages_sent", "Count of lines sent", registry=registry),
            "handlers": Counter("ircevent_handler_invocations", "Count of handlers invoked", registry=registry),
            "errors": Counter("ircevent_errors", "Count of errors and exceptions", ["type"], registry=registry),
            "outbound": Gauge("ircevent_outbound_queue", "Number of lines pending to be sent", registry=registry),
        }
        self.metrics["outbound"].set_function(lambda: self._outbound.qsize() if self._outbound else 0)
        self.metrics_registry = registry

        self.dispatcher = Dispatcher(on_failure=self.metrics["errors"].labels("handler").inc)
        register_builtins(self)

    async def connect(self, host: str, port: int = 6667, ssl_context: ssl.SSLContext | None = None) -> None:
        """Connect to a server and start the session.

        If an SSL context is given, the connection is established over TLS.
        """
        self._check_state(ConnectionState.DISCONNECTED)
        self.log = logger.new().bind(server=host, port=port, tls=ssl_context is not None)
        self.log.info("Connecting")
        # RFC 1459 says length is 512 (including CRLF) - set limit to handle more, as implementations vary
        reader, writer = await asyncio.open_connection(
            host, port, ssl=ssl_context, limit=MAX_LINE_LENGTH * 2
        )
        await self.bind(reader, writer)

    async def bind(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        """Start the session over an already established stream."""
        self._check_state(ConnectionState.DISCONNECTED)
        self.reader, self.writer = reader, writer
        self.state = ConnectionState.REGISTERING

        self._outbound = asyncio.Queue(maxsize=self.queue_size)
        self._outbound_closed = False
        self._errors = asyncio.Queue(maxsize=2)
        self._exits = asyncio.Queue()
        self.nick_tracker.reset()
        self.last_message = time.monotonic()
        self.keepalive = KeepaliveMonitor(
            idle_for=lambda: time.monotonic() - self.last_message,
            ping=self.ping,
            recapture=self._recapture_nick,
            **self.keepalive_timings,
        )

        self._tasks = {
            "read": asyncio.create_task(self._run_loop("read", self._read_loop())),
            "write": asyncio.create_task(self._run_loop("write", self._write_loop())),
            "keepalive": asyncio.create_task(self._run_loop("keepalive", self.keepalive.run())),
        }
        self.log.info("Connected")

        if self.password:
            await self.command(PASS, "", self.password)
        await self.command(NICK, "", self.nick_tracker.attempted)
        await self.command(USER, self.username, self.username, "0.0.0.0", "0.0.0.0")

    async def _run_loop(self, name: str, loop: Any) -> None:
        """Run one of the background loops, signalling its exit no matter how it ends."""
        try:
            await loop
        except asyncio.CancelledError:
            pass
        finally:
            self.log.debug("Loop exited", loop=name)
            if self._exits is not None:
                self._exits.put_nowait(name)

    async def _read_loop(self) -> None:
        """Receive lines from the server, parse them and dispatch the events."""
        assert self.reader is not None
        discarding = False
        while True:
            try:
                bline = await self.reader.readuntil(TERMINATOR)
            except asyncio.LimitOverrunError as exc:
                # drop what we have so far; the rest of the line is dropped once it arrives
                self.log.debug("Line exceeded max length, ignoring")
                self.metrics["errors"].labels("framing").inc()
                await self.reader.readexactly(exc.consumed)
                discarding = True
                continue
            except (asyncio.IncompleteReadError, OSError) as exc:
                self._report_error("read", exc)
                return

            if discarding:
                discarding = False
                continue

            self.last_message = time.monotonic()
            self.metrics["received"].inc()
            self._handle_line(bline)

    def _handle_line(self, bline: bytes) -> None:
        """Handle a single received line, terminator included."""
        try:
            # 512 including CRLF; RFC 2812, section 2.3
            data = strip_terminator(bline)[: MAX_LINE_LENGTH - len(TERMINATOR)]
            line = data.decode("utf8", errors="replace")
            self.log.debug("Data received", message=line)
            event = parse(line)
        except FramingError as exc:
            self.metrics["errors"].labels("framing").inc()
            self.log.debug("Invalid line, ignoring", error=str(exc))
            return

        if event.code == str(RPL.WELCOME) and self.state == ConnectionState.REGISTERING:
            self.state = ConnectionState.ACTIVE

        if self.dispatcher.dispatch(event):
            self.metrics["handlers"].inc()

    async def _write_loop(self) -> None:
        """Send queued lines to the server, in order, until the queue is closed."""
        assert self._outbound is not None and self.writer is not None
        while True:
            line = await self._outbound.get()
            if line is None:
                return

            try:
                data = line.encode("utf8")
            except UnicodeEncodeError as exc:
                self.log.debug("Internal encoding error", error=exc)
                continue
            if len(data) > MAX_LINE_LENGTH - len(TERMINATOR):
                # 512 bytes including CRLF, cut on a character boundary
                line = data[: MAX_LINE_LENGTH - len(TERMINATOR)].decode("utf8", errors="ignore")
                data = line.encode("utf8")

            self.log.debug("Data sent", message=line)
            try:
                self.writer.write(data + TERMINATOR)
                await self.writer.drain()
            except OSError as exc:
                self._outbound_closed = True
                self._report_error("write", exc)
                return
            self.metrics["sent"].inc()

    def _report_error(self, loop: str, exc: BaseException) -> None:
        self.metrics["errors"].labels("transport").inc()
        self.log.warning("Transport error", loop=loop, error=repr(exc))
        if self._errors is not None:
            try:
                self._errors.put_nowait(exc)
            except asyncio.QueueFull:
                self.log.debug("Error channel full, dropping error", error=repr(exc))

    async def serve(self) -> BaseException | None:
        """Wait until the transport fails, and return the error.

        Returns None if the session was disconnected before any error occurred.
        """
        if self._errors is None:
            raise NotConnectedError("Client was never connected")
        return await self._errors.get()

    async def disconnect(self) -> None:
        """Send all pending lines (if possible), stop all loops and close the stream."""
        if not self.state.connected:
            raise NotConnectedError(f"Cannot disconnect while {self.state.value}")
        assert self.keepalive is not None and self._exits is not None and self.writer is not None
        self.state = ConnectionState.DISCONNECTING
        self.log.debug("Disconnecting")

        self.keepalive.stop()
        await self._close_outbound()
        self._tasks["read"].cancel()

        for _ in self.LOOPS:
            await self._exits.get()

        try:
            self.writer.close()
            await self.writer.wait_closed()
        except OSError as exc:
            if exc.errno != errno.ENOTCONN:
                self.log.debug("Unknown error while closing", errno=exc.errno)

        self.reader = self.writer = None
        self._tasks = {}
        assert self._errors is not None
        # wake up serve(), leaving any error already reported in front
        if not self._errors.full():
            self._errors.put_nowait(None)
        self.state = ConnectionState.DISCONNECTED
        self.log.info("Disconnected")

    async def _close_outbound(self) -> None:
        """Reject further lines, and let the write loop exit after draining the queue."""
        assert self._outbound is not None
        self._outbound_closed = True
        writer_task = self._tasks["write"]
        if writer_task.done():
            return
        # the queue may be full; wait for room unless the write loop dies meanwhile
        sentinel = asyncio.create_task(self._outbound.put(None))
        await asyncio.wait({sentinel, writer_task}, return_when=asyncio.FIRST_COMPLETED)
        if not sentinel.done():
            sentinel.cancel()

    async def quit(self, message: str = "") -> None:
        """Send a QUIT to the server and disconnect."""
        await self.command(QUIT, message)
        await self.disconnect()

    def _check_state(self, *states: ConnectionState) -> None:
        if self.state not in states:
            raise NotConnectedError(f"Operation not valid while {self.state.value}")

    async def raw(self, line: str) -> None:
        """Queue a preformatted line for sending.

        Waits if the outbound queue is full.
        """
        if not self.state.connected or self._outbound_closed or self._outbound is None:
            raise NotConnectedError(f"Cannot send while {self.state.value}")
        await self._outbound.put(line)

    async def command(self, code: str | IRCNumeric, message: str = "", *params: str) -> None:
        """Send a command, with an optional trailing message and parameters."""
        await self.raw(compose(str(code), message, *params))

    async def ping(self) -> None:
        """Send a PING to the server."""
        await self.command(PING, "", str(time.time_ns()))

    async def join(self, *channels: str) -> None:
        """Join one or more channels."""
        await self.command(JOIN, "", ",".join(channels))

    async def part(self, *channels: str) -> None:
        """Leave one or more channels."""
        await self.command(PART, "", ",".join(channels))

    async def notice(self, target: str, message: str) -> None:
        """Send a NOTICE to a nick or channel."""
        await self.command(NOTICE, message, target)

    async def privmsg(self, target: str, message: str) -> None:
        """Send a message to a nick or channel."""
        await self.command(PRIVMSG, message, target)

    async def set_nick(self, nick: str) -> None:
        """Request a nickname change.

        The server may refuse it; the ``nick`` property returns the nickname in
        use, and the refused one is retried periodically.
        """
        self.nick_tracker.request(nick)
        await self.command(NICK, "", nick)

    async def _recapture_nick(self) -> None:
        if self.nick_tracker.needs_recapture():
            nick = self.nick_tracker.recapture()
            self.log.info("Trying to recapture nickname", nick=nick)
            await self.command(NICK, "", nick)

    @property
    def nick(self) -> str | None:
        """Return the nickname currently in use, or None if not yet registered."""
        return self.nick_tracker.current

    def set_handler(self, code: str | IRCNumeric, handler: Handler) -> None:
        """Register a handler for an event code, replacing any existing one."""
        self.dispatcher.register(code, handler)

    def unset_handler(self, code: str | IRCNumeric) -> None:
        """Remove the handler for an event code."""
        self.dispatcher.unregister(code)

    def set_default_handler(self, handler: Handler | None) -> None:
        """Set the handler for events without a handler of their own."""
        self.dispatcher.set_default(handler)

    def __repr__(self) -> str:
        """Return a user-readable description of the client."""
        return f"<{self.__class__.__name__} {self.nick or self.nick_tracker.desired} {self.state.value}>"
