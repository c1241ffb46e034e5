"""Session maintenance component.

Tracks the connection lifecycle and our nickname, and provides the built-in
handlers that keep a session alive without any help from the application:
answering server PINGs and CTCP queries, recovering from nickname collisions
and following nickname changes confirmed by the server.
"""

# SPDX-FileCopyrightText: Faidon Liambotis
# SPDX-FileCopyrightText: Wikimedia Foundation
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import datetime
import enum
from typing import TYPE_CHECKING

import structlog

from .message import (
    CTCP_CLIENTINFO,
    CTCP_PING,
    CTCP_TIME,
    CTCP_USERINFO,
    CTCP_VERSION,
    ERR,
    NICK,
    PING,
    PONG,
    RPL,
    Event,
)

if TYPE_CHECKING:
    from .client import IRCClient

logger = structlog.get_logger()

# nicknames longer than this get their underscore prepended instead of appended
NICK_FALLBACK_LENGTH = 8


class ConnectionState(enum.Enum):
    """Lifecycle of a connection."""

    DISCONNECTED = "disconnected"
    REGISTERING = "registering"
    ACTIVE = "active"
    DISCONNECTING = "disconnecting"

    @property
    def connected(self) -> bool:
        """Return True if commands may be sent in this state."""
        return self in (ConnectionState.REGISTERING, ConnectionState.ACTIVE)


def fallback_nick(nick: str) -> str:
    """Return the nickname to try after ``nick`` was refused by the server."""
    if len(nick) > NICK_FALLBACK_LENGTH:
        return "_" + nick
    return nick + "_"


class NickTracker:
    """Single owner of the nickname state.

    ``desired`` is the nickname the user asked for, ``current`` the one the
    server last assigned to us (None until the server said anything about it).

    Every transition is a single synchronous method: the event loop runs one at
    a time, so concurrently scheduled handlers cannot interleave a read of the
    current nickname with the write of its successor.
    """

    def __init__(self, desired: str) -> None:
        self.desired = desired
        self.current: str | None = None
        # the nickname last requested from the server
        self.attempted = desired

    def reset(self) -> None:
        """Forget everything the server told us; used when starting a new session."""
        self.current = None
        self.attempted = self.desired

    def request(self, nick: str) -> str:
        """Record that the user wants ``nick`` from now on."""
        self.desired = nick
        self.attempted = nick
        return nick

    def recapture(self) -> str:
        """Record that the desired nickname is being requested again; return it."""
        self.attempted = self.desired
        return self.desired

    def collide(self) -> str:
        """Record that the attempted nickname was refused; return the next one to try."""
        self.current = self.attempted = fallback_nick(self.attempted)
        return self.current

    def confirm(self, old: str, new: str) -> bool:
        """Adopt ``new`` if ``old`` is the nickname we are tracking.

        Returns whether the change was ours.
        """
        if not new or old != self.current:
            return False
        self.current = self.attempted = new
        return True

    def welcome(self, nick: str) -> None:
        """Adopt the nickname the server registered us with."""
        self.current = self.attempted = nick

    def needs_recapture(self) -> bool:
        """Return True if we are known to hold a nickname other than the desired one."""
        return self.current is not None and self.current != self.desired


def register_builtins(client: IRCClient) -> None:
    """Register the built-in session handlers on a client.

    They behave exactly like user handlers; registering another handler for
    the same code replaces them.
    """
    tracker = client.nick_tracker
    log = logger.bind(component="session")

    async def on_ping(event: Event) -> None:
        if event.message is not None:
            await client.command(PONG, event.message)
        else:
            await client.command(PONG, "", *event.arguments)

    async def ctcp_reply(event: Event, payload: str) -> None:
        # a server or malformed source has no nickname to reply to
        if not event.nick:
            log.debug("CTCP query without a nickname, not replying", raw=event.raw)
            return
        await client.notice(event.nick, payload)

    async def on_ctcp_version(event: Event) -> None:
        await ctcp_reply(event, f"\x01\x01VERSION {client.version}\x01")

    async def on_ctcp_userinfo(event: Event) -> None:
        await ctcp_reply(event, f"\x01\x01USERINFO {client.username}\x01")

    async def on_ctcp_clientinfo(event: Event) -> None:
        await ctcp_reply(event, "\x01CLIENTINFO PING VERSION TIME USERINFO CLIENTINFO\x01")

    async def on_ctcp_time(event: Event) -> None:
        now = datetime.datetime.now(tz=datetime.timezone.utc)
        await ctcp_reply(event, f"\x01TIME {now:%a %b %d %H:%M:%S %Y %Z}\x01")

    async def on_ctcp_ping(event: Event) -> None:
        await ctcp_reply(event, f"\x01{event.message}\x01")

    async def on_nick_refused(event: Event) -> None:
        nick = tracker.collide()
        log.info("Nickname refused, trying another", code=event.code, nick=nick)
        await client.command(NICK, "", nick)

    async def on_nick(event: Event) -> None:
        new = event.message if event.message is not None else next(iter(event.arguments), "")
        if tracker.confirm(event.nick, new):
            log.info("Nickname changed", nick=new)

    async def on_welcome(event: Event) -> None:
        if event.arguments and event.arguments[0]:
            tracker.welcome(event.arguments[0])
            log.info("Registered", nick=tracker.current)

    client.set_handler(PING, on_ping)
    client.set_handler(CTCP_VERSION, on_ctcp_version)
    client.set_handler(CTCP_USERINFO, on_ctcp_userinfo)
    client.set_handler(CTCP_CLIENTINFO, on_ctcp_clientinfo)
    client.set_handler(CTCP_TIME, on_ctcp_time)
    client.set_handler(CTCP_PING, on_ctcp_ping)
    client.set_handler(ERR.NICKNAMEINUSE, on_nick_refused)
    client.set_handler(ERR.BANNICKCHANGE, on_nick_refused)
    client.set_handler(NICK, on_nick)
    client.set_handler(RPL.WELCOME, on_welcome)
