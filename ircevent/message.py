"""IRC message codec component.

Converts raw protocol lines received from a server into Event instances, and
structured commands back into raw lines. Also carries the protocol vocabulary
(command names, CTCP event codes and the numeric replies we care about).
"""

# SPDX-FileCopyrightText: Faidon Liambotis
# SPDX-FileCopyrightText: Wikimedia Foundation
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import dataclasses
import enum

# 512 including CRLF; RFC 2812, section 2.3
MAX_LINE_LENGTH = 512
TERMINATOR = b"\r\n"

NICK = "NICK"
USER = "USER"
PASS = "PASS"
JOIN = "JOIN"
PART = "PART"
QUIT = "QUIT"
NOTICE = "NOTICE"
PRIVMSG = "PRIVMSG"
PING = "PING"
PONG = "PONG"
TIME = "TIME"
MODE = "MODE"
ERROR = "ERROR"
VERSION = "VERSION"
CLIENTINFO = "CLIENTINFO"
USERINFO = "USERINFO"

# synthetic event codes, assigned by the dispatcher to CTCP queries
CTCP = "CTCP"
CTCP_VERSION = "CTCP_VERSION"
CTCP_TIME = "CTCP_TIME"
CTCP_PING = "CTCP_PING"
CTCP_USERINFO = "CTCP_USERINFO"
CTCP_CLIENTINFO = "CTCP_CLIENTINFO"
CTCP_DELIMITER = "\x01"


class IRCNumeric(enum.Enum):
    """Base class for IRC numeric enums."""

    def __str__(self) -> str:
        """Return the numeric in the wire protocol format, e.g. 001."""
        return str(self.value).zfill(3)

    def __repr__(self) -> str:
        """Return the representation of the numeric, e.g. RPL_WELCOME."""
        return f"{self.__class__.__name__}_{self.name}"


@enum.unique
class RPL(IRCNumeric):
    """Standard IRC RPL_* replies, as defined in RFCs."""

    WELCOME = 1
    YOURHOST = 2
    CREATED = 3
    MYINFO = 4
    ISUPPORT = 5
    STATSCONN = 250
    LUSERCLIENT = 251
    LUSEROP = 252
    LUSERUNKNOWN = 253
    LUSERCHANNELS = 254
    LUSERME = 255
    LOCALUSERS = 265
    GLOBALUSERS = 266
    TOPIC = 332
    NAMREPLY = 353
    ENDOFNAMES = 366
    MOTD = 372
    MOTDSTART = 375
    ENDOFMOTD = 376


@enum.unique
class ERR(IRCNumeric):
    """Erroneous IRC ERR_* replies; only those relevant to registration."""

    NOMOTD = 422
    NICKNAMEINUSE = 433
    BANNICKCHANGE = 437


class FramingError(ValueError):
    """Raised when a line cannot be framed as an IRC message."""


@dataclasses.dataclass
class Event:
    """Represents a message received from the server.

    The source triple (nick, user, host) is only populated when the line has a
    source prefix of the form nick!user@host; for any other prefix (e.g. a
    server name), only ``source`` is set. ``message`` is the trailing
    parameter, or None if the line had none.

    The dispatcher may rewrite ``code`` and ``message`` in place when
    classifying CTCP queries.
    """

    raw: str
    code: str
    arguments: list[str] = dataclasses.field(default_factory=list)
    message: str | None = None
    source: str | None = None
    nick: str = ""
    user: str = ""
    host: str = ""

    @classmethod
    def from_line(cls, line: str) -> Event:
        """Parse a line (without its terminator). Returns an instance of Event."""
        if not line:
            raise FramingError("Invalid IRC message (empty line)")

        event = cls(raw=line, code="")
        rest = line
        if rest.startswith(":"):
            source, _, rest = rest[1:].partition(" ")
            event.source = source
            event.nick, event.user, event.host = split_source(source)

        # everything past the first " :" is free text, spaces and all
        rest, separator, trailing = rest.partition(" :")
        if separator:
            event.message = trailing

        code, *arguments = rest.split(" ")
        event.code = code.upper()
        event.arguments = arguments
        return event


def split_source(source: str) -> tuple[str, str, str]:
    """Split a nick!user@host source into its components.

    Returns three empty strings when the source does not follow that pattern.
    """
    bang, at = source.find("!"), source.find("@")
    if bang < 0 or at < 0 or bang > at:
        return "", "", ""
    return source[:bang], source[bang + 1 : at], source[at + 1 :]


def parse(line: str) -> Event:
    """Parse a raw line into an Event."""
    return Event.from_line(line)


def compose(code: str, message: str = "", *params: str) -> str:
    """Generate a raw line out of a command, its trailing message and its parameters.

    Parameters are emitted as given; the caller is responsible for them not
    containing spaces or a leading colon. Line breaks are refused outright, as
    they would smuggle a second command onto the wire.
    """
    components = [code, *params]
    if message:
        components.append(":" + message)
    line = " ".join(components)
    if any(c in line for c in "\r\n\0"):
        raise ValueError(f"Invalid character in IRC message: {line!r}")
    return line


def strip_terminator(bline: bytes) -> bytes:
    """Remove the CRLF terminator from a received line.

    Lines that are not CRLF-terminated, including those too short to even hold
    the terminator, are framing errors.
    """
    if len(bline) < len(TERMINATOR) or not bline.endswith(TERMINATOR):
        raise FramingError(f"Line not terminated by CRLF: {bline!r}")
    return bline[: -len(TERMINATOR)]
