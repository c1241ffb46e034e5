"""Event dispatching component.

Maps event codes to handlers, classifies CTCP queries hidden inside private
messages, and runs the matching handler for every incoming event.

Every handler invocation is its own asyncio task: a slow handler never holds up
the read loop, and a failing one is logged without affecting any other.
"""

# SPDX-FileCopyrightText: Faidon Liambotis
# SPDX-FileCopyrightText: Wikimedia Foundation
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from typing import Any, Union

import structlog

from .message import (
    CLIENTINFO,
    CTCP,
    CTCP_CLIENTINFO,
    CTCP_DELIMITER,
    CTCP_PING,
    CTCP_TIME,
    CTCP_USERINFO,
    CTCP_VERSION,
    PING,
    PRIVMSG,
    TIME,
    USERINFO,
    VERSION,
    Event,
    IRCNumeric,
)

logger = structlog.get_logger()

Handler = Callable[[Event], Union[Awaitable[None], None]]

CTCP_QUERIES = {
    VERSION: CTCP_VERSION,
    TIME: CTCP_TIME,
    USERINFO: CTCP_USERINFO,
    CLIENTINFO: CTCP_CLIENTINFO,
}


def classify_ctcp(event: Event) -> None:
    """Rewrite a private message carrying a CTCP query into a CTCP event.

    The delimiters are stripped from the message, and the code is replaced by
    the matching CTCP_* code, or by the generic CTCP code for unknown queries.
    Any other event is left untouched.
    """
    if event.code != PRIVMSG or not event.message or event.message[0] != CTCP_DELIMITER:
        return

    end = event.message.rfind(CTCP_DELIMITER)
    payload = event.message[1:end] if end > 0 else event.message[1:]
    event.message = payload

    if payload[:4] == PING:
        event.code = CTCP_PING
    else:
        event.code = CTCP_QUERIES.get(payload, CTCP)


class Dispatcher:
    """Holds the handler registry and dispatches events to it.

    Codes are case-insensitive and normalized to uppercase on registration.
    Registering a code twice replaces the earlier handler (built-ins included).
    """

    def __init__(self, on_failure: Callable[[], None] | None = None) -> None:
        self.log = logger.new()
        self.handlers: dict[str, Handler] = {}
        self.default_handler: Handler | None = None
        self._on_failure = on_failure
        # strong references to running handler invocations
        self._tasks: set[asyncio.Task[Any]] = set()

    @staticmethod
    def _normalize(code: str | IRCNumeric) -> str:
        return str(code).upper()

    def register(self, code: str | IRCNumeric, handler: Handler) -> None:
        """Register a handler for an event code, replacing any previous one."""
        self.handlers[self._normalize(code)] = handler

    def unregister(self, code: str | IRCNumeric) -> None:
        """Remove the handler for an event code, if any."""
        self.handlers.pop(self._normalize(code), None)

    def set_default(self, handler: Handler | None) -> None:
        """Set (or clear, with None) the handler for events without one."""
        self.default_handler = handler

    def lookup(self, code: str) -> Handler | None:
        """Return the handler for an (already classified) event code."""
        return self.handlers.get(code, self.default_handler)

    def dispatch(self, event: Event) -> asyncio.Task[Any] | None:
        """Classify an event and schedule its handler.

        Returns the scheduled task, or None if the event was dropped.
        """
        classify_ctcp(event)
        handler = self.lookup(event.code)
        if handler is None:
            return None

        task = asyncio.create_task(self._invoke(handler, event))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _invoke(self, handler: Handler, event: Event) -> None:
        try:
            result = handler(event)
            if inspect.isawaitable(result):
                await result
        except Exception:
            if self._on_failure:
                self._on_failure()
            self.log.exception("Handler failed", code=event.code, raw=event.raw)

    @property
    def pending(self) -> int:
        """Return the number of handler invocations still running."""
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for all handler invocations scheduled so far to finish."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
