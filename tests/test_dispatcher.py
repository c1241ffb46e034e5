"""Test the event dispatcher, including CTCP classification."""

from __future__ import annotations

import asyncio

import pytest
import pytest_structlog

from ircevent.dispatcher import Dispatcher, classify_ctcp
from ircevent.message import (
    CTCP,
    CTCP_CLIENTINFO,
    CTCP_PING,
    CTCP_TIME,
    CTCP_USERINFO,
    CTCP_VERSION,
    RPL,
    Event,
    parse,
)


@pytest.mark.parametrize(
    "message,code,payload",
    [
        ("\x01VERSION\x01", CTCP_VERSION, "VERSION"),
        ("\x01TIME\x01", CTCP_TIME, "TIME"),
        ("\x01USERINFO\x01", CTCP_USERINFO, "USERINFO"),
        ("\x01CLIENTINFO\x01", CTCP_CLIENTINFO, "CLIENTINFO"),
        ("\x01PING 12345\x01", CTCP_PING, "PING 12345"),
        ("\x01PING\x01", CTCP_PING, "PING"),
        ("\x01ACTION waves\x01", CTCP, "ACTION waves"),
        ("\x01VERSION extra\x01", CTCP, "VERSION extra"),
        ("\x01VERSION", CTCP_VERSION, "VERSION"),
        ("\x01\x01", CTCP, ""),
        ("\x01", CTCP, ""),
    ],
)
def test_classify_ctcp(message: str, code: str, payload: str) -> None:
    """Test that CTCP queries are recognized and unwrapped."""
    event = parse(f":bob!u@h PRIVMSG #c :{message}")
    classify_ctcp(event)
    assert event.code == code
    assert event.message == payload


@pytest.mark.parametrize(
    "line",
    [
        ":bob!u@h PRIVMSG #c :VERSION",
        ":bob!u@h PRIVMSG #c :hello \x01VERSION\x01",
        ":bob!u@h PRIVMSG #c",
        ":bob!u@h NOTICE #c :\x01VERSION\x01",
    ],
)
def test_classify_not_ctcp(line: str) -> None:
    """Test that anything but a delimited private message is left alone."""
    event = parse(line)
    code, message = event.code, event.message
    classify_ctcp(event)
    assert (event.code, event.message) == (code, message)


async def test_register_case_insensitive() -> None:
    """Test that codes are normalized to uppercase on registration."""
    dispatcher = Dispatcher()
    received: list[Event] = []
    dispatcher.register("privmsg", received.append)

    task = dispatcher.dispatch(parse(":bob!u@h PRIVMSG #c :hi"))
    assert task is not None
    await task
    assert [event.message for event in received] == ["hi"]


async def test_register_numeric() -> None:
    """Test that numerics can be registered by enum."""
    dispatcher = Dispatcher()
    received: list[Event] = []
    dispatcher.register(RPL.WELCOME, received.append)

    dispatcher.dispatch(parse(":irc.example.org 001 bob :Welcome"))
    await dispatcher.drain()
    assert len(received) == 1


async def test_last_registration_wins() -> None:
    """Test that registering a code twice replaces the earlier handler."""
    dispatcher = Dispatcher()
    first: list[Event] = []
    second: list[Event] = []
    dispatcher.register("PING", first.append)
    dispatcher.register("ping", second.append)

    dispatcher.dispatch(parse("PING :x"))
    await dispatcher.drain()
    assert not first
    assert len(second) == 1


async def test_default_handler() -> None:
    """Test the fallback handler, and dropping of events without any handler."""
    dispatcher = Dispatcher()
    assert dispatcher.dispatch(parse("FOO bar")) is None

    fallback: list[Event] = []
    dispatcher.set_default(fallback.append)
    dispatcher.register("PING", lambda _: None)
    dispatcher.unregister("PING")
    dispatcher.dispatch(parse("FOO bar"))
    dispatcher.dispatch(parse("PING :x"))
    await dispatcher.drain()
    assert [event.code for event in fallback] == ["FOO", "PING"]

    dispatcher.set_default(None)
    assert dispatcher.dispatch(parse("FOO bar")) is None


async def test_ctcp_dispatch() -> None:
    """Test that CTCP queries are dispatched to their own handlers."""
    dispatcher = Dispatcher()
    received: list[Event] = []
    dispatcher.register(CTCP_VERSION, received.append)

    dispatcher.dispatch(parse(":bob!u@h PRIVMSG #c :\x01VERSION\x01"))
    await dispatcher.drain()
    assert len(received) == 1
    assert received[0].nick == "bob"


async def test_handlers_concurrent() -> None:
    """Test that a blocked handler does not hold up the next events."""
    dispatcher = Dispatcher()
    unblock = asyncio.Event()
    finished: list[str] = []

    async def blocked(event: Event) -> None:
        await unblock.wait()
        finished.append(event.code)

    async def unblocker(event: Event) -> None:
        unblock.set()
        finished.append(event.code)

    dispatcher.register("FIRST", blocked)
    dispatcher.register("SECOND", unblocker)
    dispatcher.dispatch(parse("FIRST"))
    dispatcher.dispatch(parse("SECOND"))
    assert dispatcher.pending == 2

    await asyncio.wait_for(dispatcher.drain(), 1)
    assert finished == ["SECOND", "FIRST"]
    assert dispatcher.pending == 0


async def test_handler_failure(log: pytest_structlog.StructuredLogCapture) -> None:
    """Test that a failing handler is logged and affects no other handler."""
    failures: list[int] = []
    dispatcher = Dispatcher(on_failure=lambda: failures.append(1))
    received: list[Event] = []

    async def broken(_: Event) -> None:
        raise RuntimeError("Purposefully triggered exception")

    dispatcher.register("BOOM", broken)
    dispatcher.register("FINE", received.append)
    dispatcher.dispatch(parse("BOOM"))
    dispatcher.dispatch(parse("FINE"))
    await dispatcher.drain()

    assert len(failures) == 1
    assert len(received) == 1
    assert log.has("Handler failed", code="BOOM")
