"""Testing initialization."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator

import pytest
import structlog

from ircevent import ConnectionState, IRCClient

from .ircserver import FakeIRCServer


@pytest.fixture(autouse=True)
def fixture_configure_structlog() -> None:
    """Fixture to configure structlog. Currently just silences it entirely."""

    def dummy_processor(
        logger: logging.Logger, name: str, event_dict: structlog.types.EventDict
    ) -> structlog.types.EventDict:
        raise structlog.exceptions.DropEvent

    structlog.reset_defaults()
    structlog.configure(processors=[dummy_processor])


@pytest.fixture(name="ircserver")
async def fixture_ircserver() -> AsyncGenerator[FakeIRCServer, None]:
    """Fixture for a listening fake IRC server."""
    server = FakeIRCServer()
    await server.start()
    yield server
    await server.stop()


@pytest.fixture(name="ircclient")
async def fixture_ircclient(ircserver: FakeIRCServer) -> AsyncGenerator[IRCClient, None]:
    """Fixture for a client connected to the fake server, past the registration commands."""
    client = IRCClient("bob", "bob")
    await client.connect(ircserver.address, ircserver.port)
    assert await ircserver.expect("USER ")
    yield client
    if client.state.connected:
        await client.disconnect()
    assert client.state == ConnectionState.DISCONNECTED
