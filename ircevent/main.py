"""Command-line executable component.

Responsible for parsing the command-line arguments and the configuration file,
connecting a client to the configured server, joining channels and logging
every event received. Spawns the main event loop.

Provides a run() function, used by __main__ or directly.
"""

# SPDX-FileCopyrightText: Faidon Liambotis
# SPDX-FileCopyrightText: Wikimedia Foundation
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import argparse
import asyncio
import configparser
import errno
import logging
import pathlib
import signal
import ssl
import sys
from collections.abc import Sequence
from typing import Any

import structlog

from ._version import __version__
from .client import IRCClient
from .message import ERR, RPL, Event

logger = structlog.get_logger()

# holder for strong references to pending tasks; remove when the minimum CPython version is one with PR#121264
background_tasks: set[asyncio.Task[Any]] = set()


def parse_args(argv: Sequence[str] | None) -> argparse.Namespace:
    """Parse and return the parsed command line arguments."""
    parser = argparse.ArgumentParser(
        prog="ircevent",
        description="Event-driven IRC client",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    cfg_dflt = pathlib.Path("ircevent.conf")
    if not cfg_dflt.exists():
        cfg_dflt = pathlib.Path("/etc/ircevent.conf")
    parser.add_argument("--config-file", "-c", type=pathlib.Path, default=cfg_dflt, help="Path to configuration file")

    log_levels = ("DEBUG", "INFO", "WARNING", "ERROR")
    parser.add_argument("--log-level", choices=log_levels, type=str.upper, help="Log level (overrides config)")
    log_formats = ("plain", "console", "json")
    log_dflt = "console" if sys.stdout.isatty() else "plain"
    parser.add_argument("--log-format", default=log_dflt, choices=log_formats, help="Log format")
    return parser.parse_args(argv)


def configure_logging(log_format: str) -> None:
    """Configure logging parameters."""
    renderer: structlog.typing.Processor
    if log_format == "plain":
        timestamper = None
        renderer = structlog.dev.ConsoleRenderer(colors=False)
    elif log_format == "console":
        timestamper = structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S", utc=False)
        renderer = structlog.dev.ConsoleRenderer(colors=True)
    elif log_format == "json":
        timestamper = structlog.processors.TimeStamper(fmt="iso")
        renderer = structlog.processors.JSONRenderer(sort_keys=True)
    else:
        raise ValueError(f"Invalid logging format specified: {log_format}")

    # render with structlog-based formatters within logging, so that foreign (stdlib) log entries look the same
    processors: list[structlog.typing.Processor] = [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if timestamper:
        processors.append(timestamper)

    structlog.configure(
        processors=[*processors, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    handler = logging.StreamHandler()
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=[*processors, structlog.stdlib.ExtraAdder()],
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )
    root_logger = logging.getLogger()
    root_logger.addHandler(handler)
    # default level, only for events emitted before the config is parsed
    root_logger.setLevel(logging.WARN)


def configure_log_levels(override_level: str | int | None, config: configparser.SectionProxy | None = None) -> None:
    """Configure logging levels, using the config file and an override, typically given by a CLI argument."""
    if config:
        for key, level in config.items():
            logging.getLogger(key if key != "root" else None).setLevel(level)

    if override_level:
        # set the level for the entire package
        logging.getLogger("ircevent").setLevel(override_level)


def build_client(config: configparser.SectionProxy) -> IRCClient:
    """Create a client out of the [irc] configuration section.

    Joins the configured channels once the server is done welcoming us, and
    logs every event nothing else handles.
    """
    nick = config.get("nick", "ircevent")
    client = IRCClient(
        nick=nick,
        username=config.get("username", nick),
        password=config.get("password") or None,
    )

    channels = [channel.strip() for channel in config.get("channels", "").split(",") if channel.strip()]

    async def join_channels(_: Event) -> None:
        if channels:
            await client.join(*channels)

    def log_event(event: Event) -> None:
        logger.info(
            "Event received",
            code=event.code,
            source=event.source,
            arguments=event.arguments,
            message=event.message,
        )

    client.set_handler(RPL.ENDOFMOTD, join_channels)
    client.set_handler(ERR.NOMOTD, join_channels)
    client.set_default_handler(log_event)
    return client


def shutdown(client: IRCClient) -> None:
    """Quit gracefully, typically in response to a signal."""
    if not client.state.connected:
        return
    logger.info("Shutting down")
    task = asyncio.create_task(client.quit("Shutting down"))
    background_tasks.add(task)
    task.add_done_callback(background_tasks.discard)


async def start_client(config: configparser.ConfigParser) -> None:
    """Connect the client and serve until the connection is gone."""
    loop = asyncio.get_running_loop()

    if "irc" not in config:
        logger.critical('Invalid configuration, missing section "irc"')
        raise SystemExit(-1)

    irc_config = config["irc"]
    client = build_client(irc_config)

    if "prometheus" in config:
        from .prometheus import PrometheusServer

        prom_server = PrometheusServer(config["prometheus"], client.metrics_registry)
        prom_server.socket.setblocking(False)
        loop.add_reader(prom_server.socket, prom_server.handle_request)

    ssl_context = ssl.create_default_context() if irc_config.getboolean("tls", fallback=False) else None
    default_port = 6697 if ssl_context else 6667
    try:
        await client.connect(irc_config.get("server", "localhost"), irc_config.getint("port", default_port), ssl_context)
    except OSError as exc:
        logger.critical(f"System error: {exc.strerror}", errno=errno.errorcode.get(exc.errno or 0))
        raise SystemExit(-2) from exc

    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, shutdown, client)

    error = await client.serve()
    if error is not None:
        logger.critical("Connection lost", error=repr(error))
        await client.disconnect()
        raise SystemExit(-2)


def run(argv: Sequence[str] | None = None) -> None:
    """Entry point."""
    options = parse_args(argv)

    configure_logging(options.log_format)
    configure_log_levels(options.log_level or logging.INFO)
    logger.info("Starting ircevent", config_file=str(options.config_file), version=__version__)

    config = configparser.ConfigParser(strict=True)
    try:
        with options.config_file.open(encoding="utf-8") as config_fh:
            config.read_file(config_fh)
    except OSError as exc:
        logger.critical(f"Cannot open configuration file: {exc.strerror}", errno=errno.errorcode[exc.errno])
        raise SystemExit(-1) from exc
    except configparser.Error as exc:
        msg = repr(exc).replace("\n", " ")  # configparser exceptions sometimes include newlines
        logger.critical(f"Invalid configuration, {msg}")
        raise SystemExit(-1) from exc

    # now that we've read the config, configure with the levels defined there (but CLI option takes precedence)
    if "loggers" in config:
        configure_log_levels(options.log_level, config["loggers"])

    try:
        asyncio.run(start_client(config))
    except KeyboardInterrupt:
        pass
