"""agentrelay server entry point."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from agentrelay.engine.config import RelayConfig
from agentrelay.engine.yaml_config import load_config

DEFAULT_LOG_FILE = Path.home() / ".agentrelay" / "logs" / "agentrelay-server.log"


def configure_logging(config: RelayConfig) -> Path:
    """Rotating log file plus stderr, both on the root logger."""
    log_file = Path(config.log_file).expanduser() if config.log_file else DEFAULT_LOG_FILE
    log_file.parent.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    root.setLevel(getattr(logging, config.log_level.upper(), logging.INFO))
    root.handlers.clear()
    formatter = logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
    )
    file_handler = RotatingFileHandler(
        log_file, maxBytes=2_000_000, backupCount=5, encoding="utf-8"
    )
    file_handler.setFormatter(formatter)
    stream_handler = logging.StreamHandler(sys.stderr)
    stream_handler.setFormatter(formatter)
    root.addHandler(file_handler)
    root.addHandler(stream_handler)
    return log_file


async def _serve(config: RelayConfig) -> None:
    from agentrelay.web.server import RelayServer

    server = RelayServer(config)
    await server.start()
    try:
        await asyncio.Event().wait()
    finally:
        await server.stop()


def main(argv: list[str] | None = None) -> None:
    import argparse

    parser = argparse.ArgumentParser(
        prog="agentrelay",
        description="Relay a Claude Code agent to a web client over HTTP/SSE",
    )
    parser.add_argument(
        "--host", metavar="HOST",
        help="Interface to bind (default 127.0.0.1, or RELAY_HOST)",
    )
    parser.add_argument(
        "--port", type=int, metavar="PORT",
        help="Port to listen on; 0 picks a free port (default 3002, or RELAY_PORT)",
    )
    parser.add_argument(
        "--cwd", metavar="DIR",
        help="Working directory of the agent (default: current directory)",
    )
    parser.add_argument(
        "--config", metavar="PATH",
        help="Path to relay.yaml (default: auto-discover in the working directory)",
    )
    parser.add_argument(
        "--log-level", metavar="LEVEL",
        help="Logging level (default INFO, or RELAY_LOG_LEVEL)",
    )
    args = parser.parse_args(argv)

    config = load_config(args.config, cwd=args.cwd or Path.cwd())
    overrides = {
        name: value
        for name, value in (
            ("host", args.host),
            ("port", args.port),
            ("cwd", args.cwd),
            ("log_level", args.log_level),
        )
        if value is not None
    }
    if overrides:
        config = dataclasses.replace(config, **overrides)

    log_file = configure_logging(config)
    logging.getLogger(__name__).info(
        "Starting agentrelay host=%s port=%s cwd=%s config=%s log=%s",
        config.host,
        config.port,
        config.resolved_cwd,
        args.config or "<auto>",
        log_file,
    )
    try:
        asyncio.run(_serve(config))
    except KeyboardInterrupt:
        logging.getLogger(__name__).info("Interrupted; shutting down")
    sys.exit(0)


if __name__ == "__main__":
    main()
