"""Command-line interface for mcsocks.

Exit codes: 0 on clean shutdown, 1 when the listener cannot be bound or
fails, 2 for usage or configuration errors.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
from typing import Any, Optional

from .__about__ import __version__
from .config import ForwarderConfig, load_config
from .network import parse_host_port
from .robustness import ConfigError, ListenerFatalError, setup_logging
from .supervisor import serve

logger = logging.getLogger("mcsocks")


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="mcsocks", description="A simple Minecraft proxy")
    p.add_argument("--server", default=None, help="The Minecraft server to connect to")
    p.add_argument("--proxy", default=None, help="The SOCKS5 proxy to use (proxy:port)")
    p.add_argument("--username", default=None, help="Proxy auth username")
    p.add_argument("--password", default=None, help="Proxy auth password")
    p.add_argument(
        "--listen",
        default=None,
        help="Local address to accept clients on (host:port, default 0.0.0.0:1337)",
    )
    p.add_argument(
        "--connect-timeout",
        type=float,
        default=None,
        help="Seconds allowed for the SOCKS5 dial and handshake",
    )
    p.add_argument("--config", default=None, help="Path to config YAML")
    p.add_argument(
        "--loglevel",
        default="INFO",
        help="Logging level (DEBUG/INFO/WARNING/ERROR/CRITICAL)",
    )
    p.add_argument("--logfile", default=None, help="Optional log file path")
    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return p


def build_overrides(args: argparse.Namespace) -> dict[str, Any]:
    """Translate parsed arguments into config overrides (None means unset)."""
    overrides: dict[str, Any] = {
        "server": args.server,
        "proxy": args.proxy,
        "username": args.username,
        "password": args.password,
        "connect_timeout": args.connect_timeout,
    }
    if args.listen is not None:
        host, port = parse_host_port(args.listen)
        overrides["listen_host"] = host
        overrides["listen_port"] = port
    return overrides


def build_config(args: argparse.Namespace) -> ForwarderConfig:
    try:
        overrides = build_overrides(args)
    except ValueError as e:
        raise ConfigError(f"Invalid --listen address: {e}") from e
    return load_config(args.config, overrides)


def main(argv: Optional[list[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    setup_logging(args.loglevel, args.logfile)

    try:
        config = build_config(args)
    except ConfigError as e:
        logger.error(str(e))
        return 2

    try:
        asyncio.run(serve(config))
    except ListenerFatalError as e:
        logger.critical(f"Error running server: {e}")
        return 1
    except KeyboardInterrupt:
        logger.info("Interrupted")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
