#!/usr/bin/env python3
"""
Veil - censorship-resistant forwarding and tunneling proxy

Usage:
    veil [--port 3000] [--level 2] [--log-level INFO]
    or
    python -m veil
"""
import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import List, Optional

from colorama import Fore, Style, init

from . import __version__
from .context import ProxyContext
from .core.config import VeilConfig
from .core.exceptions import ConfigError
from .proxy.server import VeilServer

# Initialize colorama for Windows
init(autoreset=True)

if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())


class ColoredFormatter(logging.Formatter):
    """Custom formatter with colors for different log levels."""

    COLORS = {
        'DEBUG': Fore.CYAN,
        'INFO': Fore.GREEN,
        'WARNING': Fore.YELLOW,
        'ERROR': Fore.RED,
        'CRITICAL': Fore.MAGENTA + Style.BRIGHT,
    }

    def format(self, record):
        levelname = record.levelname
        if levelname in self.COLORS:
            record.levelname = f"{self.COLORS[levelname]}{levelname}{Style.RESET_ALL}"
        try:
            return super().format(record)
        finally:
            record.levelname = levelname


class _NoisyNetworkLogFilter(logging.Filter):
    """Drops connection-reset chatter that every proxy sees constantly."""

    _NOISY_SUBSTRINGS = (
        "Connection reset by peer",
        "[WinError 10053]",
        "[WinError 10054]",
        "Fatal error on SSL transport",
        "SSL handshake failed",
    )

    def filter(self, record: logging.LogRecord) -> bool:
        if record.levelno > logging.WARNING:
            return True
        msg = record.getMessage()
        return not any(sub in msg for sub in self._NOISY_SUBSTRINGS)


def setup_logging(level: str = "INFO", log_file: Optional[str] = None):
    """Setup logging configuration"""
    numeric_level = getattr(logging, str(level).upper(), logging.INFO)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(ColoredFormatter(
        '%(asctime)s | %(levelname)s | %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    ))
    console_handler.addFilter(_NoisyNetworkLogFilter())

    logger = logging.getLogger()
    logger.setLevel(numeric_level)
    logger.addHandler(console_handler)

    if log_file:
        path = Path(log_file)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(str(path), encoding="utf-8", mode="a")
        except OSError as e:
            logger.warning(f"Cannot open log file {path}: {e}")
        else:
            file_handler.setLevel(numeric_level)
            file_handler.setFormatter(logging.Formatter(
                '%(asctime)s | %(levelname)-7s | %(name)s | %(message)s',
                datefmt='%Y-%m-%d %H:%M:%S'
            ))
            file_handler.addFilter(_NoisyNetworkLogFilter())
            logger.addHandler(file_handler)

    # asyncio logs every reset transport at ERROR
    logging.getLogger("asyncio").setLevel(logging.CRITICAL)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="veil", description="Censorship-resistant forwarding proxy")
    parser.add_argument("--host", help="listen address (default from VEIL_HOST or 0.0.0.0)")
    parser.add_argument("--port", type=int, help="listen port (default from VEIL_PORT or 3000)")
    parser.add_argument("--level", type=int, choices=range(0, 4), help="header obfuscation level")
    parser.add_argument("--no-fronting", action="store_true", help="disable domain fronting")
    parser.add_argument("--no-obfuscation", action="store_true", help="disable the obfuscation layer")
    parser.add_argument("--admin", action="store_true", help="start the loopback admin web server")
    parser.add_argument("--env-file", help="KEY=VALUE file loaded before the environment")
    parser.add_argument("--log-level", help="DEBUG, INFO, WARNING or ERROR")
    parser.add_argument("--log-file", help="append logs to this file")
    parser.add_argument("--version", action="version", version=f"veil {__version__}")
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> VeilConfig:
    config = VeilConfig(env_file=args.env_file)
    overrides = {
        "host": args.host,
        "port": args.port,
        "obfuscation_level": args.level,
        "log_level": args.log_level,
        "log_file": args.log_file,
    }
    config.update({k: v for k, v in overrides.items() if v is not None})
    if args.no_fronting:
        config.set("fronting_enabled", False)
    if args.no_obfuscation:
        config.set("obfuscation_enabled", False)
    if args.admin:
        config.set("web_admin_enabled", True)
    return config


async def run(config: VeilConfig):
    """Run the relay until interrupted."""
    logger = logging.getLogger(__name__)
    context = ProxyContext.from_config(config)
    server = VeilServer(context)
    await server.start()

    if config.get("web_admin_enabled"):
        from .web.server import start_server
        start_server(context, host="127.0.0.1", port=config.get("web_admin_port"))

    loop = asyncio.get_running_loop()
    serve = asyncio.ensure_future(server.serve_forever())
    if sys.platform != "win32":
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, serve.cancel)

    logger.info(
        f"Veil {__version__} ready (obfuscation level {context.obfuscation.level}, "
        f"fronting {'on' if context.fronting.enabled else 'off'}, "
        f"dns {' -> '.join(s.name for s in context.resolver.strategies)})"
    )
    try:
        await serve
    except asyncio.CancelledError:
        logger.info("Shutdown requested")
    finally:
        await server.stop()
        context.close()


def main(argv: Optional[List[str]] = None):
    args = parse_args(argv)
    config = build_config(args)
    setup_logging(config.get("log_level"), config.get("log_file") or None)
    logger = logging.getLogger(__name__)
    try:
        asyncio.run(run(config))
    except ConfigError as e:
        for error in e.details.get("errors", [e.message]):
            logger.error(f"Configuration error: {error}")
        sys.exit(2)
    except KeyboardInterrupt:
        logger.info("Interrupted")


if __name__ == "__main__":
    main()
