#!/usr/bin/env python3
"""
rss2json entry point.

Modes:
  serve     run the HTTP API (default)
  convert   fetch one feed and print the JSON result to stdout

Configuration comes from the environment (see config.py).
"""

import argparse
import asyncio
import json
import sys
from typing import List, Optional, Tuple

from aiohttp import web

from config import config, get_logger, parse_header_list
from converter import FeedConverter
from errors import ConversionError
from model import compact
from server import create_app, map_error
from transport import FeedTransport

logger = get_logger("main")

LOGO = [
    "   ____  ____  ____  ____   ___   ___   _   _ ",
    "  |  _ \\|  _ \\| ___||___ \\ / _ \\ / _ \\ | \\ | |",
    "  | |_) | |_) |___ \\  __) | | | | | | ||  \\| |",
    "  |  _ <|  __/ ___) |/ __/| |_| | |_| || |\\  |",
    "  |_| \\_\\_|   |____/|_____|\\___/ \\___(_)_| \\_|",
]


def split_listen_addr(addr: str) -> Tuple[str, int]:
    """Split ``host:port`` (``:port`` binds all interfaces)."""
    host, sep, port = addr.rpartition(":")
    if not sep:
        raise ValueError(f"listen address must be host:port, got '{addr}'")
    host = host.strip("[]") or "0.0.0.0"
    return host, int(port)


def log_banner(addr: str, auth_enabled: bool, request_log: bool) -> None:
    border = "#" * 56
    host_for_url = "127.0.0.1" + addr if addr.startswith(":") else addr
    logger.info(
        "\n%s\n%s\n  Listen: %s\n  API:    http://%s/api/v1/rss2json?url=<rss_url>\n"
        "  Log:    %s (REQUEST_LOG)\n  Auth:   %s (API_KEY)\n%s",
        border,
        "\n".join(LOGO),
        addr,
        host_for_url,
        "on" if request_log else "off",
        "on" if auth_enabled else "off",
        border,
    )


def serve(listen: Optional[str] = None) -> None:
    addr = listen or config.LISTEN_ADDR
    host, port = split_listen_addr(addr)
    log_banner(addr, bool(config.API_KEY), config.REQUEST_LOG)
    logger.debug(f"Configuration: {config.get_config_summary()}")
    web.run_app(create_app(), host=host, port=port, print=None)


async def convert_once(url: str, headers: List[Tuple[str, str]], timeout: Optional[float]) -> dict:
    transport = FeedTransport.from_config(config)
    try:
        converter = FeedConverter(transport)
        return await converter.convert(url, headers=headers, timeout=timeout)
    finally:
        await transport.close()


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(description='RSS/Atom to JSON converter')
    subparsers = parser.add_subparsers(dest='mode')

    serve_parser = subparsers.add_parser('serve', help='Run the HTTP API')
    serve_parser.add_argument('--listen', type=str,
                              help='host:port to bind (default: LISTEN_ADDR / PORT / 0.0.0.0:8080)')

    convert_parser = subparsers.add_parser('convert', help='Convert one feed and print JSON')
    convert_parser.add_argument('url', help='Feed URL')
    convert_parser.add_argument('--header', action='append', default=[], metavar='KEY=VALUE',
                                help='Extra request header (repeatable, overrides RSS_HEADERS)')
    convert_parser.add_argument('--timeout', type=float,
                                help='Overall deadline in seconds (default: HTTP_TIMEOUT)')
    convert_parser.add_argument('--pretty', action='store_true',
                                help='Indent JSON output')

    args = parser.parse_args(argv)

    try:
        if args.mode in (None, 'serve'):
            serve(getattr(args, 'listen', None))
            return 0

        headers = parse_header_list(",".join(args.header))
        try:
            result = asyncio.run(convert_once(args.url, headers, args.timeout))
        except ConversionError as e:
            _, message = map_error(e)
            logger.error(f"{message} ({e})")
            return 1
        print(json.dumps(compact(result), ensure_ascii=False, indent=2 if args.pretty else None))
        return 0
    except KeyboardInterrupt:
        logger.info("Shutting down")
        return 0


if __name__ == "__main__":
    sys.exit(main())
