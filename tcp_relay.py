#!/usr/bin/env python3
"""
tcp_relay.py

Listens on <from> and relays every accepted TCP connection to <to>, copying
bytes both ways until either side closes. The payload is never interpreted.

Shutdown behavior:
  - On Ctrl+C / SIGTERM: stop accepting, wait for the accept loop, exit 0
  - Relays already running are not waited for

Usage:
  python3 tcp_relay.py 127.0.0.1:8081 127.0.0.1:8080
  python3 tcp_relay.py -debug 127.0.0.1:8081 127.0.0.1:8080
"""
import argparse
import asyncio
import logging
import signal
import sys

from relay_config import AddressError, RelayConfig, parse_address
from relay_server import ListenerState, RelayServer

logger = logging.getLogger("tcp_relay")

EXAMPLES = """Examples:
\trelay 127.0.0.1:8081 127.0.0.1:8080
\trelay -debug 127.0.0.1:8081 127.0.0.1:8080
"""

LEVEL_COLORS = {
    logging.DEBUG: "37",
    logging.INFO: "36",
    logging.WARNING: "33",
    logging.ERROR: "31",
    logging.CRITICAL: "31",
}


class LevelColorFormatter(logging.Formatter):
    """Colors the level name when writing to a terminal."""

    def __init__(self, fmt, color=False):
        super().__init__(fmt)
        self.color = color

    def format(self, record):
        text = super().format(record)
        if not self.color:
            return text
        code = LEVEL_COLORS.get(record.levelno, "0")
        return text.replace(record.levelname, f"\x1b[{code}m{record.levelname}\x1b[0m", 1)


def configure_logging(debug=False):
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(LevelColorFormatter("%(levelname)s %(message)s",
                                             color=sys.stderr.isatty()))
    logging.basicConfig(level=logging.DEBUG if debug else logging.INFO,
                        handlers=[handler], force=True)


def build_parser():
    parser = argparse.ArgumentParser(
        prog="relay",
        usage="%(prog)s [options] <from> <to>",
        epilog=EXAMPLES,
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("-debug", "--debug", action="store_true",
                        help="Print debug info (hex dump of relayed data)")
    parser.add_argument("source", metavar="<from>", help="listen address, host:port")
    parser.add_argument("target", metavar="<to>", help="upstream address, host:port")
    return parser


def load_config(args):
    return RelayConfig(
        listen=parse_address(args.source),
        upstream=parse_address(args.target),
        debug=args.debug,
    )


async def run(config):
    server = RelayServer(config.listen, config.upstream, dump=config.debug)
    server.bind()

    loop = asyncio.get_running_loop()

    def request_stop():
        if server.state not in (ListenerState.BOUND, ListenerState.ACCEPTING):
            return
        logger.info("Shutdown...")
        server.stop()

    signals = (signal.SIGINT, signal.SIGTERM)
    for sig in signals:
        try:
            loop.add_signal_handler(sig, request_stop)
        except NotImplementedError:
            signal.signal(sig, lambda *_: loop.call_soon_threadsafe(request_stop))

    try:
        await server.serve()
    finally:
        for sig in signals:
            try:
                loop.remove_signal_handler(sig)
            except NotImplementedError:
                signal.signal(sig, signal.SIG_DFL)


def main(argv=None):
    args = build_parser().parse_args(argv)
    configure_logging(args.debug)

    try:
        config = load_config(args)
    except AddressError as e:
        logger.critical(str(e))
        return 1

    try:
        asyncio.run(run(config))
    except OSError as e:
        logger.critical(str(e))
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
