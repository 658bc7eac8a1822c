#!/usr/bin/env python3
"""
UDP Reflector Server
Echoes UDP datagrams back to their senders on one or more ports until
SIGINT/SIGTERM, then prints per-endpoint counters
"""

import argparse
import logging
import os
import signal
import sys
from typing import List, Optional

from udptools.channel import ChannelError
from udptools.config_loader import (
    DEFAULT_CONFIG_PATH, ConfigError, ConfigLoader, ListenConfig, SystemConfig, parse_listen
)
from udptools.metrics import start_metrics_server
from udptools.reflector import Feedback, Reflector, ShutdownChannel

# Configuration
REFLECTOR_HOST = os.getenv("REFLECTOR_HOST", "0.0.0.0")
REFLECTOR_PORT = int(os.getenv("REFLECTOR_PORT", "5201"))
METRICS_PORT = int(os.getenv("METRICS_PORT", "0"))

logger = logging.getLogger("udptools.reflector")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="udptools-reflect",
        description="Reflect UDP datagrams back to their senders"
    )
    parser.add_argument("listen", nargs="*", metavar="[HOST:]PORT",
                        help=f"addresses to listen on (default: {REFLECTOR_HOST}:{REFLECTOR_PORT})")
    parser.add_argument("--single", action="store_true",
                        help="one receive call per datagram, even where batching is available")
    parser.add_argument("--batch-size", type=int, metavar="N",
                        help="datagrams drained per batch receive (default: 64)")
    parser.add_argument("--max-datagram", type=int, metavar="N",
                        help="receive buffer size; larger datagrams are not reflected (default: 9000)")
    parser.add_argument("--feedback", action="store_true",
                        help="print a 'ping -f' style progress indicator")
    parser.add_argument("--config", default=DEFAULT_CONFIG_PATH,
                        help="YAML configuration file (env UDPTOOLS_CONFIG)")
    parser.add_argument("--metrics-port", type=int, help="serve Prometheus metrics on this port")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    return parser


def load_config(args: argparse.Namespace) -> SystemConfig:
    """Configuration file (if any) with command-line overrides applied"""
    config = ConfigLoader.load(args.config) if args.config else SystemConfig()
    refl = config.reflector

    if args.listen:
        refl.listen = [parse_listen(address) for address in args.listen]
    if not refl.listen:
        refl.listen = [ListenConfig(host=REFLECTOR_HOST, port=REFLECTOR_PORT)]
    if args.single:
        refl.prefer_batch = False
    if args.batch_size is not None:
        refl.batch_size = args.batch_size
    if args.max_datagram is not None:
        refl.max_datagram = args.max_datagram
    if args.feedback:
        refl.feedback = True

    if args.metrics_port is not None:
        config.metrics_port = args.metrics_port
    elif not config.metrics_port:
        config.metrics_port = METRICS_PORT
    return config


def print_summary(reflector: Reflector):
    for endpoint in reflector.endpoints:
        print(f"{endpoint.name}: {endpoint.received} received "
              f"({endpoint.received_bytes} octets), {endpoint.transmitted} reflected, "
              f"{endpoint.errored} errors")


def main(argv: Optional[List[str]] = None) -> int:
    """Run the reflector; returns the process exit code"""
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s [%(levelname)s] %(message)s'
    )

    try:
        config = load_config(args)
    except (ConfigError, FileNotFoundError) as e:
        logger.error(f"error: {e}")
        return 1
    if not ConfigLoader.validate(config):
        return 1

    refl = config.reflector
    feedback = Feedback(sys.stdout) if refl.feedback else None
    shutdown = ShutdownChannel()

    with Reflector(max_datagram=refl.max_datagram, batch_size=refl.batch_size,
                   prefer_batch=refl.prefer_batch, feedback=feedback) as reflector:
        try:
            for listen in refl.listen:
                reflector.listen(listen.host, listen.port, listen.name)
        except ChannelError as e:
            logger.error(f"error: {e}")
            shutdown.close()
            return 1

        reflector.set_control(shutdown, shutdown.handle)
        previous = {
            signum: signal.signal(signum, lambda *_: shutdown.trigger())
            for signum in (signal.SIGINT, signal.SIGTERM)
        }

        logger.info("=" * 60)
        logger.info(f"UDP Reflector started on {len(reflector.endpoints)} endpoint(s)")
        logger.info("=" * 60)

        try:
            try:
                start_metrics_server(config.metrics_port)
            except OSError as e:
                logger.error(f"error: metrics server on port {config.metrics_port}: {e}")
                return 1
            clean = reflector.serve()
        finally:
            for signum, handler in previous.items():
                signal.signal(signum, handler)
            shutdown.close()

        print_summary(reflector)

    return 0 if clean else 1


if __name__ == "__main__":
    sys.exit(main())
