#!/usr/bin/env python3
"""
UDP Loss Probe
Reads datagrams as hex lines on stdin, sends each one (optionally many times)
to an echoing peer and counts the copies that do not come back intact.
Exit code is 0 only when nothing was lost.
"""

import argparse
import logging
import os
import sys
from typing import List, Optional, TextIO

from udptools.channel import ChannelError, DatagramChannel
from udptools.config_loader import (
    DEFAULT_CONFIG_PATH, ConfigError, ConfigLoader, ProbeConfig, SystemConfig
)
from udptools.metrics import start_metrics_server
from udptools.prober import ProbeSession

# Configuration
METRICS_PORT = int(os.getenv("METRICS_PORT", "0"))

logger = logging.getLogger("udptools.probe")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="udptools-probe",
        description="Send hex datagrams from stdin to an echoing peer and measure loss"
    )
    parser.add_argument("host", nargs="?", help="peer host")
    parser.add_argument("port", nargs="?", type=int, help="peer UDP port (not with --raw)")
    parser.add_argument("-d", "--repeat", type=int, metavar="N",
                        help="send every datagram N times (default: 1)")
    parser.add_argument("--batch-size", type=int, metavar="N",
                        help="datagrams in flight per batch (default: 100)")
    parser.add_argument("--timeout", type=float, metavar="S",
                        help="seconds to wait for each reply (default: 0.5)")
    parser.add_argument("--flood", action="store_true", default=None,
                        help="send without waiting for replies")
    parser.add_argument("--raw", metavar="PROTO",
                        help="send raw IP datagrams of this protocol instead of UDP")
    parser.add_argument("-s", "--source", metavar="HOST", help="local address to bind")
    parser.add_argument("--unconnected", action="store_true",
                        help="use sendto() on an unconnected socket")
    parser.add_argument("--config", default=DEFAULT_CONFIG_PATH,
                        help="YAML configuration file (env UDPTOOLS_CONFIG)")
    parser.add_argument("--metrics-port", type=int, help="serve Prometheus metrics on this port")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    return parser


def load_config(args: argparse.Namespace) -> SystemConfig:
    """Configuration file (if any) with command-line overrides applied"""
    config = ConfigLoader.load(args.config) if args.config else SystemConfig()
    probe = config.probe

    overrides = {
        'host': args.host,
        'port': args.port,
        'protocol': args.raw,
        'source': args.source,
        'repeat': args.repeat,
        'batch_size': args.batch_size,
        'timeout': args.timeout,
        'flood': args.flood,
    }
    for name, value in overrides.items():
        if value is not None:
            setattr(probe, name, value)
    if args.unconnected:
        probe.connected = False

    if args.metrics_port is not None:
        config.metrics_port = args.metrics_port
    elif not config.metrics_port:
        config.metrics_port = METRICS_PORT
    return config


def open_channel(probe: ProbeConfig) -> DatagramChannel:
    if not probe.host:
        raise ConfigError("no peer host given")
    if probe.protocol:
        return DatagramChannel.raw(probe.host, probe.protocol, source=probe.source)
    if probe.port is None:
        raise ConfigError("no peer port given")
    return DatagramChannel.connect(probe.host, probe.port, source=probe.source,
                                   connected=probe.connected)


def main(argv: Optional[List[str]] = None, stdin: Optional[TextIO] = None) -> int:
    """Probe every line of stdin; returns the process exit code"""
    args = build_parser().parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s [%(levelname)s] %(message)s'
    )

    try:
        config = load_config(args)
        if not ConfigLoader.validate(config):
            return 1
        channel = open_channel(config.probe)
    except (ConfigError, ChannelError, FileNotFoundError) as e:
        logger.error(f"error: {e}")
        return 1

    probe = config.probe
    logger.info(f"Probing {channel.name}: repeat={probe.repeat}, batch={probe.batch_size}, "
                f"timeout={probe.timeout}s{', flood' if probe.flood else ''}")

    with channel:
        try:
            start_metrics_server(config.metrics_port)
        except OSError as e:
            logger.error(f"error: metrics server on port {config.metrics_port}: {e}")
            return 1

        session = ProbeSession(channel, repeat=probe.repeat, batch_size=probe.batch_size,
                               timeout=probe.timeout, flood=probe.flood)
        try:
            totals = session.run(stdin if stdin is not None else sys.stdin)
        except KeyboardInterrupt:
            logger.info("Interrupted")
            return 1

    print(totals.summary())
    return totals.exit_code


if __name__ == "__main__":
    sys.exit(main())
