"""
Batched Loss-Measuring Prober
Sends copies of a datagram to an echoing peer and counts how many come back
intact within a bounded wait.
"""

import logging
from dataclasses import dataclass
from typing import Optional, TextIO

from udptools import metrics
from udptools.channel import Readiness
from udptools.hexcodec import MAX_DATAGRAM, hexdump, read_datagrams

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 0.5   # seconds, re-armed for every awaited reply
BATCH_SIZE = 100
RX_BUFFER = MAX_DATAGRAM + 1


@dataclass
class ProbeResult:
    """Outcome of probing with 'sent' copies of one payload"""
    sent: int = 0
    expected: int = 0
    confirmed: int = 0

    @property
    def loss(self) -> int:
        return self.sent - self.confirmed

    def __add__(self, other: "ProbeResult") -> "ProbeResult":
        return ProbeResult(
            sent=self.sent + other.sent,
            expected=self.expected + other.expected,
            confirmed=self.confirmed + other.confirmed,
        )


def _where(lineno: Optional[int]) -> str:
    return f"line {lineno}: " if lineno is not None else ""


def reply_matches(payload: bytes, datagram, lineno: Optional[int] = None) -> bool:
    """Is the reply the same as what we sent? Logs why not."""
    if datagram.truncated or len(datagram.data) != len(payload):
        logger.warning(f"warning: {_where(lineno)}sent {len(payload)} octets "
                       f"but got {len(datagram.data)}{' (truncated)' if datagram.truncated else ''}")
        return False

    if datagram.data != payload:
        logger.warning(f"warning: {_where(lineno)}rx data differs")
        if logger.isEnabledFor(logging.DEBUG):
            for line in hexdump(datagram.data):
                logger.debug(f"  rx: {line}")
        return False

    return True


def _send_copies(channel, payload: bytes, n: int, lineno: Optional[int]) -> int:
    """Send n copies; returns how many went out whole"""
    expected = 0
    for _ in range(n):
        result = channel.send(payload)
        if result.ok and result.sent == len(payload):
            expected += 1
        elif result.ok:
            logger.debug(f"{_where(lineno)}short write: {result.sent} of {len(payload)} octets")
        else:
            logger.debug(f"{_where(lineno)}send failed: {result.error}")
    return expected


def probe_batch(channel, payload: bytes, n: int, timeout: float = DEFAULT_TIMEOUT,
                lineno: Optional[int] = None) -> ProbeResult:
    """
    Send n copies of payload and wait for as many identical replies

    Only successful sends are expected to be answered. Each reply is awaited
    for at most 'timeout' seconds; the wait is re-armed per reply, so the
    total can exceed 'timeout'. A timeout or receive error ends the wait
    and the missing replies count as lost. Never raises for I/O problems.
    """
    expected = _send_copies(channel, payload, n, lineno)
    confirmed = 0

    for _ in range(expected):
        ready = channel.readiness(timeout)
        if ready is Readiness.TIMEOUT:
            logger.debug(f"{_where(lineno)}timeout after {confirmed} of {expected} replies")
            break
        if ready is Readiness.ERROR:
            logger.warning(f"warning: {_where(lineno)}readiness wait failed")
            break

        result = channel.receive(RX_BUFFER)
        if result.error is not None:
            logger.warning(f"warning: {_where(lineno)}recv failed: {result.error}")
            break
        if result.would_block:
            continue

        if reply_matches(payload, result.datagram, lineno):
            confirmed += 1

    return ProbeResult(sent=n, expected=expected, confirmed=confirmed)


def flood_batch(channel, payload: bytes, n: int, lineno: Optional[int] = None) -> ProbeResult:
    """Send n copies without waiting for replies; only failed sends count as lost"""
    expected = _send_copies(channel, payload, n, lineno)
    return ProbeResult(sent=n, expected=expected, confirmed=expected)


def probe(channel, payload: bytes, n: int, timeout: float = DEFAULT_TIMEOUT) -> int:
    """Number of the n copies of payload not confirmed by the peer"""
    return probe_batch(channel, payload, n, timeout).loss


def probe_repeated(channel, payload: bytes, count: int, batch_size: int = BATCH_SIZE,
                   timeout: float = DEFAULT_TIMEOUT, flood: bool = False,
                   lineno: Optional[int] = None) -> ProbeResult:
    """Probe 'count' copies in batches of at most batch_size, summing the results"""
    if batch_size < 1:
        raise ValueError(f"batch_size must be positive, got {batch_size}")

    total = ProbeResult()
    remaining = count
    while remaining:
        batch = min(batch_size, remaining)
        if flood:
            total += flood_batch(channel, payload, batch, lineno)
        else:
            total += probe_batch(channel, payload, batch, timeout, lineno)
        remaining -= batch
    return total


@dataclass
class SessionTotals:
    """Accumulated counters for a probe session"""
    lines: int = 0
    parse_errors: int = 0
    attempted: int = 0
    confirmed: int = 0
    lost: int = 0

    @property
    def exit_code(self) -> int:
        return 1 if self.lost else 0

    def summary(self) -> str:
        return (f"{self.attempted} attempted, {self.confirmed} confirmed, "
                f"{self.lost} lost ({self.lines} lines, {self.parse_errors} bad)")


class ProbeSession:
    """Probes every datagram of a line-oriented hex stream"""

    def __init__(self, channel, repeat: int = 1, batch_size: int = BATCH_SIZE,
                 timeout: float = DEFAULT_TIMEOUT, flood: bool = False):
        if repeat < 1:
            raise ValueError(f"repeat must be positive, got {repeat}")
        self.channel = channel
        self.repeat = repeat
        self.batch_size = batch_size
        self.timeout = timeout
        self.flood = flood
        self.target = getattr(channel, "name", "peer")

    def run_line(self, lineno: int, payload: bytes) -> ProbeResult:
        result = probe_repeated(self.channel, payload, self.repeat, self.batch_size,
                                self.timeout, self.flood, lineno)

        metrics.probe_sent.labels(target=self.target).inc(result.sent)
        metrics.probe_confirmed.labels(target=self.target).inc(result.confirmed)
        if result.loss:
            metrics.probe_lost.labels(target=self.target).inc(result.loss)
            logger.warning(f"warning: line {lineno}: {result.loss} packets lost")
        return result

    def run(self, stream: TextIO) -> SessionTotals:
        totals = SessionTotals()

        def count_error(_error):
            totals.parse_errors += 1

        for lineno, payload in read_datagrams(stream, on_error=count_error):
            totals.lines += 1

            result = self.run_line(lineno, payload)
            totals.attempted += result.sent
            totals.confirmed += result.confirmed
            totals.lost += result.loss

        return totals
