"""
Multiplexed Reflector
Waits for readiness across many bound channels and sends every well-formed
datagram back to its source, keeping per-endpoint counters.
"""

import logging
import selectors
import socket
import sys
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, TextIO

from udptools import metrics
from udptools.channel import DatagramChannel
from udptools.receivers import DEFAULT_BATCH_SIZE, Receiver, select_receiver

logger = logging.getLogger(__name__)

CONTROL_INDEX = -1
DEFAULT_MAX_DATAGRAM = 9000


class ReflectorState(Enum):
    IDLE = "idle"
    SERVING = "serving"
    STOPPED = "stopped"


class Feedback:
    """Progress indicator similar to 'ping -f'"""

    def __init__(self, stream: Optional[TextIO] = None, verbose: bool = True):
        self.stream = stream if stream is not None else sys.stdout
        self.verbose = verbose

    def rx(self, ch: str):
        if self.verbose:
            self.stream.write(ch)
            self.stream.flush()

    def tx(self, ch: str):
        if self.verbose:
            self.stream.write("\b" + ch)
            self.stream.flush()


@dataclass
class Endpoint:
    """A listening channel and its counters"""
    name: str
    channel: DatagramChannel
    receiver: Optional[Receiver] = None
    received: int = 0
    transmitted: int = 0
    errored: int = 0
    received_bytes: int = 0

    def counters(self) -> Dict[str, int]:
        return {
            'received': self.received,
            'transmitted': self.transmitted,
            'errored': self.errored,
            'received_bytes': self.received_bytes,
        }


def drain_endpoint(endpoint: Endpoint, max_datagram: int = DEFAULT_MAX_DATAGRAM,
                   feedback: Optional[Feedback] = None) -> int:
    """
    Reflect everything pending on the endpoint's channel

    Truncated datagrams are counted as errored and not reflected; the rest
    go back to their exact source address. Returns the number of datagrams
    received in this pass.
    """
    receiver = endpoint.receiver
    if receiver is None:
        receiver = endpoint.receiver = select_receiver(endpoint.channel)

    label = endpoint.name
    count = 0

    for result in receiver.drain(endpoint.channel, max_datagram):
        if result.error is not None:
            logger.warning(f"{label}: recv failed: {result.error}")
            if feedback:
                feedback.rx('?')
            break

        datagram = result.datagram
        count += 1
        endpoint.received += 1
        endpoint.received_bytes += len(datagram.data)
        metrics.reflector_received.labels(endpoint=label).inc()
        metrics.reflector_received_bytes.labels(endpoint=label).inc(len(datagram.data))

        if datagram.truncated:
            endpoint.errored += 1
            metrics.reflector_errored.labels(endpoint=label).inc()
            logger.debug(f"{label}: truncated datagram from {datagram.address}")
            if feedback:
                feedback.rx('/')
            continue

        if feedback:
            feedback.rx('.')
        sent = endpoint.channel.send(datagram.data, datagram.address)
        if sent.ok and sent.sent == len(datagram.data):
            endpoint.transmitted += 1
            metrics.reflector_transmitted.labels(endpoint=label).inc()
            if feedback:
                feedback.tx('+')
        else:
            endpoint.errored += 1
            metrics.reflector_errored.labels(endpoint=label).inc()
            logger.debug(f"{label}: reflect to {datagram.address} failed: "
                         f"{sent.error or f'short write {sent.sent}'}")
            if feedback:
                feedback.tx('-')

    return count


class ShutdownChannel:
    """Control channel that tells the reflector to stop; trigger() is signal-safe"""

    def __init__(self):
        self._reader, self._writer = socket.socketpair()
        self._reader.setblocking(False)
        self._writer.setblocking(False)

    def fileno(self) -> int:
        return self._reader.fileno()

    def trigger(self):
        try:
            self._writer.send(b"x")
        except BlockingIOError:
            pass  # a stop request is already pending

    def handle(self, _fileobj=None) -> bool:
        try:
            while self._reader.recv(64):
                pass
        except BlockingIOError:
            pass
        logger.info("Shutdown requested")
        return True

    def close(self):
        self._reader.close()
        self._writer.close()


class Reflector:
    """Reflects datagrams on every registered endpoint until stopped"""

    def __init__(self, max_datagram: int = DEFAULT_MAX_DATAGRAM,
                 batch_size: int = DEFAULT_BATCH_SIZE, prefer_batch: bool = True,
                 feedback: Optional[Feedback] = None):
        self.max_datagram = max_datagram
        self.batch_size = batch_size
        self.prefer_batch = prefer_batch
        self.feedback = feedback
        self.endpoints: List[Endpoint] = []
        self.state = ReflectorState.IDLE
        self.failed = False
        self._selector = selectors.DefaultSelector()
        self._control_fileobj = None
        self._control_handler: Optional[Callable[[object], bool]] = None

    # --- setup ---

    def add_endpoint(self, channel: DatagramChannel, name: Optional[str] = None,
                     receiver: Optional[Receiver] = None) -> Endpoint:
        if self.state is not ReflectorState.IDLE:
            raise RuntimeError(f"cannot add endpoints while {self.state.value}")
        if receiver is None:
            receiver = select_receiver(channel, self.batch_size, self.prefer_batch)
        # a drain must end at "would block", never wait inside a receive
        channel.set_nonblocking()

        endpoint = Endpoint(name=name or channel.name, channel=channel, receiver=receiver)
        index = len(self.endpoints)
        self.endpoints.append(endpoint)
        self._selector.register(channel.fileno(), selectors.EVENT_READ, data=index)
        logger.info(f"Endpoint {index}: {endpoint.name} ({receiver.name} receive)")
        return endpoint

    def listen(self, host: Optional[str], port, name: Optional[str] = None) -> Endpoint:
        """Bind host:port and register it; raises ChannelError on failure"""
        channel = DatagramChannel.bind(host, port, name=name)
        try:
            return self.add_endpoint(channel, name)
        except RuntimeError:
            channel.close()
            raise

    def set_control(self, fileobj, handler: Callable[[object], bool]):
        """Watch fileobj too; handler(fileobj) returns True to stop serving"""
        if self._control_handler is not None:
            self._selector.unregister(self._control_fileobj)
        self._control_fileobj = fileobj
        self._control_handler = handler
        self._selector.register(fileobj, selectors.EVENT_READ, data=CONTROL_INDEX)

    # --- serving ---

    def drain(self, index: int) -> int:
        return drain_endpoint(self.endpoints[index], self.max_datagram, self.feedback)

    def run_once(self, timeout: Optional[float] = None) -> bool:
        """
        One readiness wait and dispatch; returns False once stopped

        With timeout=None an empty wakeup is fatal. With a timeout it only
        means nothing arrived.
        """
        if self.state is ReflectorState.STOPPED:
            return False
        self.state = ReflectorState.SERVING

        try:
            events = self._selector.select(timeout)
        except InterruptedError:
            return True
        except OSError as e:
            logger.error(f"Readiness wait failed: {e}")
            self.state = ReflectorState.STOPPED
            self.failed = True
            return False

        if not events:
            if timeout is None:
                logger.error("Readiness wait returned nothing")
                self.state = ReflectorState.STOPPED
                self.failed = True
                return False
            return True

        for key, _mask in events:
            if key.data == CONTROL_INDEX:
                if self._control_handler(key.fileobj):
                    self.state = ReflectorState.STOPPED
                    return False
            else:
                self.drain(key.data)
        return True

    def serve(self) -> bool:
        """Serve until the control channel says stop or the wait fails; False on failure"""
        logger.info(f"Reflecting on {len(self.endpoints)} endpoint(s)")
        while self.run_once(None):
            pass
        logger.info("Reflector stopped")
        return not self.failed

    # --- reporting and teardown ---

    def totals(self) -> Dict[str, int]:
        summed = {'received': 0, 'transmitted': 0, 'errored': 0, 'received_bytes': 0}
        for endpoint in self.endpoints:
            for key, value in endpoint.counters().items():
                summed[key] += value
        return summed

    def close(self):
        self.state = ReflectorState.STOPPED
        self._selector.close()
        for endpoint in self.endpoints:
            endpoint.channel.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
