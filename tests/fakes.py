"""
In-memory test doubles
"""

from collections import deque

from udptools.channel import Datagram, Readiness, ReceiveResult, SendResult


class FakeChannel:
    """In-memory stand-in for DatagramChannel"""

    def __init__(self, name="fake", supports_batch=True, echo=None, peer=("192.0.2.1", 7)):
        self.name = name
        self.supports_batch = supports_batch
        self.echo = echo
        self.peer = peer
        self.inbox = deque()
        self.sent = []
        self.send_errors = deque()
        self.waits = []
        self.receive_calls = 0
        self.batch_calls = 0
        self.nonblocking = False

    def queue(self, data, address=None, truncated=False):
        self.inbox.append(ReceiveResult(datagram=Datagram(data, address, truncated)))

    def queue_error(self, error):
        self.inbox.append(ReceiveResult(error=error))

    def send(self, data, address=None):
        error = self.send_errors.popleft() if self.send_errors else None
        if error is not None:
            return SendResult(error=error)
        self.sent.append((data, address))
        if self.echo is not None:
            reply = self.echo(data) if callable(self.echo) else data
            self.queue(reply, address or self.peer)
        return SendResult(sent=len(data))

    def _take(self, max_len):
        result = self.inbox.popleft()
        datagram = result.datagram
        if datagram is not None and len(datagram.data) > max_len:
            result = ReceiveResult(datagram=Datagram(datagram.data[:max_len], datagram.address, True))
        return result

    def set_nonblocking(self):
        self.nonblocking = True

    def receive(self, max_len, nonblocking=False):
        self.receive_calls += 1
        if not self.inbox:
            return ReceiveResult()
        return self._take(max_len)

    def receive_batch(self, max_datagrams, max_len):
        if not self.supports_batch:
            raise NotImplementedError("batch receive not supported")
        self.batch_calls += 1
        results = []
        while self.inbox and len(results) < max_datagrams:
            result = self._take(max_len)
            results.append(result)
            if result.error is not None:
                break
        return results

    def readiness(self, timeout):
        self.waits.append(timeout)
        return Readiness.READY if self.inbox else Readiness.TIMEOUT
