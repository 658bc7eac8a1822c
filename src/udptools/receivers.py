"""
Receive strategies for draining a readable channel.
BatchReceiver and SingleReceiver yield the same datagrams in the same order;
select_receiver() picks one from the channel's capabilities.
"""

import logging
from typing import Iterator, Union

from udptools.channel import ReceiveResult

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 64


class SingleReceiver:
    """One receive call per datagram until the channel would block"""

    name = "single"

    def drain(self, channel, max_len: int) -> Iterator[ReceiveResult]:
        while True:
            result = channel.receive(max_len, nonblocking=True)
            if result.would_block:
                return
            yield result
            if result.error is not None:
                return


class BatchReceiver:
    """Up to batch_size datagrams per channel call"""

    name = "batch"

    def __init__(self, batch_size: int = DEFAULT_BATCH_SIZE):
        if batch_size < 1:
            raise ValueError(f"batch_size must be positive, got {batch_size}")
        self.batch_size = batch_size

    def drain(self, channel, max_len: int) -> Iterator[ReceiveResult]:
        while True:
            results = channel.receive_batch(self.batch_size, max_len)
            for result in results:
                yield result
                if result.error is not None:
                    return
            if len(results) < self.batch_size:
                return


Receiver = Union[SingleReceiver, BatchReceiver]


def select_receiver(channel, batch_size: int = DEFAULT_BATCH_SIZE,
                    prefer_batch: bool = True) -> Receiver:
    """Batch receive where the channel supports it, single receives otherwise"""
    if prefer_batch and getattr(channel, "supports_batch", False):
        return BatchReceiver(batch_size)
    if prefer_batch:
        logger.debug(f"{getattr(channel, 'name', channel)}: no batch receive, using single receives")
    return SingleReceiver()

