#!/usr/bin/env python3
"""
Tests for the reflector drain step, its accounting, and the control channel
"""

import io
import logging
import socket
import threading

import pytest

from udptools.channel import DatagramChannel, Readiness
from udptools.receivers import BatchReceiver, SingleReceiver
from udptools.reflector import (
    Endpoint, Feedback, Reflector, ReflectorState, ShutdownChannel, drain_endpoint
)

from fakes import FakeChannel

ALICE = ("192.0.2.10", 40000)
BOB = ("198.51.100.7", 40001)


def make_endpoint(receiver=None, **kwargs):
    return Endpoint(name="ep", channel=FakeChannel(**kwargs), receiver=receiver or SingleReceiver())


def test_reflects_to_each_source():
    endpoint = make_endpoint()
    endpoint.channel.queue(b"one", ALICE)
    endpoint.channel.queue(b"two!", BOB)
    endpoint.channel.queue(b"three", ALICE)

    assert drain_endpoint(endpoint) == 3

    assert endpoint.channel.sent == [(b"one", ALICE), (b"two!", BOB), (b"three", ALICE)]
    assert endpoint.counters() == {
        'received': 3, 'transmitted': 3, 'errored': 0, 'received_bytes': 12
    }


def test_truncated_datagram_is_not_reflected():
    endpoint = make_endpoint()
    endpoint.channel.queue(b"x" * 100, ALICE)
    endpoint.channel.queue(b"ok", BOB)

    drain_endpoint(endpoint, max_datagram=16)

    assert endpoint.channel.sent == [(b"ok", BOB)]
    assert endpoint.received == 2
    assert endpoint.errored == 1
    assert endpoint.transmitted == 1
    assert endpoint.received_bytes == 16 + 2


def test_failed_reflect_counts_as_error():
    endpoint = make_endpoint()
    endpoint.channel.send_errors.append(OSError(101, "Network is unreachable"))
    endpoint.channel.queue(b"a", ALICE)
    endpoint.channel.queue(b"b", BOB)

    drain_endpoint(endpoint)

    assert endpoint.received == 2
    assert endpoint.transmitted == 1
    assert endpoint.errored == 1
    assert endpoint.received == endpoint.transmitted + endpoint.errored


def test_receive_error_ends_pass_uncounted(caplog):
    endpoint = make_endpoint()
    endpoint.channel.queue(b"a", ALICE)
    endpoint.channel.queue_error(ConnectionRefusedError(111, "Connection refused"))
    endpoint.channel.queue(b"b", BOB)

    with caplog.at_level(logging.WARNING):
        assert drain_endpoint(endpoint) == 1

    assert endpoint.received == 1
    assert "ep: recv failed" in caplog.text
    # the rest is picked up on the next pass
    assert drain_endpoint(endpoint) == 1
    assert endpoint.received == 2


def test_receiver_selected_when_missing():
    endpoint = Endpoint(name="ep", channel=FakeChannel(supports_batch=False))
    endpoint.channel.queue(b"a", ALICE)

    drain_endpoint(endpoint)

    assert isinstance(endpoint.receiver, SingleReceiver)
    assert endpoint.transmitted == 1


def run_traffic(receiver):
    endpoint = make_endpoint(receiver)
    channel = endpoint.channel
    channel.send_errors.extend([None, None, OSError(105, "No buffer space")])
    for i in range(40):
        size = (i * 37) % 300
        channel.queue(bytes([i]) * size, ALICE if i % 2 else BOB)
        if i % 13 == 0:
            drain_endpoint(endpoint, max_datagram=256)
    drain_endpoint(endpoint, max_datagram=256)
    return endpoint.counters(), channel.sent


@pytest.mark.parametrize("batch_size", [1, 4, 64])
def test_batch_and_single_paths_are_equivalent(batch_size):
    single = run_traffic(SingleReceiver())
    batch = run_traffic(BatchReceiver(batch_size))

    assert single == batch
    counters, _sent = single
    assert counters['received'] == 40
    assert counters['errored'] > 0


def test_feedback_marks():
    out = io.StringIO()
    endpoint = make_endpoint()
    endpoint.channel.send_errors.extend([None, OSError(1, "Operation not permitted")])
    endpoint.channel.queue(b"ok", ALICE)
    endpoint.channel.queue(b"fails", ALICE)
    endpoint.channel.queue(b"x" * 50, ALICE)
    endpoint.channel.queue_error(OSError(5, "I/O error"))

    drain_endpoint(endpoint, max_datagram=10, feedback=Feedback(out))

    assert out.getvalue() == ".\b+.\b-/?"


def test_quiet_feedback_writes_nothing():
    out = io.StringIO()
    feedback = Feedback(out, verbose=False)
    feedback.rx('.')
    feedback.tx('+')
    assert out.getvalue() == ""


def test_shutdown_channel_stops_reflector():
    shutdown = ShutdownChannel()
    with Reflector() as reflector:
        reflector.set_control(shutdown, shutdown.handle)

        assert reflector.run_once(timeout=0.01)
        assert reflector.state is ReflectorState.SERVING

        shutdown.trigger()
        shutdown.trigger()
        assert not reflector.run_once(timeout=1.0)
        assert reflector.state is ReflectorState.STOPPED
        assert not reflector.failed
        assert not reflector.run_once(timeout=0.01)
    shutdown.close()


def test_control_handler_may_decline_to_stop():
    shutdown = ShutdownChannel()
    calls = []

    def handler(fileobj):
        calls.append(fileobj)
        shutdown.handle()
        return False

    with Reflector() as reflector:
        reflector.set_control(shutdown, handler)
        shutdown.trigger()
        assert reflector.run_once(timeout=1.0)
        assert calls == [shutdown]
    shutdown.close()


def test_endpoints_fixed_once_serving():
    with Reflector() as reflector:
        reflector.listen("127.0.0.1", 0)
        reflector.run_once(timeout=0)
        with pytest.raises(RuntimeError):
            reflector.listen("127.0.0.1", 0)


def test_totals_sum_endpoints():
    reflector = Reflector()
    reflector.endpoints = [make_endpoint(), make_endpoint()]
    reflector.endpoints[0].channel.queue(b"abc", ALICE)
    reflector.endpoints[1].channel.queue(b"de", BOB)

    reflector.drain(0)
    reflector.drain(1)

    assert reflector.totals() == {
        'received': 2, 'transmitted': 2, 'errored': 0, 'received_bytes': 5
    }


def test_blocking_channel_does_not_stall_other_endpoints():
    blocking = DatagramChannel.bind("127.0.0.1", 0, name="a", nonblocking=False)
    with Reflector() as reflector:
        first = reflector.add_endpoint(blocking, "a", receiver=SingleReceiver())
        second = reflector.listen("127.0.0.1", 0, name="b")
        assert blocking.sock.getblocking() is False

        client = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
        client.settimeout(2.0)
        try:
            client.sendto(b"only one", first.channel.local_address)
            done = []
            worker = threading.Thread(
                target=lambda: done.append(reflector.run_once(timeout=0.5)), daemon=True)
            worker.start()
            worker.join(timeout=5)

            assert done == [True]
            assert first.received == 1
            assert client.recvfrom(2048)[0] == b"only one"
        finally:
            client.close()

        assert second.received == 0


def test_single_receiver_ends_on_blocking_channel():
    with DatagramChannel.bind("127.0.0.1", 0, nonblocking=False) as channel:
        with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as client:
            client.sendto(b"x", channel.local_address)
            assert channel.readiness(2.0) is Readiness.READY

            results = []
            worker = threading.Thread(
                target=lambda: results.extend(SingleReceiver().drain(channel, 100)), daemon=True)
            worker.start()
            worker.join(timeout=5)

            assert not worker.is_alive()
            assert [r.datagram.data for r in results] == [b"x"]
