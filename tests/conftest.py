"""
Shared fixtures: an in-memory channel for the unit tests and a live
reflector on loopback for the integration tests
"""

import threading

import pytest

from udptools.reflector import Reflector, ShutdownChannel

from fakes import FakeChannel


@pytest.fixture
def fake_channel():
    return FakeChannel()


@pytest.fixture
def echo_channel():
    return FakeChannel(echo=True)


@pytest.fixture
def live_reflector():
    """A Reflector serving one loopback endpoint in a background thread"""
    reflector = Reflector()
    endpoint = reflector.listen("127.0.0.1", 0, name="live")
    shutdown = ShutdownChannel()
    reflector.set_control(shutdown, shutdown.handle)

    thread = threading.Thread(target=reflector.serve, daemon=True)
    thread.start()
    try:
        yield endpoint
    finally:
        shutdown.trigger()
        thread.join(timeout=5)
        shutdown.close()
        reflector.close()
