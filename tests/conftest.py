"""Shared fixtures for multissh tests."""

import socket
import threading

import pytest

from multissh.config import RunConfig
from multissh.logger import StructuredLogger
from multissh.scheduler import MultiSSH

from fakes import FakeNetwork


@pytest.fixture
def network():
    return FakeNetwork()


@pytest.fixture
def logger():
    return StructuredLogger(level="debug", enable_console=False)


@pytest.fixture
def make_config():
    def factory(**kwargs):
        kwargs.setdefault("poll_interval", 0.01)
        kwargs.setdefault("connect_timeout", 5.0)
        kwargs.setdefault("auth_timeout", 5.0)
        return RunConfig(**kwargs)
    return factory


@pytest.fixture
def make_engine(network, logger, make_config):
    def factory(agent_factory=None, **kwargs):
        return MultiSSH(make_config(**kwargs), logger, connector=network,
                        agent_factory=agent_factory)
    return factory


@pytest.fixture
def stalled_resolver(monkeypatch):
    """Make name lookups hang until the test ends."""
    release = threading.Event()

    def getaddrinfo(*args, **kwargs):
        release.wait(5)
        raise socket.gaierror(socket.EAI_AGAIN, "Temporary failure in name resolution")

    monkeypatch.setattr(socket, "getaddrinfo", getaddrinfo)
    yield
    release.set()
