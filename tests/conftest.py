"""
Shared fixtures for gox tests.
"""

import socket

import pytest


@pytest.fixture
def free_port():
    """A TCP port that was free a moment ago."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("", 0))
        return sock.getsockname()[1]


@pytest.fixture
def busy_port():
    """A TCP port held by a listening socket for the duration of the test."""
    sock = socket.create_server(("", 0))
    yield sock.getsockname()[1]
    sock.close()
