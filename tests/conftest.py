"""Pytest fixtures for loopback PKCE tests.

Provides free loopback ports, isolated callback servers and a file-store
configuration rooted in a temporary directory.
"""

import socket
from typing import Generator

import pytest

from pkce_loopback.callback_server import OAuthCallbackServer, reset_callback_servers
from pkce_loopback.config import PKCEClientConfig
from pkce_loopback.coordinator import AuthorizationOptions


@pytest.fixture
def free_port() -> int:
    """Find a free TCP port on localhost."""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


@pytest.fixture
def callback_server(free_port) -> Generator[OAuthCallbackServer, None, None]:
    """Isolated callback server, stopped after the test."""
    server = OAuthCallbackServer(port=free_port)
    yield server
    server.stop()


@pytest.fixture(autouse=True)
def _reset_shared_servers() -> Generator[None, None, None]:
    yield
    reset_callback_servers()


@pytest.fixture
def config(tmp_path, free_port) -> PKCEClientConfig:
    """File-store config rooted in a temporary directory."""
    return PKCEClientConfig(
        provider_id="test-provider",
        provider_name="Test Provider",
        store="file",
        callback_port=free_port,
        config_dir=str(tmp_path),
    )


@pytest.fixture
def options() -> AuthorizationOptions:
    return AuthorizationOptions(
        endpoint="https://auth.example.com/authorize",
        client_id="test_client_id",
        scope="user-read-private playlist-read",
    )
