"""Helpers that play the browser's part of the redirect."""

import time
from typing import Callable

import requests

from pkce_loopback.callback_server import OAuthCallbackServer


def deliver_redirect(server: OAuthCallbackServer, **params: str) -> requests.Response:
    """Send the browser redirect to a running callback server."""
    with requests.Session() as session:
        # Loopback traffic must not go through an environment proxy
        session.trust_env = False
        return session.get(server.redirect_uri, params=params, timeout=5)


def wait_until(predicate: Callable[[], bool], timeout: float = 5.0) -> bool:
    """Poll ``predicate`` until it holds or ``timeout`` elapses."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()
