"""
Loopback callback server for the PKCE authorization flow.

This module provides the local HTTP listener the provider redirects the
browser to. One listener serves every coordinator in the process: each
authorization attempt registers a waiter under its state token, and a
redirect only ever completes the waiter whose state it carries.

The listener binds the loopback interface only and never terminates TLS.
It runs a single-threaded WSGI server on a daemon thread, so redirects are
handled one at a time.
"""

import errno
import logging
import os
import socket
import threading
from concurrent.futures import Future
from concurrent.futures import TimeoutError as FutureTimeoutError
from enum import Enum
from typing import Dict, List, Optional, Tuple

from flask import Flask, Response, jsonify, request
from markupsafe import escape
from werkzeug.serving import BaseWSGIServer, WSGIRequestHandler, make_server

from .config import DEFAULT_CALLBACK_PORT, DEFAULT_CALLBACK_TIMEOUT
from .exceptions import (
    AuthorizationCancelledError,
    CallbackTimeoutError,
    ConfigurationError,
    MissingCodeError,
    PortInUseError,
    ProviderDeniedError,
)

logger = logging.getLogger(__name__)

_PAGE_TEMPLATE = """<!DOCTYPE html>
<html>
<head><title>{title}</title></head>
<body style="font-family: system-ui, -apple-system, sans-serif; max-width: 600px; margin: 50px auto; padding: 20px;">
    <h1 style="color: {color};">{title}</h1>
    <p>{message}</p>
    <p style="margin-top: 30px; color: #666;">You can close this window.</p>
</body>
</html>"""

# Seconds a caller whose wait timed out gives a redirect or reset that
# already took its waiter to complete it
_HANDOFF_TIMEOUT = 5.0

_SUCCESS_COLOR = "#1db954"
_FAILURE_COLOR = "#d32f2f"


class ListenerState(Enum):
    """Lifecycle of the callback listener."""

    STOPPED = "stopped"
    STARTING = "starting"
    LISTENING = "listening"


class _QuietRequestHandler(WSGIRequestHandler):
    """Route werkzeug's per-request access log to our logger at DEBUG."""

    def log_request(self, code="-", size="-") -> None:
        logger.debug(f"{self.command} {self.path.split('?')[0]} -> {code}")


def _render_page(title: str, message: str, status: int, color: str) -> Response:
    return Response(
        _PAGE_TEMPLATE.format(title=title, message=message, color=color),
        status=status,
        content_type="text/html; charset=utf-8",
    )


class OAuthCallbackServer:
    """
    Process-wide loopback listener for OAuth redirects.

    Construct one per process (or use get_callback_server()) and hand it
    to every coordinator. The listener moves through
    STOPPED -> STARTING -> LISTENING -> STOPPED; concurrent
    ensure_started() calls share a single bind.

    Waiters are single-use futures keyed by state. A waiter is always
    removed from the registry before it is fulfilled, so each state is
    delivered at most once.
    """

    def __init__(
        self,
        port: int = DEFAULT_CALLBACK_PORT,
        host: str = "127.0.0.1",
        callback_path: str = "/callback",
    ):
        """
        Initialize callback server (does not bind).

        Args:
            port: Fixed loopback port to listen on
            host: Loopback interface address
            callback_path: URL path the provider redirects to
        """
        self.host = host
        self.port = port
        self.callback_path = callback_path

        self.app = Flask(__name__)
        self.app.logger.setLevel(logging.WARNING)  # Suppress Flask logs

        self._state = ListenerState.STOPPED
        self._start_lock = threading.Lock()
        self._waiters_lock = threading.Lock()
        self._waiters: Dict[str, "Future[str]"] = {}
        self._httpd: Optional[BaseWSGIServer] = None
        self._thread: Optional[threading.Thread] = None

        self.app.add_url_rule(
            self.callback_path,
            "oauth_callback",
            self._handle_callback,
            methods=["GET"],
        )
        self.app.add_url_rule(
            "/status", "oauth_status", self._handle_status, methods=["GET"]
        )

    @property
    def state(self) -> ListenerState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state is ListenerState.LISTENING

    @property
    def redirect_uri(self) -> str:
        return f"http://{self.host}:{self.port}{self.callback_path}"

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def ensure_started(self) -> None:
        """
        Start listening if not already running.

        Safe to call repeatedly and from several threads: callers arriving
        while another is binding wait for that bind and return once the
        listener is up.

        Raises:
            PortInUseError: If the port is bound by another process
            OSError: For any other bind failure
        """
        with self._start_lock:
            if self._state is ListenerState.LISTENING:
                return

            self._state = ListenerState.STARTING
            try:
                sock = self._bind_socket()
                try:
                    self._httpd = make_server(
                        self.host,
                        self.port,
                        self.app,
                        threaded=False,
                        request_handler=_QuietRequestHandler,
                        fd=sock.fileno(),
                    )
                finally:
                    # make_server duplicates the descriptor
                    sock.close()
            except Exception:
                self._state = ListenerState.STOPPED
                raise

            self._thread = threading.Thread(
                target=self._httpd.serve_forever,
                kwargs={"poll_interval": 0.1},
                name=f"oauth-callback-{self.port}",
                daemon=True,
            )
            self._thread.start()
            self._state = ListenerState.LISTENING

        logger.info(f"OAuth callback server listening on http://{self.host}:{self.port}")

    def _bind_socket(self) -> socket.socket:
        """Bind and listen on the loopback port, mapping conflicts to PortInUseError."""
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            if os.name != "nt":
                # Allow rebinding over TIME_WAIT; live listeners still conflict
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            sock.bind((self.host, self.port))
            sock.listen(socket.SOMAXCONN)
        except OSError as e:
            sock.close()
            if e.errno == errno.EADDRINUSE:
                logger.error(f"Callback port {self.port} is already in use")
                raise PortInUseError(self.port) from e
            logger.error(f"Could not bind callback server: {e}")
            raise
        return sock

    def stop(self) -> None:
        """
        Stop the callback server.

        Registered waiters are kept; they either time out, are cancelled, or
        are resolved by a redirect after the listener is started again.
        """
        with self._start_lock:
            httpd, thread = self._httpd, self._thread
            self._httpd = None
            self._thread = None
            self._state = ListenerState.STOPPED

            if httpd is None:
                return

            httpd.shutdown()
            httpd.server_close()
            if thread is not None:
                thread.join(timeout=5)

        logger.info("OAuth callback server shutting down")

    # ------------------------------------------------------------------
    # Waiters
    # ------------------------------------------------------------------

    def register_waiter(self, state: str) -> "Future[str]":
        """
        Register interest in the redirect carrying ``state``.

        Registering the same state twice returns the existing waiter.

        Returns:
            Future completed with the authorization code, or with
            ProviderDeniedError / MissingCodeError
        """
        with self._waiters_lock:
            waiter = self._waiters.get(state)
            if waiter is None:
                waiter = Future()
                self._waiters[state] = waiter
                logger.debug(f"Registered callback waiter ({len(self._waiters)} pending)")
            return waiter

    def wait_for_callback(
        self,
        state: str,
        waiter: "Future[str]",
        timeout: float = DEFAULT_CALLBACK_TIMEOUT,
    ) -> str:
        """
        Block until ``waiter`` completes or the timeout elapses.

        Args:
            state: State the waiter was registered under
            waiter: Future returned by register_waiter()
            timeout: Maximum seconds to wait

        Returns:
            Authorization code

        Raises:
            CallbackTimeoutError: If no matching redirect arrived in time
            ProviderDeniedError: If the provider redirected with an error
            MissingCodeError: If the redirect carried no code
            AuthorizationCancelledError: If the waiter was cancelled
        """
        logger.info(f"Waiting for OAuth callback (timeout: {timeout:g}s)")
        try:
            return waiter.result(timeout=timeout)
        except FutureTimeoutError:
            pass

        if not self._discard_waiter(state, waiter):
            # A redirect or reset already owns the waiter and completes it next
            try:
                return waiter.result(timeout=_HANDOFF_TIMEOUT)
            except FutureTimeoutError:
                pass

        logger.warning(f"Timeout waiting for callback after {timeout:g}s")
        raise CallbackTimeoutError(timeout)

    def await_callback(
        self, expected_state: str, timeout: float = DEFAULT_CALLBACK_TIMEOUT
    ) -> str:
        """Register a waiter for ``expected_state`` and wait for its code."""
        waiter = self.register_waiter(expected_state)
        return self.wait_for_callback(expected_state, waiter, timeout)

    def pending_states(self) -> List[str]:
        """States currently waiting for a redirect."""
        with self._waiters_lock:
            return list(self._waiters)

    def _pop_waiter(self, state: Optional[str]) -> Optional["Future[str]"]:
        if not state:
            return None
        with self._waiters_lock:
            return self._waiters.pop(state, None)

    def cancel_waiter(self, state: str) -> bool:
        """
        Fail the waiter registered for ``state`` with AuthorizationCancelledError.

        The caller blocked in wait_for_callback() returns immediately and a
        later redirect for ``state`` is treated as unknown.

        Returns:
            True if a waiter was registered for ``state``
        """
        waiter = self._pop_waiter(state)
        if waiter is None:
            return False
        waiter.set_exception(AuthorizationCancelledError())
        logger.info("Callback waiter cancelled")
        return True

    def _discard_waiter(self, state: str, waiter: "Future[str]") -> bool:
        with self._waiters_lock:
            if self._waiters.get(state) is waiter:
                del self._waiters[state]
                return True
            return False

    # ------------------------------------------------------------------
    # Routes
    # ------------------------------------------------------------------

    def _handle_callback(self) -> Response:
        """Handle OAuth redirect from the provider."""
        code = request.args.get("code")
        state = request.args.get("state")
        error = request.args.get("error")
        logger.info("Received OAuth callback")

        if error:
            error_desc = request.args.get("error_description")
            waiter = self._pop_waiter(state)
            if waiter is not None:
                logger.error(f"OAuth error: {error} - {error_desc or 'no description'}")
                waiter.set_exception(ProviderDeniedError(error, error_desc))
            else:
                logger.warning(f"OAuth error {error} for unknown state, ignoring")
            return _render_page(
                "Authorization Failed",
                f"Error: {escape(error)}",
                400,
                _FAILURE_COLOR,
            )

        # Removal happens before fulfilment; a replayed redirect finds nothing
        waiter = self._pop_waiter(state)
        if waiter is None:
            logger.warning("Callback with missing or unknown state, ignoring")
            return _render_page(
                "Invalid or Expired State",
                "This authorization link has expired or is invalid. Please try again.",
                400,
                _FAILURE_COLOR,
            )

        if not code:
            logger.error("No authorization code in callback")
            waiter.set_exception(MissingCodeError())
            return _render_page(
                "Missing Authorization Code",
                "No authorization code received.",
                400,
                _FAILURE_COLOR,
            )

        logger.info("Authorization code received successfully")
        waiter.set_result(code)
        return _render_page(
            "Authorization Successful",
            "You can return to your application.",
            200,
            _SUCCESS_COLOR,
        )

    def _handle_status(self) -> Response:
        """Status endpoint for debugging."""
        return jsonify(
            {
                "status": self._state.value,
                "pending_callbacks": len(self.pending_states()),
            }
        )


_servers: Dict[Tuple[str, int], OAuthCallbackServer] = {}
_servers_lock = threading.Lock()


def get_callback_server(
    port: int = DEFAULT_CALLBACK_PORT,
    host: str = "127.0.0.1",
    callback_path: str = "/callback",
) -> OAuthCallbackServer:
    """
    Return the process-wide callback server for ``host:port``.

    The instance is created on first use and shared by every coordinator
    that does not receive an explicit server.

    Raises:
        ConfigurationError: If the shared server uses a different path
    """
    with _servers_lock:
        server = _servers.get((host, port))
        if server is None:
            server = OAuthCallbackServer(port=port, host=host, callback_path=callback_path)
            _servers[(host, port)] = server
        elif server.callback_path != callback_path:
            raise ConfigurationError(
                f"Callback server on {host}:{port} already serves "
                f"{server.callback_path}, cannot also serve {callback_path}"
            )
        return server


def reset_callback_servers() -> None:
    """Stop and forget every shared callback server."""
    with _servers_lock:
        servers = list(_servers.values())
        _servers.clear()
    for server in servers:
        server.stop()
