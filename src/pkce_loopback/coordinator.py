"""
Authorization coordinator for the loopback PKCE flow.

This module provides the main interface applications use to authorize
against an OAuth provider. It creates the PKCE authorization request,
builds the provider URL, drives the shared callback server and keeps the
resulting tokens in the configured token store.

Token exchange is not performed here: the caller hands the returned
authorization code to its own exchange (see token_exchange) and passes
the provider response back through set_tokens().
"""

import logging
import threading
import webbrowser
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from .callback_server import OAuthCallbackServer, get_callback_server
from .config import PKCEClientConfig
from .exceptions import AuthorizationInProgressError, SequenceError
from .pkce import calculate_code_challenge, generate_code_verifier, generate_state
from .token_exchange import TokenExchangeClient
from .token_storage import TokenSet, TokenStore, create_token_store

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuthorizationOptions:
    """
    Caller-supplied provider parameters for one authorization attempt.

    Attributes:
        endpoint: Provider authorization endpoint
        client_id: OAuth client identifier
        scope: Space-separated scopes
        extra_parameters: Additional query parameters for the provider
    """

    endpoint: str
    client_id: str
    scope: str
    extra_parameters: Optional[Dict[str, str]] = None


@dataclass(frozen=True)
class AuthorizationRequest:
    """
    One PKCE authorization attempt.

    Immutable once created; ``state`` identifies the attempt for the
    lifetime of the process.
    """

    redirect_uri: str
    code_verifier: str = field(repr=False)
    code_challenge: str
    state: str


@dataclass(frozen=True)
class AuthorizationResponse:
    """Authorization code returned by a completed attempt."""

    authorization_code: str = field(repr=False)


def build_authorization_url(
    request: AuthorizationRequest, options: AuthorizationOptions
) -> str:
    """
    Build the provider authorization URL.

    Extra parameters are applied first so the OAuth and PKCE parameters
    always take precedence over them.

    Args:
        request: Authorization request (state, challenge, redirect URI)
        options: Provider endpoint, client id, scope and extras

    Returns:
        Complete authorization URL with query parameters
    """
    required = {
        "client_id": options.client_id,
        "response_type": "code",
        "redirect_uri": request.redirect_uri,
        "scope": options.scope,
        "code_challenge": request.code_challenge,
        "code_challenge_method": "S256",
        "state": request.state,
    }

    parts = urlsplit(options.endpoint)
    params = dict(parse_qsl(parts.query, keep_blank_values=True))
    for key, value in (options.extra_parameters or {}).items():
        if key in required:
            logger.warning(f"Ignoring extra parameter {key!r}: reserved by the PKCE flow")
            continue
        params[key] = value
    params.update(required)

    return urlunsplit(
        (parts.scheme, parts.netloc, parts.path, urlencode(params), parts.fragment)
    )


def _open_in_browser(url: str) -> None:
    try:
        webbrowser.open(url)
    except Exception as e:
        logger.warning(f"Could not open browser automatically: {e}")


class OAuthCoordinator:
    """
    High-level coordinator for one OAuth provider.

    Holds at most one pending authorization attempt. Several coordinators
    may share one OAuthCallbackServer; each attempt is only completed by
    a redirect carrying its own state.

    Example:
        coordinator = OAuthCoordinator(PKCEClientConfig(provider_id="spotify"))
        auth_request = coordinator.request_authorization(options)
        response = coordinator.authorize(auth_request)
        tokens = exchange(response.authorization_code, auth_request.code_verifier)
        coordinator.set_tokens(tokens)
    """

    def __init__(
        self,
        config: Optional[PKCEClientConfig] = None,
        callback_server: Optional[OAuthCallbackServer] = None,
        token_store: Optional[TokenStore] = None,
        open_browser: Optional[Callable[[str], Any]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        """
        Initialize OAuth coordinator.

        Args:
            config: Client configuration (loads from environment if not provided)
            callback_server: Shared callback server (process default if not provided)
            token_store: Token store (selected from config if not provided)
            open_browser: Callable receiving the authorization URL
            clock: Returns the current time, used to stamp tokens
        """
        self.config = config or PKCEClientConfig.from_env()
        self.callback_server = callback_server or get_callback_server(
            port=self.config.callback_port,
            host=self.config.callback_host,
            callback_path=self.config.callback_path,
        )
        self.token_store = token_store or create_token_store(self.config)
        self.open_browser = open_browser or _open_in_browser
        self.clock = clock or (lambda: datetime.now(timezone.utc))

        self._lock = threading.Lock()
        self._in_flight = False
        self._auth_options: Optional[AuthorizationOptions] = None
        self._code_challenge: Optional[str] = None
        self._auth_request: Optional[AuthorizationRequest] = None

    @property
    def pending_request(self) -> Optional[AuthorizationRequest]:
        return self._auth_request

    @property
    def redirect_uri(self) -> str:
        return self.callback_server.redirect_uri

    def request_authorization(self, options: AuthorizationOptions) -> AuthorizationRequest:
        """
        Create the authorization request for a new attempt.

        While an attempt is pending the existing request is returned
        unchanged, so callers may re-enter before the flow completes.

        Args:
            options: Provider endpoint, client id, scope and extras

        Returns:
            The pending AuthorizationRequest
        """
        with self._lock:
            if self._auth_request is not None:
                logger.info("Reusing existing authorization request")
                return self._auth_request

            logger.info(f"Creating new authorization request for {self.config.provider_id}")
            verifier = generate_code_verifier()
            challenge = calculate_code_challenge(verifier)

            self._auth_options = options
            self._code_challenge = challenge
            self._auth_request = AuthorizationRequest(
                redirect_uri=self.redirect_uri,
                code_verifier=verifier,
                code_challenge=challenge,
                state=generate_state(self.config.provider_name),
            )
            return self._auth_request

    def build_authorization_url(self, request: AuthorizationRequest) -> str:
        """Authorization URL for ``request`` using the pending options."""
        if self._auth_options is None:
            raise SequenceError("request_authorization must be called before authorize")
        return build_authorization_url(request, self._auth_options)

    def authorize(
        self, request: AuthorizationRequest, timeout: Optional[float] = None
    ) -> AuthorizationResponse:
        """
        Run the browser part of the flow and wait for the redirect.

        1. Ensures the shared callback server is listening
        2. Opens the authorization URL in the browser
        3. Waits for the redirect carrying this request's state

        On failure the pending attempt is cleared and the callback server
        stopped (unless attempts of other coordinators still wait on it)
        before the error propagates. On success the server keeps running
        for later attempts. An attempt reset by clear_auth_state() while
        waiting fails with AuthorizationCancelledError and leaves any newer
        attempt untouched.

        Args:
            request: Request returned by request_authorization()
            timeout: Seconds to wait for the redirect (default from config)

        Returns:
            AuthorizationResponse with the authorization code

        Raises:
            SequenceError: If request_authorization() was not called first
            AuthorizationInProgressError: If this coordinator is already authorizing
            PortInUseError: If the callback port is taken
            CallbackTimeoutError: If no redirect arrived in time
            ProviderDeniedError: If the provider returned an error
            MissingCodeError: If the redirect carried no code
            AuthorizationCancelledError: If the attempt was reset while waiting
        """
        with self._lock:
            pending = self._auth_request
            if pending is None or self._auth_options is None or self._code_challenge is None:
                raise SequenceError("request_authorization must be called before authorize")
            if request.state != pending.state:
                raise SequenceError("authorize called with a request that is not pending")
            if self._in_flight:
                raise AuthorizationInProgressError("Authorization already in progress")
            self._in_flight = True
            options = self._auth_options

        wait = timeout if timeout is not None else self.config.callback_timeout

        try:
            auth_url = build_authorization_url(pending, options)
            logger.debug(f"Generated authorization URL: {auth_url}")

            self.callback_server.ensure_started()
            waiter = self.callback_server.register_waiter(pending.state)

            logger.info("Opening browser for authorization...")
            logger.info(f"If the browser doesn't open automatically, visit: {auth_url}")
            self.open_browser(auth_url)

            code = self.callback_server.wait_for_callback(pending.state, waiter, wait)
        except BaseException as e:
            logger.error(f"Authorization failed: {e!r}")
            if self._end_attempt(pending):
                self.callback_server.cancel_waiter(pending.state)
                self._release_listener()
            raise

        logger.info("Authorization code received")
        self._end_attempt(pending)
        return AuthorizationResponse(authorization_code=code)

    def clear_auth_state(self) -> None:
        """
        Discard the pending attempt and stop the callback server.

        Used for explicit resets such as sign-out or abandoning a flow. A
        blocked authorize() for the discarded attempt is woken with
        AuthorizationCancelledError. Waiters of other coordinators sharing
        the server stay registered.
        """
        with self._lock:
            pending = self._auth_request
            self._in_flight = False
            self._clear_pending()
        if pending is not None:
            self.callback_server.cancel_waiter(pending.state)
        self.callback_server.stop()

    def _end_attempt(self, pending: AuthorizationRequest) -> bool:
        """Clear ``pending`` if it is still this coordinator's attempt."""
        with self._lock:
            if self._auth_request is not pending:
                logger.debug("Attempt was reset while waiting, leaving newer state alone")
                return False
            self._in_flight = False
            self._clear_pending()
            return True

    def _release_listener(self) -> None:
        others = self.callback_server.pending_states()
        if others:
            logger.info(
                f"Leaving callback server running for {len(others)} other pending attempt(s)"
            )
            return
        self.callback_server.stop()

    def _clear_pending(self) -> None:
        self._auth_request = None
        self._auth_options = None
        self._code_challenge = None

    def set_tokens(self, response: Dict[str, Any]) -> TokenSet:
        """
        Store the provider's token response.

        Args:
            response: Raw token endpoint JSON

        Returns:
            The stored TokenSet (updated_at = now)

        Raises:
            TokenStorageError: If the store cannot persist the tokens
        """
        token_set = TokenSet.from_token_response(response, now=self.clock())
        self.token_store.save(token_set)
        return token_set

    def get_tokens(self) -> Optional[TokenSet]:
        """
        Load stored tokens.

        Returns:
            TokenSet, or None when nothing is stored or the stored tokens
            cannot be read
        """
        try:
            return self.token_store.load()
        except Exception as e:
            logger.error(f"Error loading tokens: {e}")
            return None

    def remove_tokens(self) -> None:
        """Delete stored tokens."""
        self.token_store.clear()
        logger.info("Tokens removed locally. Re-authorization required.")

    def is_authorized(self) -> bool:
        """
        Check if unexpired tokens are stored.

        Returns:
            True if a token set is stored and not expired
        """
        tokens = self.get_tokens()
        return tokens is not None and not tokens.is_expired(self.clock())

    def get_status(self) -> dict:
        """
        Get current authorization status for diagnostics.

        Returns:
            Dictionary with:
            - authorized: bool
            - expired: bool (if tokens stored)
            - expires_at: ISO timestamp (if tokens stored)
            - expires_in_seconds: float (if tokens stored)
            - scope: str (if tokens stored)
            - pending: whether an attempt is pending
            - listener: callback server state
        """
        status: Dict[str, Any] = {
            "provider_id": self.config.provider_id,
            "pending": self._auth_request is not None,
            "listener": self.callback_server.state.value,
        }

        tokens = self.get_tokens()
        if tokens is None:
            status.update(authorized=False, message="No tokens stored")
            return status

        now = self.clock()
        expired = tokens.is_expired(now)
        status.update(
            authorized=not expired,
            expired=expired,
            expires_at=tokens.expires_at.isoformat(),
            expires_in_seconds=max(0.0, (tokens.expires_at - now).total_seconds()),
            scope=tokens.scope,
        )
        return status


def run_authorization_flow(
    coordinator: OAuthCoordinator,
    options: AuthorizationOptions,
    token_url: str,
    client_secret: Optional[str] = None,
    exchanger: Optional[TokenExchangeClient] = None,
) -> TokenSet:
    """
    Run the complete flow: authorize, exchange the code and store tokens.

    Args:
        coordinator: Coordinator for the provider
        options: Authorization options
        token_url: Provider token endpoint
        client_secret: Client secret for confidential clients
        exchanger: Token exchange client (built from token_url if not provided)

    Returns:
        The stored TokenSet

    Raises:
        AuthorizationError: If the browser part of the flow fails
        TokenExchangeError: If the code cannot be exchanged
        TokenStorageError: If the tokens cannot be saved
    """
    auth_request = coordinator.request_authorization(options)
    response = coordinator.authorize(auth_request)

    exchanger = exchanger or TokenExchangeClient(
        token_url, options.client_id, client_secret=client_secret
    )
    token_response = exchanger.exchange_code(
        response.authorization_code,
        code_verifier=auth_request.code_verifier,
        redirect_uri=auth_request.redirect_uri,
    )

    token_set = coordinator.set_tokens(token_response)
    logger.info("Authorization complete! Tokens saved successfully.")
    return token_set
