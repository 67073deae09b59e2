"""
Loopback OAuth 2.0 Authorization Code + PKCE client.

This package implements the client side of the Authorization Code flow
with PKCE for desktop applications that catch the provider redirect on a
short-lived local HTTP listener instead of a registered web endpoint.

One callback listener is shared by every coordinator in the process;
redirects are matched to the attempt that issued them by state token.

Public API:
    PKCEClientConfig: Client configuration
    OAuthCoordinator: Authorization attempts and token access
    OAuthCallbackServer: Shared loopback callback listener
    TokenSet: Stored token structure
    FileTokenStore / ExtensionTokenStore: Token persistence
    TokenExchangeClient: Authorization code exchange

Exceptions:
    PKCELoopbackError: Base exception
    ConfigurationError: Configuration error
    AuthorizationError: Authorization flow error
    SequenceError: authorize() before request_authorization()
    AuthorizationInProgressError: Concurrent authorize() on one coordinator
    PortInUseError: Callback port taken
    CallbackTimeoutError: No redirect within the timeout
    ProviderDeniedError: Provider returned an error
    MissingCodeError: Redirect without a code
    AuthorizationCancelledError: Attempt reset while waiting
    TokenStorageError: Token persistence failed
    TokenExchangeError: Token exchange failed
"""

from .callback_server import (
    ListenerState,
    OAuthCallbackServer,
    get_callback_server,
    reset_callback_servers,
)
from .config import PKCEClientConfig
from .coordinator import (
    AuthorizationOptions,
    AuthorizationRequest,
    AuthorizationResponse,
    OAuthCoordinator,
    build_authorization_url,
    run_authorization_flow,
)
from .exceptions import (
    AuthorizationCancelledError,
    AuthorizationError,
    AuthorizationInProgressError,
    CallbackTimeoutError,
    ConfigurationError,
    MissingCodeError,
    PKCELoopbackError,
    PortInUseError,
    ProviderDeniedError,
    SequenceError,
    TokenExchangeError,
    TokenStorageError,
)
from .pkce import calculate_code_challenge, generate_code_verifier, generate_state
from .token_exchange import TokenExchangeClient
from .token_storage import (
    ExtensionTokenStore,
    FileTokenStore,
    KeyValueStorage,
    MemoryKeyValueStorage,
    TokenSet,
    TokenStore,
    create_token_store,
    is_token_expired,
)

__all__ = [
    # Configuration
    "PKCEClientConfig",
    # PKCE
    "generate_code_verifier",
    "calculate_code_challenge",
    "generate_state",
    # Token Storage
    "TokenSet",
    "TokenStore",
    "FileTokenStore",
    "ExtensionTokenStore",
    "KeyValueStorage",
    "MemoryKeyValueStorage",
    "create_token_store",
    "is_token_expired",
    # Callback Server
    "ListenerState",
    "OAuthCallbackServer",
    "get_callback_server",
    "reset_callback_servers",
    # Coordinator
    "AuthorizationOptions",
    "AuthorizationRequest",
    "AuthorizationResponse",
    "OAuthCoordinator",
    "build_authorization_url",
    "run_authorization_flow",
    # Token Exchange
    "TokenExchangeClient",
    # Exceptions
    "PKCELoopbackError",
    "ConfigurationError",
    "AuthorizationError",
    "SequenceError",
    "AuthorizationInProgressError",
    "PortInUseError",
    "CallbackTimeoutError",
    "ProviderDeniedError",
    "MissingCodeError",
    "AuthorizationCancelledError",
    "TokenStorageError",
    "TokenExchangeError",
]
