"""
Exception classes for the loopback PKCE client.

This module defines the exception hierarchy for all authorization and
token persistence errors, providing clear error messages and recovery
guidance.
"""

from typing import Optional


class PKCELoopbackError(Exception):
    """Base exception for all loopback PKCE errors."""

    pass


class ConfigurationError(PKCELoopbackError):
    """Client configuration error (missing or invalid configuration)."""

    pass


class AuthorizationError(PKCELoopbackError):
    """Authorization flow error."""

    pass


class SequenceError(AuthorizationError):
    """authorize() was called without a matching request_authorization()."""

    pass


class AuthorizationInProgressError(AuthorizationError):
    """An authorization is already in flight for this coordinator."""

    pass


class PortInUseError(AuthorizationError):
    """The callback port is bound by another process."""

    def __init__(self, port: int):
        self.port = port
        super().__init__(
            f"Port {port} is already in use. "
            f"Please ensure no other instance is running."
        )


class CallbackTimeoutError(AuthorizationError):
    """No matching redirect arrived within the timeout."""

    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(
            f"No OAuth callback received within {timeout:g} seconds. "
            f"Please ensure you completed the authorization in your browser."
        )


class ProviderDeniedError(AuthorizationError):
    """The provider redirected back with an error parameter."""

    def __init__(self, error: str, error_description: Optional[str] = None):
        self.error = error
        self.error_description = error_description
        message = f"OAuth error: {error}"
        if error_description:
            message += f" - {error_description}"
        super().__init__(message)


class MissingCodeError(AuthorizationError):
    """The redirect carried a matching state but no authorization code."""

    def __init__(self, message: str = "No authorization code received"):
        super().__init__(message)


class AuthorizationCancelledError(AuthorizationError):
    """The attempt was reset while waiting for its redirect."""

    def __init__(self, message: str = "Authorization reset before a redirect arrived"):
        super().__init__(message)


class TokenStorageError(PKCELoopbackError):
    """Token storage operation failed (file I/O error)."""

    pass


class TokenExchangeError(PKCELoopbackError):
    """Failed to exchange authorization code for tokens."""

    pass
