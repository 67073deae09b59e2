"""
Authorization code exchange against a provider token endpoint.

The coordinator only produces authorization codes. This module is the
default collaborator that turns a code plus its PKCE verifier into the
raw token response the coordinator stores via set_tokens().

Token refresh is intentionally not implemented.
"""

import logging
from typing import Any, Dict, Optional

import requests

from .exceptions import TokenExchangeError

logger = logging.getLogger(__name__)


class TokenExchangeClient:
    """
    Exchanges authorization codes for tokens (RFC 6749 section 4.1.3).

    Public clients send client_id in the form body; confidential clients
    also send client_secret.
    """

    def __init__(
        self,
        token_url: str,
        client_id: str,
        client_secret: Optional[str] = None,
        timeout: float = 30,
        session: Optional[requests.Session] = None,
    ):
        """
        Initialize exchange client.

        Args:
            token_url: Provider token endpoint
            client_id: OAuth client identifier
            client_secret: Client secret (confidential clients only)
            timeout: HTTP timeout in seconds
            session: requests session to reuse (module-level requests if omitted)
        """
        self.token_url = token_url
        self.client_id = client_id
        self.client_secret = client_secret
        self.timeout = timeout
        self.session = session

    def exchange_code(
        self, code: str, code_verifier: str, redirect_uri: str
    ) -> Dict[str, Any]:
        """
        Exchange authorization code for access and refresh tokens.

        Args:
            code: Code received from the OAuth callback
            code_verifier: PKCE verifier of the authorization request
            redirect_uri: Redirect URI used in the authorization request

        Returns:
            Raw token response (access_token, refresh_token, expires_in, ...)

        Raises:
            TokenExchangeError: If exchange fails
        """
        logger.info("Exchanging authorization code for tokens")

        data = {
            "grant_type": "authorization_code",
            "code": code,
            "redirect_uri": redirect_uri,
            "code_verifier": code_verifier,
            "client_id": self.client_id,
        }
        if self.client_secret:
            data["client_secret"] = self.client_secret

        poster = self.session or requests
        try:
            response = poster.post(
                self.token_url,
                headers={
                    "Accept": "application/json",
                    "Content-Type": "application/x-www-form-urlencoded",
                },
                data=data,
                timeout=self.timeout,
            )
        except requests.RequestException as e:
            logger.error(f"Network error during token exchange: {e}")
            raise TokenExchangeError(f"Network error during token exchange: {e}") from e

        if response.status_code != 200:
            logger.error(
                f"Token exchange failed: {response.status_code} - {response.text}"
            )
            raise TokenExchangeError(
                f"Token exchange failed with status {response.status_code}. "
                f"Check that your client_id and redirect URI are registered."
            )

        try:
            token_data = response.json()
        except ValueError as e:
            logger.error(f"Invalid response from token endpoint: {e}")
            raise TokenExchangeError(f"Invalid response from token endpoint: {e}") from e

        if not isinstance(token_data, dict) or "access_token" not in token_data:
            raise TokenExchangeError("Token response missing 'access_token' field")

        logger.info("Successfully obtained tokens")
        return token_data
