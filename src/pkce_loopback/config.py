"""
Client configuration for the loopback PKCE flow.

Configuration can be loaded from environment variables or provided
programmatically. Only the values consumed by the authorization core live
here: provider identity, token store selection and the callback listener
address.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .exceptions import ConfigurationError

DEFAULT_PROVIDER_ID = "unknown-provider"
DEFAULT_CALLBACK_PORT = 21503
DEFAULT_CALLBACK_TIMEOUT = 300
DEFAULT_APP_NAMESPACE = "pkce-loopback"

STORE_FILE = "file"
STORE_EXTENSION = "extension"
STORE_KINDS = (STORE_FILE, STORE_EXTENSION)


def default_config_dir() -> Path:
    """Per-user configuration directory ($XDG_CONFIG_HOME or ~/.config)."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg)
    return Path.home() / ".config"


@dataclass
class PKCEClientConfig:
    """
    Configuration for one OAuth provider client.

    Attributes:
        provider_id: Storage key for this provider's tokens
        provider_name: Display name, embedded in the state token
        description: Free-form description shown to users
        store: Token store kind ("file" or "extension")
        callback_host: Loopback interface the listener binds to
        callback_port: Fixed port for the callback listener
        callback_path: URL path the provider redirects to
        callback_timeout: Seconds to wait for the redirect
        app_namespace: Directory name under the config dir for token files
        config_dir: Base configuration directory (default: XDG config home)
    """

    provider_id: str = DEFAULT_PROVIDER_ID
    provider_name: Optional[str] = None
    description: Optional[str] = None

    store: str = STORE_EXTENSION

    callback_host: str = "127.0.0.1"
    callback_port: int = DEFAULT_CALLBACK_PORT
    callback_path: str = "/callback"
    callback_timeout: float = DEFAULT_CALLBACK_TIMEOUT

    app_namespace: str = DEFAULT_APP_NAMESPACE
    config_dir: Optional[str] = None

    def __post_init__(self) -> None:
        """Validate configuration after initialization."""
        if not self.provider_id:
            self.provider_id = DEFAULT_PROVIDER_ID

        if self.store not in STORE_KINDS:
            raise ConfigurationError(
                f"store must be one of {', '.join(STORE_KINDS)}, got {self.store!r}"
            )

        if not isinstance(self.callback_port, int) or not (
            1 <= self.callback_port <= 65535
        ):
            raise ConfigurationError(
                f"callback_port must be between 1 and 65535, got {self.callback_port}"
            )

        if not self.callback_path.startswith("/"):
            raise ConfigurationError(
                f"callback_path must start with '/', got {self.callback_path!r}"
            )

        if self.callback_timeout <= 0:
            raise ConfigurationError("callback_timeout must be positive")

        if not self.app_namespace:
            raise ConfigurationError("app_namespace cannot be empty")

    @property
    def redirect_uri(self) -> str:
        """
        Full redirect URI registered with the provider.

        Returns:
            Loopback callback URL (e.g., http://127.0.0.1:21503/callback)
        """
        return f"http://{self.callback_host}:{self.callback_port}{self.callback_path}"

    @property
    def token_dir(self) -> Path:
        """Directory holding this application's token files."""
        base = Path(self.config_dir) if self.config_dir else default_config_dir()
        return base / self.app_namespace

    @property
    def token_file(self) -> Path:
        """Token file used by the file store for this provider."""
        return self.token_dir / f"{self.provider_id}-tokens.json"

    @classmethod
    def from_env(cls) -> "PKCEClientConfig":
        """
        Load configuration from environment variables.

        Optional environment variables:
            PKCE_PROVIDER_ID: Provider identifier (default: unknown-provider)
            PKCE_PROVIDER_NAME: Provider display name
            PKCE_TOKEN_STORE: "file" or "extension" (default: extension)
            PKCE_CALLBACK_PORT: Callback port (default: 21503)
            PKCE_CALLBACK_TIMEOUT: Callback timeout in seconds (default: 300)
            PKCE_APP_NAMESPACE: Token directory name (default: pkce-loopback)
            PKCE_CONFIG_DIR: Base config directory (default: XDG config home)

        Returns:
            PKCEClientConfig instance

        Raises:
            ConfigurationError: If a numeric variable cannot be parsed
        """
        try:
            port = int(os.environ.get("PKCE_CALLBACK_PORT", str(DEFAULT_CALLBACK_PORT)))
            timeout = float(
                os.environ.get("PKCE_CALLBACK_TIMEOUT", str(DEFAULT_CALLBACK_TIMEOUT))
            )
        except ValueError as e:
            raise ConfigurationError(f"Invalid numeric setting: {e}") from e

        return cls(
            provider_id=os.environ.get("PKCE_PROVIDER_ID", DEFAULT_PROVIDER_ID),
            provider_name=os.environ.get("PKCE_PROVIDER_NAME"),
            store=os.environ.get("PKCE_TOKEN_STORE", STORE_EXTENSION),
            callback_port=port,
            callback_timeout=timeout,
            app_namespace=os.environ.get("PKCE_APP_NAMESPACE", DEFAULT_APP_NAMESPACE),
            config_dir=os.environ.get("PKCE_CONFIG_DIR"),
        )
