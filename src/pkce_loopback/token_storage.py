"""
Token persistence for the loopback PKCE client.

This module provides the TokenSet data structure with expiry tracking and
two interchangeable stores:

- FileTokenStore: one JSON file per provider under the user's config dir
- ExtensionTokenStore: a single slot in a host key-value capability

Stores know nothing about OAuth beyond the token set shape.
"""

import json
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Optional, Union

from .config import STORE_FILE, PKCEClientConfig
from .exceptions import TokenStorageError

logger = logging.getLogger(__name__)

DEFAULT_EXPIRES_IN = 3600


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass
class TokenSet:
    """
    Stored OAuth token set.

    Attributes:
        access_token: Access token for API calls
        refresh_token: Refresh token, if the provider issued one
        expires_in: Access token lifetime in seconds from updated_at
        scope: Granted OAuth scopes
        id_token: OpenID Connect ID token, if any
        updated_at: When the tokens were obtained (timezone-aware UTC)
    """

    access_token: str
    refresh_token: Optional[str] = None
    expires_in: Optional[int] = None
    scope: Optional[str] = None
    id_token: Optional[str] = None
    updated_at: datetime = field(default_factory=_utcnow)

    @property
    def expires_at(self) -> datetime:
        """
        Calculate expiration datetime.

        Falls back to a one hour lifetime when the provider omitted
        expires_in.

        Returns:
            Datetime when access token expires (timezone-aware UTC)
        """
        lifetime = self.expires_in if self.expires_in is not None else DEFAULT_EXPIRES_IN
        return _as_utc(self.updated_at) + timedelta(seconds=lifetime)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        """Check expiry against ``now`` (default: current UTC time)."""
        return is_token_expired(self, now or _utcnow())

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert to dictionary for JSON serialization.

        Returns:
            Dictionary with updated_at as an ISO timestamp
        """
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_in": self.expires_in,
            "scope": self.scope,
            "id_token": self.id_token,
            "updated_at": _as_utc(self.updated_at).isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TokenSet":
        """
        Create TokenSet from a stored dictionary.

        Args:
            data: Dictionary produced by to_dict()

        Returns:
            TokenSet with updated_at rehydrated to a datetime

        Raises:
            KeyError: If access_token or updated_at is missing
            TypeError: If fields have wrong types
            ValueError: If updated_at is not an ISO timestamp
        """
        updated_at = data["updated_at"]
        if isinstance(updated_at, str):
            # fromisoformat only accepts a "Z" suffix from Python 3.11
            if updated_at.endswith("Z"):
                updated_at = updated_at[:-1] + "+00:00"
            updated_at = datetime.fromisoformat(updated_at)
        if not isinstance(updated_at, datetime):
            raise TypeError(f"updated_at must be a timestamp, got {updated_at!r}")

        expires_in = data.get("expires_in")
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_in=int(expires_in) if expires_in is not None else None,
            scope=data.get("scope"),
            id_token=data.get("id_token"),
            updated_at=_as_utc(updated_at),
        )

    @classmethod
    def from_token_response(
        cls, response: Dict[str, Any], now: Optional[datetime] = None
    ) -> "TokenSet":
        """
        Map a raw provider token response into a TokenSet.

        Args:
            response: Token endpoint JSON (access_token, refresh_token,
                      expires_in, scope, id_token)
            now: Timestamp to record as updated_at (default: current time)

        Returns:
            TokenSet stamped with updated_at
        """
        expires_in = response.get("expires_in")
        return cls(
            access_token=response["access_token"],
            refresh_token=response.get("refresh_token"),
            expires_in=int(expires_in) if expires_in is not None else None,
            scope=response.get("scope"),
            id_token=response.get("id_token"),
            updated_at=_as_utc(now) if now else _utcnow(),
        )


def is_token_expired(token_set: TokenSet, now: datetime) -> bool:
    """
    Check whether a token set is expired at ``now``.

    Expiry is always derived from the persisted updated_at, so a freshly
    saved set and the same set reloaded from storage agree.

    Args:
        token_set: Token set to check
        now: Evaluation time (naive values are treated as UTC)

    Returns:
        True if now >= updated_at + expires_in
    """
    return _as_utc(now) >= token_set.expires_at


class TokenStore(ABC):
    """Persistence capability for one provider's token set."""

    @abstractmethod
    def save(self, token_set: TokenSet) -> None:
        """Persist the token set, replacing any previous one."""

    @abstractmethod
    def load(self) -> Optional[TokenSet]:
        """Return the stored token set, or None when absent or unreadable."""

    @abstractmethod
    def clear(self) -> bool:
        """Remove stored tokens. Returns True if something was removed."""

    @abstractmethod
    def has(self) -> bool:
        """Check whether tokens are stored."""


class FileTokenStore(TokenStore):
    """
    File-based token storage (plaintext JSON).

    One file per provider at
    ``<config_dir>/<app_namespace>/<provider_id>-tokens.json``. The
    directory is created owner-only (700) and the file is written
    owner-only (600). Writes are last-writer-wins; there is no
    cross-process locking.
    """

    def __init__(self, token_file: Union[str, Path]):
        """
        Initialize token storage.

        Args:
            token_file: Path to the provider's token file
        """
        self.token_file = Path(token_file)

    @classmethod
    def for_config(cls, config: PKCEClientConfig) -> "FileTokenStore":
        """Build the store for the provider described by ``config``."""
        return cls(config.token_file)

    def _ensure_directory(self) -> None:
        """Create parent directory (mode 700) if needed."""
        directory = self.token_file.parent
        if not directory.exists():
            directory.mkdir(parents=True, mode=0o700, exist_ok=True)
            logger.debug(f"Created token directory {directory}")

    def save(self, token_set: TokenSet) -> None:
        """
        Save tokens to file.

        Writes tokens as pretty-printed JSON with secure permissions
        (chmod 600). Failures are surfaced, never swallowed.

        Args:
            token_set: Token set to save

        Raises:
            TokenStorageError: If save operation fails
        """
        try:
            self._ensure_directory()
            fd = os.open(self.token_file, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w") as f:
                json.dump(token_set.to_dict(), f, indent=2)
            # O_CREAT mode is ignored for existing files
            self.token_file.chmod(0o600)

            logger.info(f"Tokens saved to {self.token_file}")
        except (IOError, OSError) as e:
            logger.error(f"Failed to save tokens: {e}")
            raise TokenStorageError(f"Failed to save OAuth tokens: {e}") from e

    def load(self) -> Optional[TokenSet]:
        """
        Load tokens from file.

        Returns:
            TokenSet if file exists and is valid, None otherwise

        Notes:
            - Returns None if file doesn't exist (normal on first run)
            - Returns None if file is corrupted (logs warning)
        """
        if not self.token_file.exists():
            logger.debug(f"No token file found at {self.token_file}")
            return None

        try:
            with open(self.token_file, "r") as f:
                data = json.load(f)

            token_set = TokenSet.from_dict(data)
            logger.debug(f"Tokens loaded from {self.token_file}")
            return token_set

        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            logger.warning(
                f"Invalid token file at {self.token_file}, "
                f"will need re-authorization: {e}"
            )
            return None
        except (IOError, OSError) as e:
            logger.warning(f"Could not read token file: {e}")
            return None

    def clear(self) -> bool:
        """
        Delete token file.

        Returns:
            True if file was deleted, False if it didn't exist or could
            not be removed
        """
        if not self.token_file.exists():
            logger.debug(f"Token file does not exist: {self.token_file}")
            return False

        try:
            self.token_file.unlink()
            logger.info(f"Token file deleted: {self.token_file}")
            return True
        except (OSError, PermissionError) as e:
            logger.error(f"Failed to delete token file: {e}")
            return False

    def has(self) -> bool:
        return self.token_file.exists()


class KeyValueStorage(ABC):
    """Host-provided string key-value storage."""

    @abstractmethod
    def get_item(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    def set_item(self, key: str, value: str) -> None:
        ...

    @abstractmethod
    def remove_item(self, key: str) -> None:
        ...


class MemoryKeyValueStorage(KeyValueStorage):
    """In-process key-value storage used when the host supplies none."""

    def __init__(self) -> None:
        self._items: Dict[str, str] = {}

    def get_item(self, key: str) -> Optional[str]:
        return self._items.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._items[key] = value

    def remove_item(self, key: str) -> None:
        self._items.pop(key, None)


class ExtensionTokenStore(TokenStore):
    """
    Token storage backed by the host's key-value capability.

    Single slot: every provider shares the same fixed key. Isolation
    between providers is whatever the host storage itself provides.
    """

    TOKEN_KEY = "token"

    def __init__(self, storage: KeyValueStorage, key: str = TOKEN_KEY):
        self.storage = storage
        self.key = key

    def save(self, token_set: TokenSet) -> None:
        """
        Save tokens to host storage.

        Raises:
            TokenStorageError: If the host storage rejects the write
        """
        try:
            self.storage.set_item(self.key, json.dumps(token_set.to_dict()))
        except Exception as e:
            logger.error(f"Failed to save tokens: {e}")
            raise TokenStorageError(f"Failed to save OAuth tokens: {e}") from e
        logger.info(f"Tokens saved to extension storage key {self.key!r}")

    def load(self) -> Optional[TokenSet]:
        try:
            data = self.storage.get_item(self.key)
            if not data:
                return None
            return TokenSet.from_dict(json.loads(data))
        except Exception as e:
            logger.warning(f"Invalid tokens in extension storage: {e}")
            return None

    def clear(self) -> bool:
        try:
            existed = self.storage.get_item(self.key) is not None
            self.storage.remove_item(self.key)
        except Exception as e:
            logger.error(f"Failed to clear tokens: {e}")
            return False
        if existed:
            logger.info(f"Tokens removed from extension storage key {self.key!r}")
        return existed

    def has(self) -> bool:
        return self.storage.get_item(self.key) is not None


def create_token_store(
    config: PKCEClientConfig, storage: Optional[KeyValueStorage] = None
) -> TokenStore:
    """
    Select the token store for a configuration.

    Args:
        config: Client configuration (store kind and provider id)
        storage: Host key-value capability for the extension store
                 (an in-memory one is used if omitted)

    Returns:
        FileTokenStore for store="file", ExtensionTokenStore otherwise
    """
    if config.store == STORE_FILE:
        return FileTokenStore.for_config(config)
    return ExtensionTokenStore(storage or MemoryKeyValueStorage())
