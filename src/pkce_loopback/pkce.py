"""
PKCE challenge and state generation (RFC 7636).

Pure helpers with no I/O: code verifiers, S256 code challenges and opaque
state tokens used to correlate a redirect with the attempt that issued it.
"""

import base64
import hashlib
import json
import re
import secrets
import uuid
from typing import Optional, Tuple

VERIFIER_MIN_LENGTH = 43
VERIFIER_MAX_LENGTH = 128

# RFC 7636: unreserved characters only
_VERIFIER_PATTERN = re.compile(r"^[A-Za-z0-9\-._~]+$")


def generate_code_verifier() -> str:
    """
    Generate a random PKCE code verifier.

    Returns:
        URL-safe string of 43 characters (32 random bytes, unpadded)
    """
    return secrets.token_urlsafe(32)


def calculate_code_challenge(verifier: str) -> str:
    """
    Compute the S256 code challenge for a verifier.

    Args:
        verifier: PKCE code verifier

    Returns:
        Base64url-encoded SHA-256 digest without padding

    Raises:
        ValueError: If the verifier violates the RFC 7636 length or charset
    """
    if not VERIFIER_MIN_LENGTH <= len(verifier) <= VERIFIER_MAX_LENGTH:
        raise ValueError(
            f"code verifier must be {VERIFIER_MIN_LENGTH}-{VERIFIER_MAX_LENGTH} "
            f"characters, got {len(verifier)}"
        )
    if not _VERIFIER_PATTERN.match(verifier):
        raise ValueError("code verifier contains characters outside the unreserved set")

    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def generate_pkce_pair() -> Tuple[str, str]:
    """Return a fresh ``(code_verifier, code_challenge)`` pair."""
    verifier = generate_code_verifier()
    return verifier, calculate_code_challenge(verifier)


def generate_state(provider_name: Optional[str] = None) -> str:
    """
    Generate an opaque state token.

    The token wraps a random UUID (plus the provider display name) in
    URL-safe base64 so it survives the redirect round trip unescaped.
    Callers must treat it as opaque.

    Args:
        provider_name: Optional provider display name

    Returns:
        Unpredictable state string
    """
    payload = json.dumps(
        {"flavor": "release", "id": str(uuid.uuid4()), "providerName": provider_name},
        separators=(",", ":"),
    )
    return base64.urlsafe_b64encode(payload.encode("utf-8")).rstrip(b"=").decode("ascii")
