"""Tests for PKCE challenge and state generation."""

import base64
import hashlib
import json
import re

import pytest

from pkce_loopback.pkce import (
    calculate_code_challenge,
    generate_code_verifier,
    generate_pkce_pair,
    generate_state,
)

UNRESERVED = re.compile(r"^[A-Za-z0-9\-._~]+$")


class TestCodeVerifier:
    """Tests for generate_code_verifier."""

    def test_verifier_length_and_charset(self):
        """Verifier meets RFC 7636 length and charset rules."""
        verifier = generate_code_verifier()

        assert 43 <= len(verifier) <= 128
        assert UNRESERVED.match(verifier)

    def test_verifiers_are_unique(self):
        verifiers = {generate_code_verifier() for _ in range(50)}
        assert len(verifiers) == 50


class TestCodeChallenge:
    """Tests for calculate_code_challenge."""

    def test_rfc7636_appendix_b_vector(self):
        """Matches the S256 example from RFC 7636 Appendix B."""
        verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"

        assert calculate_code_challenge(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"

    def test_challenge_is_deterministic(self):
        """Repeated calls yield the same challenge."""
        verifier = generate_code_verifier()

        assert calculate_code_challenge(verifier) == calculate_code_challenge(verifier)

    def test_challenge_is_unpadded_base64url(self):
        challenge = calculate_code_challenge(generate_code_verifier())

        assert "=" not in challenge
        assert "+" not in challenge and "/" not in challenge
        assert len(challenge) == 43

    def test_challenge_matches_sha256(self):
        verifier = "a" * 64
        expected = (
            base64.urlsafe_b64encode(hashlib.sha256(verifier.encode()).digest())
            .rstrip(b"=")
            .decode()
        )

        assert calculate_code_challenge(verifier) == expected

    @pytest.mark.parametrize("verifier", ["short", "a" * 129])
    def test_rejects_bad_length(self, verifier):
        with pytest.raises(ValueError, match="characters"):
            calculate_code_challenge(verifier)

    def test_rejects_reserved_characters(self):
        with pytest.raises(ValueError, match="unreserved"):
            calculate_code_challenge("a" * 42 + "/")

    def test_generate_pkce_pair(self):
        verifier, challenge = generate_pkce_pair()

        assert calculate_code_challenge(verifier) == challenge


class TestState:
    """Tests for generate_state."""

    def test_states_are_unique(self):
        states = {generate_state() for _ in range(100)}
        assert len(states) == 100

    def test_state_is_url_safe(self):
        assert UNRESERVED.match(generate_state("Spotify"))

    def test_state_wraps_provider_name(self):
        """State carries a random id and the provider name."""
        state = generate_state("Spotify")
        padded = state + "=" * (-len(state) % 4)
        payload = json.loads(base64.urlsafe_b64decode(padded))

        assert payload["providerName"] == "Spotify"
        assert payload["flavor"] == "release"
        assert len(payload["id"]) == 36
