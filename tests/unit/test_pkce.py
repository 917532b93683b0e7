"""
Unit tests for PKCE verifier and challenge generation.
"""

import base64
import hashlib

import pytest
from epic_smart.auth.pkce import PKCEPair, base64url_encode, challenge_for, generate_verifier


class TestVerifier:
    """Tests for code verifier generation."""

    def test_verifier_is_base64url_without_padding(self):
        """Verifier should only use the base64url alphabet."""
        verifier = generate_verifier()
        assert len(verifier) == 43
        for forbidden in ("+", "/", "="):
            assert forbidden not in verifier

    def test_verifiers_never_repeat(self):
        """10,000 generated verifiers should all be distinct."""
        verifiers = {generate_verifier() for _ in range(10000)}
        assert len(verifiers) == 10000

    def test_rejects_short_entropy(self):
        """Fewer than 32 random bytes should be refused."""
        with pytest.raises(ValueError):
            generate_verifier(16)

    def test_longer_entropy_allowed(self):
        assert len(generate_verifier(64)) == 86


class TestChallenge:
    """Tests for S256 challenge derivation."""

    def test_challenge_matches_sha256_base64url(self):
        """Challenge should be the unpadded base64url SHA-256 of the verifier."""
        verifier = generate_verifier()
        expected = base64.urlsafe_b64encode(hashlib.sha256(verifier.encode()).digest()).decode().rstrip("=")
        assert challenge_for(verifier) == expected

    def test_rfc7636_example(self):
        """Known-answer test from RFC 7636 appendix B."""
        verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
        assert challenge_for(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"

    def test_base64url_encode_strips_padding(self):
        assert base64url_encode(b"\xff\xfe") == "__4"


class TestPKCEPair:
    def test_generate_pairs_match(self):
        pair = PKCEPair.generate()
        assert pair.method == "S256"
        assert pair.code_challenge == challenge_for(pair.code_verifier)

    def test_verifier_hidden_from_repr(self):
        """Verifier must not leak through repr/logging."""
        pair = PKCEPair.generate()
        assert pair.code_verifier not in repr(pair)
