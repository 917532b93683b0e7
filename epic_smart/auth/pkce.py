"""
PKCE (RFC 7636) code verifier and S256 challenge generation.
"""

import base64
import hashlib
import secrets
from dataclasses import dataclass, field

VERIFIER_BYTES = 32


def base64url_encode(data: bytes) -> str:
    """Base64url without padding."""
    return base64.urlsafe_b64encode(data).decode("ascii").rstrip("=")


def generate_verifier(num_bytes: int = VERIFIER_BYTES) -> str:
    """Fresh high-entropy code verifier (43 characters for 32 bytes)."""
    if num_bytes < VERIFIER_BYTES:
        raise ValueError(f"PKCE verifier needs at least {VERIFIER_BYTES} random bytes")
    return base64url_encode(secrets.token_bytes(num_bytes))


def challenge_for(verifier: str) -> str:
    """S256 code challenge for a verifier."""
    return base64url_encode(hashlib.sha256(verifier.encode("ascii")).digest())


@dataclass(frozen=True)
class PKCEPair:
    code_verifier: str = field(repr=False)
    code_challenge: str
    method: str = "S256"

    @classmethod
    def generate(cls) -> "PKCEPair":
        verifier = generate_verifier()
        return cls(code_verifier=verifier, code_challenge=challenge_for(verifier))
