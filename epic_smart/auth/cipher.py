"""
Token encryption at rest.

Tokens are sealed with Fernet (AES-128-CBC with a random IV per message plus
HMAC-SHA256), so a wrong key or a tampered ciphertext is detected instead of
decrypting to garbage. The Fernet key is derived from the configured secret
with HKDF-SHA256. Retired secrets can be supplied for decryption only, which
lets stored tokens survive a key rotation.
"""

import base64
import secrets
from typing import Iterable, Optional

from cryptography.fernet import Fernet, InvalidToken, MultiFernet
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from epic_smart.core.config import MIN_ENCRYPTION_KEY_LENGTH, Settings, settings
from epic_smart.core.exceptions import ConfigurationError, DecryptionError

_KDF_INFO = b"epic-smart-token-cipher-v1"


def derive_fernet_key(secret: str) -> bytes:
    """Derive a urlsafe-base64 Fernet key from a configured secret."""
    if not secret or len(secret) < MIN_ENCRYPTION_KEY_LENGTH:
        raise ConfigurationError(f"ENCRYPTION_KEY must be at least {MIN_ENCRYPTION_KEY_LENGTH} characters long")
    hkdf = HKDF(algorithm=hashes.SHA256(), length=32, salt=None, info=_KDF_INFO)
    return base64.urlsafe_b64encode(hkdf.derive(secret.encode("utf-8")))


class TokenCipher:
    """Symmetric encrypt/decrypt of token strings"""

    def __init__(self, secret: str, previous_secrets: Optional[Iterable[str]] = None):
        keys = [Fernet(derive_fernet_key(secret))]
        keys.extend(Fernet(derive_fernet_key(s)) for s in (previous_secrets or []))
        self._cipher = MultiFernet(keys)

    @classmethod
    def from_settings(cls, app_settings: Optional[Settings] = None) -> "TokenCipher":
        s = app_settings or settings
        return cls(s.ENCRYPTION_KEY, s.previous_encryption_keys)

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a string; the result is opaque ASCII."""
        return self._cipher.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        """
        Decrypt a string produced by ``encrypt``.

        Raises:
            DecryptionError: wrong key, corrupted or foreign ciphertext
        """
        try:
            return self._cipher.decrypt(ciphertext.encode("ascii")).decode("utf-8")
        except (InvalidToken, ValueError, TypeError, AttributeError) as e:
            raise DecryptionError("Stored token could not be decrypted") from e

    def rotate(self, ciphertext: str) -> str:
        """Re-encrypt under the current key."""
        try:
            return self._cipher.rotate(ciphertext.encode("ascii")).decode("ascii")
        except (InvalidToken, ValueError, TypeError, AttributeError) as e:
            raise DecryptionError("Stored token could not be decrypted") from e


def generate_encryption_key() -> str:
    """Random secret suitable for ENCRYPTION_KEY."""
    return secrets.token_urlsafe(48)
