"""
Token Cipher - Fernet encryption for messaging tokens at rest.

Keys are listed newest first: the first key encrypts, every key decrypts,
so a new key can be prepended while rows written under the old one stay
readable.
"""

from collections.abc import Sequence

from cryptography.fernet import Fernet, InvalidToken, MultiFernet


class TokenDecryptionError(Exception):
    """Stored ciphertext cannot be read with any configured key."""


def parse_keys(raw: str) -> list[str]:
    """Comma-separated TOKEN_ENCRYPTION_KEYS value to a list of keys."""
    return [key.strip() for key in raw.split(",") if key.strip()]


class TokenCipher:
    """Encrypt and decrypt access tokens."""

    def __init__(self, keys: Sequence[str]) -> None:
        if not keys:
            raise ValueError("at least one encryption key is required")
        self._fernet = MultiFernet([Fernet(key.encode("ascii")) for key in keys])

    def encrypt(self, token: str) -> str:
        return self._fernet.encrypt(token.encode("utf-8")).decode("ascii")

    def decrypt(self, ciphertext: str) -> str:
        """
        Raises:
            TokenDecryptionError: Tampered ciphertext, or written with a retired key
        """
        try:
            return self._fernet.decrypt(ciphertext.encode("ascii")).decode("utf-8")
        except (InvalidToken, UnicodeError) as exc:
            raise TokenDecryptionError("stored token could not be decrypted") from exc
