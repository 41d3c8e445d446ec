"""
Security utilities for the chain execution engine.

Includes:
- Fernet (AES + HMAC) encryption for checkpoint payloads
- SHA-256 integrity digests
- Allow-list sanitization of identifiers used as file names / record keys
"""

import hashlib
import re

from cryptography.fernet import Fernet, InvalidToken

from core.exceptions import ValidationError

IDENTIFIER_MAX_LENGTH = 64
_DISALLOWED_CHARS = re.compile(r"[^A-Za-z0-9_-]")


class PayloadCipher:
    """
    Authenticated encryption for payloads persisted at rest.

    The key is a urlsafe base64 Fernet key supplied out-of-band
    (environment), never stored next to the data.
    """

    def __init__(self, key: str):
        """
        Initialize cipher with encryption key.

        Args:
            key: Fernet key (urlsafe base64, 32 bytes decoded)

        Raises:
            ValueError: If the key is empty or malformed
        """
        if not key:
            raise ValueError("Encryption key is required")
        try:
            self.cipher = Fernet(key.encode() if isinstance(key, str) else key)
        except (ValueError, TypeError) as e:
            raise ValueError(f"Invalid encryption key: {str(e)}") from e

    def encrypt(self, plaintext: str) -> str:
        """
        Encrypt a string.

        Args:
            plaintext: Text to encrypt

        Returns:
            Fernet token as text
        """
        return self.cipher.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, token: str) -> str:
        """
        Decrypt a Fernet token.

        Args:
            token: Encrypted text

        Returns:
            Decrypted plaintext

        Raises:
            ValueError: If the token was tampered with or the key is wrong
        """
        try:
            return self.cipher.decrypt(token.encode("ascii")).decode("utf-8")
        except (InvalidToken, UnicodeError) as e:
            raise ValueError(f"Decryption failed: {type(e).__name__}") from e


def generate_encryption_key() -> str:
    """Generate a fresh key suitable for CHECKPOINT_ENCRYPTION_KEY."""
    return Fernet.generate_key().decode("ascii")


def compute_digest(text: str) -> str:
    """SHA-256 hex digest of a text payload."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def sanitize_identifier(value: str, max_length: int = IDENTIFIER_MAX_LENGTH) -> str:
    """
    Check that an identifier is safe to use as a file name or key.

    Only ``[A-Za-z0-9_-]`` is accepted. Identifiers carrying anything else
    are rejected rather than stripped, so two distinct ids never share a key.

    Args:
        value: Raw identifier (e.g. an execution id)
        max_length: Maximum allowed length

    Returns:
        The identifier, unchanged

    Raises:
        ValidationError: If the identifier is empty, too long or contains
            disallowed characters
    """
    if not isinstance(value, str):
        raise ValidationError("Identifier must be a string")
    sanitized = _DISALLOWED_CHARS.sub("", value)
    if not sanitized:
        raise ValidationError(f"Identifier {value!r} contains no allowed characters")
    if sanitized != value:
        raise ValidationError(f"Identifier {value!r} contains disallowed characters")
    if len(sanitized) > max_length:
        raise ValidationError(f"Identifier exceeds {max_length} characters")
    return sanitized
