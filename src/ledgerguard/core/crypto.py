"""
Symmetric encryption primitives for field-level encryption.

Ciphertext format: ``<iv hex>:<cipher output hex>``. The IV travels with the
value, so nothing beyond the process-wide key is needed to decrypt.

- 12-byte IV (24 hex chars): AES-256-GCM, cipher output includes the tag
- 16-byte IV (32 hex chars): legacy AES-256-CBC records, decrypt only
"""

import math
import os
import re
from decimal import Decimal
from typing import Optional, Union

import structlog
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import padding
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..config import get_settings
from .exceptions import ConfigurationError, DecryptionError, ValidationError

logger = structlog.get_logger(__name__)

KEY_LENGTH = 32
IV_LENGTH = 12
LEGACY_IV_LENGTH = 16
DELIMITER = ":"

_KEY_PATTERN = re.compile(r"^[0-9a-fA-F]{64}$")
_ENVELOPE_PATTERN = re.compile(r"^(?P<iv>[0-9a-f]{24}|[0-9a-f]{32}):(?P<body>(?:[0-9a-f]{2})+)$")
_IV_PATTERN = re.compile(r"^(?:[0-9a-fA-F]{24}|[0-9a-fA-F]{32})$")
_BODY_PATTERN = re.compile(r"^(?:[0-9a-fA-F]{2})+$")

Amount = Union[int, float, Decimal]


def generate_encryption_key() -> str:
    """Generate a new random key in the ENCRYPTION_KEY format."""
    return os.urandom(KEY_LENGTH).hex()


def validate_encryption_key(key: Optional[str]) -> bool:
    """Check that a key is exactly 64 hex characters (32 bytes)."""
    if not key or not isinstance(key, str):
        return False
    return bool(_KEY_PATTERN.match(key))


def is_encrypted(value: object) -> bool:
    """True if value has the shape of a ciphertext produced by this module."""
    return isinstance(value, str) and bool(_ENVELOPE_PATTERN.match(value))


class FieldCipher:
    """
    AES-256-GCM cipher bound to one process-wide key.

    Every call to encrypt draws a fresh random IV, so equal plaintexts give
    different ciphertexts and encrypted fields cannot be searched by equality.
    """

    def __init__(self, key_hex: Optional[str]) -> None:
        if not key_hex:
            raise ConfigurationError("ENCRYPTION_KEY environment variable is required")
        if not validate_encryption_key(key_hex):
            raise ConfigurationError("ENCRYPTION_KEY must be 64 hex characters (32 bytes)")

        self._key = bytes.fromhex(key_hex)
        self._aead = AESGCM(self._key)

    def encrypt(self, plaintext: Optional[str]) -> Optional[str]:
        """Encrypt a string. None and empty strings are returned unchanged."""
        if not plaintext:
            return plaintext
        if not isinstance(plaintext, str):
            raise ValidationError(
                "Only strings can be encrypted",
                details={"type": type(plaintext).__name__},
            )

        iv = os.urandom(IV_LENGTH)
        cipher_output = self._aead.encrypt(iv, plaintext.encode("utf-8"), None)
        return iv.hex() + DELIMITER + cipher_output.hex()

    def decrypt(self, value: Optional[str]) -> Optional[str]:
        """
        Decrypt a stored value.

        Values without an IV-shaped prefix are returned unchanged so that
        records written before encryption was enabled still read back. Once
        the prefix is an IV, a damaged body raises DecryptionError.
        """
        if not value or not isinstance(value, str):
            return value
        if DELIMITER not in value:
            return value

        iv_hex, _, body_hex = value.partition(DELIMITER)
        if not _IV_PATTERN.match(iv_hex):
            return value
        if not _BODY_PATTERN.match(body_hex):
            logger.error("Malformed ciphertext envelope", iv_length=len(iv_hex) // 2, body_length=len(body_hex))
            raise DecryptionError()

        iv = bytes.fromhex(iv_hex)
        body = bytes.fromhex(body_hex)

        try:
            if len(iv) == IV_LENGTH:
                plaintext = self._aead.decrypt(iv, body, None)
            else:
                plaintext = self._decrypt_legacy(iv, body)
            return plaintext.decode("utf-8")
        except (InvalidTag, ValueError) as e:
            logger.error(
                "Decryption failed",
                error_type=type(e).__name__,
                iv_length=len(iv),
            )
            raise DecryptionError() from e

    def _decrypt_legacy(self, iv: bytes, body: bytes) -> bytes:
        """Decrypt AES-256-CBC records written by the previous backend."""
        decryptor = Cipher(algorithms.AES(self._key), modes.CBC(iv)).decryptor()
        padded = decryptor.update(body) + decryptor.finalize()
        unpadder = padding.PKCS7(algorithms.AES.block_size).unpadder()
        return unpadder.update(padded) + unpadder.finalize()

    def encrypt_amount(self, amount: Amount) -> str:
        """Encrypt a number via its decimal string form."""
        if isinstance(amount, bool) or not isinstance(amount, (int, float, Decimal)):
            raise ValidationError(
                "Amount must be a number",
                details={"type": type(amount).__name__},
            )
        if isinstance(amount, float) and not math.isfinite(amount):
            raise ValidationError("Amount must be finite")

        return self.encrypt(str(amount))  # type: ignore[return-value]

    def decrypt_amount(self, value: Union[str, Amount, None]) -> float:
        """Decrypt an amount. Numbers pass through; unparsable plaintext reads as 0."""
        if value is None:
            return 0.0
        if isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
            return float(value)

        plaintext = self.decrypt(value)
        try:
            parsed = float(plaintext) if plaintext else 0.0
        except (TypeError, ValueError):
            return 0.0
        return parsed if math.isfinite(parsed) else 0.0


# Global cipher instance
_field_cipher: Optional[FieldCipher] = None


def get_field_cipher() -> FieldCipher:
    """Get or create the process-wide cipher. The key is read once."""
    global _field_cipher

    if _field_cipher is None:
        settings = get_settings()
        _field_cipher = FieldCipher(settings.secrets.encryption_key)
        logger.info("Field cipher initialized", algorithm="aes-256-gcm")

    return _field_cipher


def encrypt(plaintext: Optional[str]) -> Optional[str]:
    return get_field_cipher().encrypt(plaintext)


def decrypt(value: Optional[str]) -> Optional[str]:
    return get_field_cipher().decrypt(value)


def encrypt_amount(amount: Amount) -> str:
    return get_field_cipher().encrypt_amount(amount)


def decrypt_amount(value: Union[str, Amount, None]) -> float:
    return get_field_cipher().decrypt_amount(value)
