"""
Field transform layer: explicit encrypt-on-write / decrypt-on-read codecs.

Each persisted entity has one EntityCodec naming its encrypted fields. The
repository adapters in storage.py are the only callers, so application code
only ever handles plaintext values.
"""

import json
import math
from typing import Any, Callable, Dict, Mapping, Optional

import structlog

from ..models.finance import MAX_AMOUNT
from .crypto import FieldCipher, get_field_cipher
from .exceptions import DecryptionError, ValidationError

logger = structlog.get_logger(__name__)

CipherProvider = Callable[[], FieldCipher]


class FieldCodec:
    """Converts one field between its in-memory and stored representation."""

    def __init__(self, cipher_provider: Optional[CipherProvider] = None) -> None:
        self._cipher_provider = cipher_provider or get_field_cipher

    @property
    def cipher(self) -> FieldCipher:
        return self._cipher_provider()

    def encode(self, value: Any) -> Any:
        raise NotImplementedError

    def decode(self, stored: Any) -> Any:
        raise NotImplementedError


class EncryptedString(FieldCodec):
    """Free text and PII."""

    def encode(self, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        return self.cipher.encrypt(value)

    def decode(self, stored: Optional[str]) -> Optional[str]:
        if stored is None:
            return None
        return self.cipher.decrypt(stored)


class EncryptedAmount(FieldCodec):
    """
    Monetary amount. Bounds are checked on both sides of the boundary:
    before encryption on write, and after decryption on read.
    """

    def __init__(
        self,
        minimum: float = 0.0,
        maximum: float = MAX_AMOUNT,
        cipher_provider: Optional[CipherProvider] = None,
    ) -> None:
        super().__init__(cipher_provider)
        self.minimum = minimum
        self.maximum = maximum

    def _check_bounds(self, value: float) -> None:
        if not math.isfinite(value) or value < self.minimum or value > self.maximum:
            raise ValidationError(
                "Amount out of range",
                details={"minimum": self.minimum, "maximum": self.maximum},
            )

    def encode(self, value: Any) -> str:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValidationError("Amount must be a number", details={"type": type(value).__name__})
        self._check_bounds(float(value))
        return self.cipher.encrypt_amount(float(value))

    def decode(self, stored: Any) -> float:
        if stored is None:
            return 0.0
        if isinstance(stored, (int, float)) and not isinstance(stored, bool):
            value = float(stored)
        else:
            plaintext = self.cipher.decrypt(stored)
            try:
                value = float(plaintext)  # type: ignore[arg-type]
            except (TypeError, ValueError) as e:
                logger.error("Stored amount is not a number")
                raise DecryptionError("Stored amount is not a number") from e
        try:
            self._check_bounds(value)
        except ValidationError as e:
            logger.error("Stored amount violates domain constraints")
            raise DecryptionError("Stored amount violates domain constraints") from e
        return value


class EncryptedJSON(FieldCodec):
    """Structured value serialized to JSON, then encrypted."""

    def encode(self, value: Any) -> Optional[str]:
        if value is None:
            return None
        return self.cipher.encrypt(json.dumps(value, sort_keys=True, default=str))

    def decode(self, stored: Optional[str]) -> Any:
        if stored is None:
            return None
        plaintext = self.cipher.decrypt(stored)
        try:
            return json.loads(plaintext)  # type: ignore[arg-type]
        except (TypeError, json.JSONDecodeError):
            # Legacy rows hold bare strings
            return {"message": plaintext}


class EntityCodec:
    """Applies per-field codecs to a whole document; other fields pass through."""

    def __init__(self, fields: Mapping[str, FieldCodec]) -> None:
        self.fields = dict(fields)

    def encode(self, document: Mapping[str, Any]) -> Dict[str, Any]:
        encoded = dict(document)
        for name, codec in self.fields.items():
            if name in encoded:
                encoded[name] = codec.encode(encoded[name])
        return encoded

    def decode(self, stored: Mapping[str, Any]) -> Dict[str, Any]:
        decoded = dict(stored)
        for name, codec in self.fields.items():
            if name in decoded:
                decoded[name] = codec.decode(decoded[name])
        return decoded

    def decode_field(self, name: str, stored: Any) -> Any:
        return self.fields[name].decode(stored)


USER_CODEC = EntityCodec({
    "name": EncryptedString(),
    "email": EncryptedString(),
})

TRANSACTION_CODEC = EntityCodec({
    "description": EncryptedString(),
    "amount": EncryptedAmount(),
})

BUDGET_CODEC = EntityCodec({
    "amount": EncryptedAmount(),
    "spent": EncryptedAmount(),
})

GOAL_CODEC = EntityCodec({
    "title": EncryptedString(),
    "description": EncryptedString(),
    "target_amount": EncryptedAmount(),
    "current_amount": EncryptedAmount(),
})

AUDIT_CODEC = EntityCodec({
    "details": EncryptedJSON(),
    "error_message": EncryptedString(),
})
