"""
Tests for the per-entity field codecs.
"""

import pytest

from ledgerguard.core.crypto import get_field_cipher, is_encrypted
from ledgerguard.core.exceptions import DecryptionError, ValidationError
from ledgerguard.core.fields import (
    AUDIT_CODEC,
    TRANSACTION_CODEC,
    USER_CODEC,
    EncryptedAmount,
    EncryptedJSON,
    EncryptedString,
)


class TestEntityCodec:
    """Encode-on-save / decode-on-load for whole documents."""

    def test_user_name_and_email_encrypted(self) -> None:
        document = {"id": "u1", "name": "Alice", "email": "alice@example.com", "provider": "local"}
        encoded = USER_CODEC.encode(document)

        assert is_encrypted(encoded["name"])
        assert is_encrypted(encoded["email"])
        assert encoded["id"] == "u1"
        assert encoded["provider"] == "local"
        assert USER_CODEC.decode(encoded) == document

    def test_encode_does_not_mutate_input(self) -> None:
        document = {"name": "Alice", "email": "alice@example.com"}
        USER_CODEC.encode(document)
        assert document == {"name": "Alice", "email": "alice@example.com"}

    def test_transaction_amount_round_trip(self) -> None:
        encoded = TRANSACTION_CODEC.encode({"description": "Groceries", "amount": 42.75})
        assert isinstance(encoded["amount"], str)
        assert TRANSACTION_CODEC.decode(encoded) == {"description": "Groceries", "amount": 42.75}

    def test_legacy_plaintext_fields_read_back(self) -> None:
        assert USER_CODEC.decode({"name": "Legacy", "email": "old@example.com"}) == {
            "name": "Legacy",
            "email": "old@example.com",
        }

    def test_audit_details_json_round_trip(self) -> None:
        details = {"route_class": "auth", "nested": {"count": 3}}
        encoded = AUDIT_CODEC.encode({"details": details, "error_message": None})

        assert is_encrypted(encoded["details"])
        assert encoded["error_message"] is None
        assert AUDIT_CODEC.decode(encoded)["details"] == details


class TestFieldCodecs:
    """Individual codecs."""

    def test_encrypted_string_none(self) -> None:
        codec = EncryptedString()
        assert codec.encode(None) is None
        assert codec.decode(None) is None

    def test_amount_bounds_checked_before_encryption(self) -> None:
        codec = EncryptedAmount(minimum=0, maximum=100)
        with pytest.raises(ValidationError):
            codec.encode(-1)
        with pytest.raises(ValidationError):
            codec.encode(101)
        with pytest.raises(ValidationError):
            codec.encode("50")

    def test_amount_out_of_bounds_on_read(self) -> None:
        stored = get_field_cipher().encrypt_amount(500)
        with pytest.raises(DecryptionError):
            EncryptedAmount(minimum=0, maximum=100).decode(stored)

    def test_json_legacy_string_wrapped(self) -> None:
        stored = get_field_cipher().encrypt("plain legacy message")
        assert EncryptedJSON().decode(stored) == {"message": "plain legacy message"}

    def test_encrypted_non_number_amount_raises(self) -> None:
        stored = get_field_cipher().encrypt("not-a-number")
        with pytest.raises(DecryptionError):
            EncryptedAmount().decode(stored)

    def test_legacy_plain_amounts_read_back(self) -> None:
        codec = EncryptedAmount()
        assert codec.decode(12) == 12.0
        assert codec.decode("42.5") == 42.5

    def test_legacy_plain_non_number_amount_raises(self) -> None:
        with pytest.raises(DecryptionError):
            EncryptedAmount().decode("twelve")

    def test_truncated_ciphertext_raises(self) -> None:
        stored = get_field_cipher().encrypt("Groceries at market")
        with pytest.raises(DecryptionError):
            EncryptedString().decode(stored[:-1])
        with pytest.raises(DecryptionError):
            EncryptedString().decode(stored[:-2])

    def test_envelope_with_empty_body_raises(self) -> None:
        iv_hex = get_field_cipher().encrypt("x").split(":")[0]
        with pytest.raises(DecryptionError):
            EncryptedString().decode(iv_hex + ":")
