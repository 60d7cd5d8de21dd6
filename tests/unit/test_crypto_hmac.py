"""
Unit tests for secret encryption and HMAC request signing.
"""

import base64

import pytest

from anchorpipe.core.errors import ConfigurationError
from anchorpipe.core.security.crypto import (
    DecryptionError,
    EncryptedPayload,
    decrypt_string,
    encrypt_string,
    get_encryption_key,
    parse_encrypted,
    serialize_encrypted,
)
from anchorpipe.core.security.hmac import (
    compute_hmac,
    extract_bearer_token,
    extract_hmac_signature,
    hash_secret,
    verify_hmac,
)
from tests.shared import TEST_ENCRYPTION_KEY

FOX = "The quick brown fox jumps over the lazy dog"
FOX_SIGNATURE = "f7bc83f430538424b13298e6aa6fb143ef4d59a14946175997479dbc2d1a3cd8"


@pytest.mark.unit
class TestEncryptionKey:
    """Test key loading from configuration."""

    def test_configured_key(self) -> None:
        assert get_encryption_key() == bytes(range(32))

    def test_explicit_key(self) -> None:
        key = base64.b64encode(b"k" * 32).decode("ascii")
        assert get_encryption_key(key) == b"k" * 32

    def test_invalid_base64(self) -> None:
        with pytest.raises(ConfigurationError, match="not valid base64"):
            get_encryption_key("***not-base64***")

    def test_wrong_length(self) -> None:
        key = base64.b64encode(b"short").decode("ascii")
        with pytest.raises(ConfigurationError, match="must decode to 32 bytes"):
            get_encryption_key(key)


@pytest.mark.unit
class TestEncryption:
    """Test AES-GCM envelopes."""

    def test_encrypt_decrypt(self) -> None:
        payload = encrypt_string("hunter2")

        assert len(bytes.fromhex(payload.iv)) == 12
        assert len(bytes.fromhex(payload.tag)) == 16
        assert payload.content != "hunter2".encode("utf-8").hex()
        assert decrypt_string(payload) == "hunter2"

    def test_random_iv(self) -> None:
        assert encrypt_string("same").iv != encrypt_string("same").iv

    def test_serialized_envelope(self) -> None:
        stored = serialize_encrypted(encrypt_string("hunter2"))
        assert decrypt_string(parse_encrypted(stored)) == "hunter2"

    def test_tampered_ciphertext(self) -> None:
        """Test that a modified tag fails authentication."""
        payload = encrypt_string("hunter2")
        tampered = EncryptedPayload(
            iv=payload.iv, content=payload.content, tag="00" * 16
        )

        with pytest.raises(DecryptionError):
            decrypt_string(tampered)

    def test_wrong_key(self) -> None:
        payload = encrypt_string("hunter2")
        with pytest.raises(DecryptionError):
            decrypt_string(payload, key=b"x" * 32)

    @pytest.mark.parametrize("stored", ["not json", "[]", '{"iv": "00"}'])
    def test_malformed_envelope(self, stored: str) -> None:
        with pytest.raises(DecryptionError):
            parse_encrypted(stored)

    def test_key_matches_fixture(self) -> None:
        assert base64.b64decode(TEST_ENCRYPTION_KEY) == bytes(range(32))


@pytest.mark.unit
class TestHmac:
    """Test HMAC-SHA256 signatures and header parsing."""

    def test_known_vector(self) -> None:
        assert compute_hmac("key", FOX) == FOX_SIGNATURE
        assert compute_hmac("key", FOX.encode("utf-8")) == FOX_SIGNATURE

    def test_verify(self) -> None:
        assert verify_hmac("key", FOX, FOX_SIGNATURE)
        assert verify_hmac("key", FOX, f"  {FOX_SIGNATURE.upper()} ")
        assert not verify_hmac("other", FOX, FOX_SIGNATURE)
        assert not verify_hmac("key", FOX + ".", FOX_SIGNATURE)
        assert not verify_hmac("key", FOX, "")

    def test_bearer_token(self) -> None:
        assert extract_bearer_token({"authorization": "Bearer abc"}) == "abc"
        assert extract_bearer_token({"authorization": "bearer   abc "}) == "abc"
        assert extract_bearer_token({"authorization": "Basic abc"}) is None
        assert extract_bearer_token({}) is None

    def test_signature_header(self) -> None:
        assert extract_hmac_signature({"x-fr-sig": "abc"}) == "abc"
        assert extract_hmac_signature({"x-fr-sig": ""}) is None
        assert extract_hmac_signature({}) is None

    def test_hash_secret(self) -> None:
        assert hash_secret("abc") == (
            "ba7816bf8f01cfea414140de5dae2223b00361a396177a9cb410ff61f20015ad"
        )
