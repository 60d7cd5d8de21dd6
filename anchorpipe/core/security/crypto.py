"""
AES-256-GCM encryption for secrets at rest.

Encrypted values are stored as a JSON envelope ``{"iv", "content", "tag"}``
with hex-encoded fields. The key is read from ENCRYPTION_KEY_BASE64 and
must decode to 32 bytes.
"""

import base64
import binascii
import json
import os
from dataclasses import asdict, dataclass
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from ..config import get_config
from ..errors import ConfigurationError

IV_LENGTH_BYTES = 12
TAG_LENGTH_BYTES = 16
KEY_LENGTH_BYTES = 32


class DecryptionError(Exception):
    """Envelope could not be parsed or authenticated."""


@dataclass
class EncryptedPayload:
    """Hex-encoded AES-GCM envelope."""

    iv: str
    content: str
    tag: str


def get_encryption_key(key_base64: Optional[str] = None) -> bytes:
    """
    Decode the AES key.

    Raises:
        ConfigurationError: If the key is missing or not 32 bytes
    """
    secret = key_base64 or get_config().security.encryption_key_base64
    if not secret:
        raise ConfigurationError("ENCRYPTION_KEY_BASE64 must be set")
    try:
        key = base64.b64decode(secret, validate=True)
    except (binascii.Error, ValueError):
        raise ConfigurationError("ENCRYPTION_KEY_BASE64 is not valid base64")
    if len(key) != KEY_LENGTH_BYTES:
        raise ConfigurationError(
            f"ENCRYPTION_KEY_BASE64 must decode to {KEY_LENGTH_BYTES} bytes"
        )
    return key


def encrypt_string(text: str, key: Optional[bytes] = None) -> EncryptedPayload:
    """Encrypt text with a random 12-byte IV."""
    aesgcm = AESGCM(key or get_encryption_key())
    iv = os.urandom(IV_LENGTH_BYTES)
    sealed = aesgcm.encrypt(iv, text.encode("utf-8"), None)
    # cryptography appends the tag to the ciphertext
    return EncryptedPayload(
        iv=iv.hex(),
        content=sealed[:-TAG_LENGTH_BYTES].hex(),
        tag=sealed[-TAG_LENGTH_BYTES:].hex(),
    )


def decrypt_string(payload: EncryptedPayload, key: Optional[bytes] = None) -> str:
    """
    Decrypt an envelope.

    Raises:
        DecryptionError: If the envelope is malformed or fails authentication
    """
    aesgcm = AESGCM(key or get_encryption_key())
    try:
        iv = bytes.fromhex(payload.iv)
        sealed = bytes.fromhex(payload.content) + bytes.fromhex(payload.tag)
        return aesgcm.decrypt(iv, sealed, None).decode("utf-8")
    except (ValueError, InvalidTag) as e:
        raise DecryptionError("Unable to decrypt payload") from e


def serialize_encrypted(payload: EncryptedPayload) -> str:
    """Serialize an envelope for storage."""
    return json.dumps(asdict(payload))


def parse_encrypted(serialized: str) -> EncryptedPayload:
    """
    Parse a stored envelope.

    Raises:
        DecryptionError: If the value is not a valid envelope
    """
    try:
        data = json.loads(serialized)
        return EncryptedPayload(iv=data["iv"], content=data["content"], tag=data["tag"])
    except (ValueError, KeyError, TypeError) as e:
        raise DecryptionError("Malformed encrypted payload") from e
