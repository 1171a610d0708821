"""
Vault Crypto Core: AEAD encryption/decryption and value serialization.

Every encryption produces an EncryptedBundle of three hex fields:
- iv:      16 random bytes, fresh for every call
- content: AES-256-GCM ciphertext, same length as the plaintext
- tag:     16-byte GCM authentication tag

Security Note:
    Never log plaintext or ciphertext values.
    An IV must never be reused with the same key; it is always drawn
    from os.urandom and never substituted.
"""
import os
import re
import base64
import logging
from typing import Any
from collections.abc import Mapping

import orjson
from pydantic import BaseModel
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

logger = logging.getLogger("relay.vault")

IV_SIZE = 16
TAG_SIZE = 16

_BYTES_WRAPPER_KEY = "__vault_bytes_b64__"
_HEX_PATTERN = re.compile(r"[0-9a-fA-F]*")


class EncryptedBundle(BaseModel):
    """Result of one vault encryption, each field hex-encoded.

    The fields are kept as plain strings: a record read back from storage
    may be corrupt, and that is reported by the vault as a failed
    decryption rather than rejected here.
    """

    iv: str
    content: str
    tag: str

    model_config = {"frozen": True}

    def to_dict(self) -> dict[str, str]:
        return {"iv": self.iv, "content": self.content, "tag": self.tag}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "EncryptedBundle":
        return cls(iv=data["iv"], content=data["content"], tag=data["tag"])


# ---------------------------------------------------------------------------
# AEAD
# ---------------------------------------------------------------------------

def encrypt_bundle(plaintext: bytes, key: bytes) -> EncryptedBundle:
    """Encrypt plaintext with AES-256-GCM under a fresh 16-byte IV.

    Args:
        plaintext: Data to encrypt.
        key: Raw 32-byte key.

    Returns:
        EncryptedBundle with hex-encoded iv, content and tag.
    """
    iv = os.urandom(IV_SIZE)
    sealed = AESGCM(key).encrypt(iv, plaintext, None)
    content, tag = sealed[:-TAG_SIZE], sealed[-TAG_SIZE:]
    return EncryptedBundle(iv=iv.hex(), content=content.hex(), tag=tag.hex())


def _unhex(name: str, value: str) -> bytes:
    # bytes.fromhex skips whitespace, so check the digits first
    if not isinstance(value, str) or not _HEX_PATTERN.fullmatch(value) or len(value) % 2:
        raise ValueError(f"{name} is not a hex string")
    return bytes.fromhex(value)


def decrypt_bundle(bundle: EncryptedBundle, key: bytes) -> bytes:
    """Decrypt an EncryptedBundle.

    Args:
        bundle: Bundle produced by encrypt_bundle.
        key: Raw 32-byte key.

    Returns:
        Decrypted plaintext bytes.

    Raises:
        ValueError: If a field is not valid hex or has the wrong size.
        cryptography.exceptions.InvalidTag: If authentication fails.
    """
    iv = _unhex("iv", bundle.iv)
    content = _unhex("content", bundle.content)
    tag = _unhex("tag", bundle.tag)
    if len(iv) != IV_SIZE:
        raise ValueError(f"iv must be {IV_SIZE} bytes, got {len(iv)}")
    if len(tag) != TAG_SIZE:
        raise ValueError(f"tag must be {TAG_SIZE} bytes, got {len(tag)}")
    return AESGCM(key).decrypt(iv, content + tag, None)


# ---------------------------------------------------------------------------
# Value serialization
# ---------------------------------------------------------------------------

def serialize_value(value: Any) -> bytes:
    """Serialize a Python value to bytes for encryption.

    Supports: str, int, float, dict, list, bytes, bool, None.
    bytes values are wrapped in a base64 envelope for safe JSON round-trip.

    Args:
        value: Python value to serialize.

    Returns:
        orjson-encoded bytes.
    """
    if isinstance(value, bytes):
        wrapped = {_BYTES_WRAPPER_KEY: base64.b64encode(value).decode("ascii")}
        return orjson.dumps(wrapped)
    return orjson.dumps(value)


def deserialize_value(data: bytes) -> Any:
    """Deserialize bytes back to a Python value.

    Args:
        data: orjson-encoded bytes from serialize_value.

    Returns:
        Original Python value.
    """
    parsed = orjson.loads(data)
    if isinstance(parsed, dict) and _BYTES_WRAPPER_KEY in parsed and len(parsed) == 1:
        return base64.b64decode(parsed[_BYTES_WRAPPER_KEY])
    return parsed
