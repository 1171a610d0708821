"""
CredentialVault: Authenticated encryption of opaque session payloads.

Provides the public API of the vault:
- ``encrypt(plaintext)``: seal a string into an EncryptedBundle
- ``decrypt(bundle)``: open a bundle, ``Ok(plaintext)`` or ``DECRYPTION_FAILED``
- ``encrypt_value(value)`` / ``decrypt_value(bundle, default)``: same for
  JSON-like values

Decryption fails closed: a malformed, forged, corrupted or foreign bundle
all produce the same sentinel, and the reason is never reported.

Security Note:
    Never log plaintext or ciphertext values.
"""
import logging
from typing import Any, Optional, Union
from dataclasses import dataclass
from collections.abc import Mapping

from .config import VaultKey
from .crypto import (
    EncryptedBundle,
    encrypt_bundle,
    decrypt_bundle,
    serialize_value,
    deserialize_value,
)

logger = logging.getLogger("relay.vault")


@dataclass(frozen=True)
class Ok:
    """Successful decryption."""
    plaintext: str


class DecryptionFailed:
    """Sentinel type for a bundle that could not be opened."""

    _instance: Optional["DecryptionFailed"] = None

    def __new__(cls) -> "DecryptionFailed":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "DECRYPTION_FAILED"


DECRYPTION_FAILED = DecryptionFailed()

DecryptResult = Union[Ok, DecryptionFailed]


class CredentialVault:
    """AES-256-GCM vault bound to a single process-wide key.

    The key is resolved once at startup (see ``resolve_vault_key``) and
    passed in; the vault never reads the environment itself.
    """

    def __init__(self, key: VaultKey):
        self._key = key

    @property
    def ephemeral(self) -> bool:
        """True when the key was generated and will not survive a restart."""
        return self._key.generated

    def encrypt(self, plaintext: str) -> EncryptedBundle:
        """Encrypt a string.

        Errors from the random source or the cipher propagate: there is no
        recovery path for a broken key or an exhausted entropy source.
        """
        return encrypt_bundle(plaintext.encode("utf-8"), self._key.material)

    def decrypt(
        self, bundle: Union[EncryptedBundle, Mapping[str, Any]]
    ) -> DecryptResult:
        """Decrypt a bundle, failing closed.

        Args:
            bundle: EncryptedBundle, or a mapping with ``iv``, ``content``
                and ``tag``.

        Returns:
            ``Ok(plaintext)``, or ``DECRYPTION_FAILED`` for any error.
        """
        try:
            if not isinstance(bundle, EncryptedBundle):
                bundle = EncryptedBundle.from_dict(bundle)
            data = decrypt_bundle(bundle, self._key.material)
            return Ok(data.decode("utf-8"))
        except Exception:  # any failure yields the same sentinel
            logger.debug("Vault decrypt failed")
            return DECRYPTION_FAILED

    def decrypt_or_none(
        self, bundle: Union[EncryptedBundle, Mapping[str, Any]]
    ) -> Optional[str]:
        result = self.decrypt(bundle)
        return result.plaintext if isinstance(result, Ok) else None

    def encrypt_value(self, value: Any) -> EncryptedBundle:
        """Serialize and encrypt a JSON-like value.

        Supported types: str, int, float, dict, list, bytes, bool, None.
        """
        return encrypt_bundle(serialize_value(value), self._key.material)

    def decrypt_value(
        self,
        bundle: Union[EncryptedBundle, Mapping[str, Any]],
        default: Any = None,
    ) -> Any:
        """Decrypt a value sealed by ``encrypt_value``.

        Returns:
            The original value, or ``default`` if the bundle cannot be opened.
        """
        result = self.decrypt(bundle)
        if not isinstance(result, Ok):
            return default
        try:
            return deserialize_value(result.plaintext.encode("utf-8"))
        except ValueError:
            logger.debug("Vault value could not be deserialized")
            return default
