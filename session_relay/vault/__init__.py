"""Credential Vault: Encryption at rest for session payloads.

Security Note (Threat Model):
    The vault key lives in process memory for the lifetime of the server.
    A memory dump of the process exposes it, and with it every stored
    bundle. This is an accepted limitation; mitigation requires an
    HSM/KMS integration which is out of scope.
"""

from .credential_vault import (
    CredentialVault,
    DecryptResult,
    DecryptionFailed,
    DECRYPTION_FAILED,
    Ok,
)
from .crypto import EncryptedBundle
from .key_rotation import rotate_vault_key
from .config import VaultConfig, VaultKey, resolve_vault_key, generate_vault_key

__all__ = [
    "CredentialVault",
    "DecryptResult",
    "DecryptionFailed",
    "DECRYPTION_FAILED",
    "Ok",
    "EncryptedBundle",
    "rotate_vault_key",
    "VaultConfig",
    "VaultKey",
    "resolve_vault_key",
    "generate_vault_key",
]
