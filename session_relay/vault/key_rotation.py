"""
Vault Key Rotation: Re-encryption of stored sessions under a new key.

Walks every record of a session store, opens it with the old vault and
writes it back sealed by the new vault, keeping its expiry. The operation
is idempotent: records that already open under the new key are skipped.

Security Note:
    Plaintext exists in memory only during re-encryption of each record.
    Never log plaintext or ciphertext values.
"""
import logging
from typing import TYPE_CHECKING

from .credential_vault import CredentialVault, Ok

if TYPE_CHECKING:
    from ..store import SessionStore

logger = logging.getLogger("relay.vault")


async def rotate_vault_key(
    store: "SessionStore",
    old_vault: CredentialVault,
    new_vault: CredentialVault,
) -> dict:
    """Re-encrypt all sessions from old_vault to new_vault.

    Args:
        store: Session store holding the bundles.
        old_vault: Vault built on the key being retired.
        new_vault: Vault built on the replacement key.

    Returns:
        Stats dict with keys: total, rotated, skipped, errors.
    """
    stats = {"total": 0, "rotated": 0, "skipped": 0, "errors": 0}
    logger.info("Starting vault key rotation")

    for session_id in await store.ids():
        bundle = await store.get(session_id)
        if bundle is None:
            # expired while we were walking the store
            continue
        stats["total"] += 1

        if isinstance(new_vault.decrypt(bundle), Ok):
            stats["skipped"] += 1
            continue

        result = old_vault.decrypt(bundle)
        if not isinstance(result, Ok):
            logger.error("Error rotating session id=%s: cannot decrypt", session_id)
            stats["errors"] += 1
            continue

        expires_at = await store.expires_at(session_id)
        await store.put_until(
            session_id, new_vault.encrypt(result.plaintext), expires_at,
        )
        stats["rotated"] += 1

    logger.info("Vault key rotation complete: %s", stats)
    return stats
