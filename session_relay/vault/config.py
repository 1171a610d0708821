"""
Vault Configuration: Key provisioning and validated settings.

Reads the vault key from the environment:
    SESSION_VAULT_KEY = <hex-encoded 32-byte key>

When the variable is absent a random key is generated for the lifetime of
the process. It is never persisted, so bundles sealed with it cannot be
opened after a restart. Operators who need sessions to survive restarts
must provide ``SESSION_VAULT_KEY``.

Security Note:
    Never log key material. Only log whether the key was generated.
"""
import os
import secrets
import logging
from typing import Optional
from collections.abc import Mapping

from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger("relay.vault")

KEY_ENV_NAME = "SESSION_VAULT_KEY"
KEY_LENGTH = 32  # AES-256


class VaultKey(BaseModel):
    """Process-wide 256-bit vault key. Immutable once resolved."""

    material: bytes = Field(repr=False)
    generated: bool = False

    model_config = {"frozen": True}

    @field_validator("material")
    @classmethod
    def validate_length(cls, v: bytes) -> bytes:
        """Key must be exactly 32 bytes."""
        if len(v) != KEY_LENGTH:
            raise ValueError(
                f"vault key must be exactly {KEY_LENGTH} bytes, got {len(v)}"
            )
        return v

    @classmethod
    def from_hex(cls, value: str) -> "VaultKey":
        """Build a key from its 64-character hex form.

        Raises:
            ValueError: If the value is not valid hex or not 32 bytes long.
        """
        try:
            material = bytes.fromhex(value.strip())
        except ValueError:
            raise ValueError(
                f"{KEY_ENV_NAME} must be a hex-encoded {KEY_LENGTH}-byte key"
            ) from None
        return cls(material=material)

    @classmethod
    def generate(cls) -> "VaultKey":
        """Random key for this process only."""
        return cls(material=secrets.token_bytes(KEY_LENGTH), generated=True)


def resolve_vault_key(environ: Optional[Mapping[str, str]] = None) -> VaultKey:
    """Resolve the vault key once at startup.

    Args:
        environ: Mapping to read from, defaults to ``os.environ``.

    Returns:
        The configured key, or a freshly generated one if none is set.

    Raises:
        ValueError: If ``SESSION_VAULT_KEY`` is set but malformed.
    """
    env = os.environ if environ is None else environ
    raw = (env.get(KEY_ENV_NAME) or "").strip()
    if raw:
        key = VaultKey.from_hex(raw)
        logger.debug("Vault key loaded from %s", KEY_ENV_NAME)
        return key
    logger.warning(
        "%s is not set; using a random key for this process. "
        "Stored sessions will not be decryptable after a restart.",
        KEY_ENV_NAME,
    )
    return VaultKey.generate()


def generate_vault_key() -> str:
    """Generate a random 32-byte vault key and return it as hex.

    This is a utility for operators to provision ``SESSION_VAULT_KEY``.
    """
    return secrets.token_hex(KEY_LENGTH)


class VaultConfig(BaseModel):
    """Validated vault configuration."""

    key: VaultKey
    session_ttl: int = Field(default=3600, ge=60)
    max_sessions: int = Field(default=10000, ge=1)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "VaultConfig":
        """Create VaultConfig by loading values from environment.

        Returns:
            Populated VaultConfig instance.
        """
        env = os.environ if environ is None else environ
        return cls(
            key=resolve_vault_key(env),
            session_ttl=int(env.get("SESSION_TTL", 3600)),
            max_sessions=int(env.get("SESSION_MAX_SESSIONS", 10000)),
        )
