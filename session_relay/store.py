"""
Session Store: Persistence boundary for encrypted session records.

A store only ever sees EncryptedBundle records. It treats them as opaque,
replaces them whole on ``put`` and never updates a single field.
"""
import time
import logging
from typing import Optional, Protocol, runtime_checkable
from dataclasses import dataclass

from .vault.crypto import EncryptedBundle

logger = logging.getLogger("relay.store")

MAX_SESSION_ID_LENGTH = 255

# marker for "use the store's default TTL"
_DEFAULT = object()


def validate_session_id(session_id: str) -> None:
    """Validate a session identifier.

    Raises:
        ValueError: If it is empty, too long, or contains ':'.
    """
    if not session_id:
        raise ValueError("Session id cannot be empty")
    if len(session_id) > MAX_SESSION_ID_LENGTH:
        raise ValueError(
            f"Session id cannot exceed {MAX_SESSION_ID_LENGTH} characters"
        )
    if ":" in session_id:
        raise ValueError("Session id cannot contain ':'")


@runtime_checkable
class SessionStore(Protocol):
    """Capabilities a session backend must provide."""

    async def get(self, session_id: str) -> Optional[EncryptedBundle]:
        ...

    async def put(self, session_id: str, bundle: EncryptedBundle, ttl=_DEFAULT) -> None:
        ...

    async def put_until(
        self, session_id: str, bundle: EncryptedBundle, expires_at: Optional[float]
    ) -> None:
        ...

    async def evict(self, session_id: str) -> bool:
        ...

    async def ids(self) -> list[str]:
        ...

    async def expires_at(self, session_id: str) -> Optional[float]:
        ...


@dataclass(frozen=True)
class _Record:
    bundle: EncryptedBundle
    expires_at: Optional[float]


class MemorySessionStore:
    """In-process session store.

    Records without an expiry are permanent; the others disappear from
    ``get`` once their TTL has passed and are dropped by ``purge_expired``.
    """

    def __init__(
        self,
        default_ttl: Optional[int] = None,
        max_sessions: Optional[int] = None,
        clock=time.time,
    ):
        self._records: dict[str, _Record] = {}
        self._default_ttl = default_ttl
        self._max_sessions = max_sessions
        self._clock = clock

    def __len__(self) -> int:
        return len(self._records)

    def _expired(self, record: _Record) -> bool:
        return record.expires_at is not None and record.expires_at <= self._clock()

    def _live(self, session_id: str) -> Optional[_Record]:
        record = self._records.get(session_id)
        if record is None:
            return None
        if self._expired(record):
            del self._records[session_id]
            logger.debug("Session expired: id=%s", session_id)
            return None
        return record

    async def get(self, session_id: str) -> Optional[EncryptedBundle]:
        validate_session_id(session_id)
        record = self._live(session_id)
        return record.bundle if record else None

    async def put(
        self, session_id: str, bundle: EncryptedBundle, ttl=_DEFAULT
    ) -> None:
        """Store a bundle, replacing any previous record for the id.

        Args:
            session_id: Session identifier.
            bundle: Encrypted session record.
            ttl: Lifetime in seconds; ``None`` stores a permanent record.
                Defaults to the store's ``default_ttl``.

        Raises:
            ValueError: If the id is invalid or the store is full.
        """
        validate_session_id(session_id)
        if not isinstance(bundle, EncryptedBundle):
            raise ValueError("Session store only accepts EncryptedBundle records")
        if (
            self._max_sessions is not None
            and self._live(session_id) is None
            and len(self._records) >= self._max_sessions
        ):
            self.purge_expired()
            if len(self._records) >= self._max_sessions:
                raise ValueError(
                    f"Max sessions ({self._max_sessions}) exceeded"
                )
        if ttl is _DEFAULT:
            ttl = self._default_ttl
        expires = self._clock() + ttl if ttl is not None else None
        self._records[session_id] = _Record(bundle=bundle, expires_at=expires)
        logger.debug("Session put: id=%s permanent=%s", session_id, expires is None)

    async def put_until(
        self, session_id: str, bundle: EncryptedBundle, expires_at: Optional[float]
    ) -> None:
        """Replace a record keeping an absolute expiry (used when re-keying)."""
        validate_session_id(session_id)
        self._records[session_id] = _Record(bundle=bundle, expires_at=expires_at)

    async def evict(self, session_id: str) -> bool:
        validate_session_id(session_id)
        record = self._records.pop(session_id, None)
        if record is None or self._expired(record):
            return False
        logger.debug("Session evicted: id=%s", session_id)
        return True

    async def ids(self) -> list[str]:
        return [sid for sid in list(self._records) if self._live(sid) is not None]

    async def expires_at(self, session_id: str) -> Optional[float]:
        record = self._live(session_id)
        return record.expires_at if record else None

    def purge_expired(self) -> int:
        """Drop expired records. Returns how many were removed."""
        expired = [
            sid for sid, record in self._records.items() if self._expired(record)
        ]
        for sid in expired:
            del self._records[sid]
        if expired:
            logger.info("Purged %d expired session(s)", len(expired))
        return len(expired)
