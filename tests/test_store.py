"""
Tests for the session store and vault key rotation.
"""
import pytest

from session_relay.store import MemorySessionStore, SessionStore, validate_session_id
from session_relay.vault import CredentialVault, Ok, VaultKey, rotate_vault_key


class FakeClock:
    """Manually advanced clock for TTL tests."""
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def vault():
    return CredentialVault(VaultKey.generate())


@pytest.fixture
def store(clock):
    return MemorySessionStore(default_ttl=60, clock=clock)


class TestSessionIds:
    """Tests for session id validation."""

    @pytest.mark.parametrize("session_id", ["", "a:b", "x" * 256])
    def test_invalid_ids(self, session_id):
        """Test rejected ids."""
        with pytest.raises(ValueError):
            validate_session_id(session_id)

    def test_valid_id(self):
        """Test an ordinary id passes."""
        validate_session_id("4f1c2e0d9a")


class TestMemorySessionStore:
    """Tests for MemorySessionStore."""

    def test_implements_protocol(self, store):
        """Test the store satisfies the SessionStore capabilities."""
        assert isinstance(store, SessionStore)

    @pytest.mark.asyncio
    async def test_put_get_evict(self, store, vault):
        """Test the basic record lifecycle."""
        bundle = vault.encrypt("payload")
        await store.put("s1", bundle)
        assert await store.get("s1") == bundle
        assert await store.ids() == ["s1"]

        assert await store.evict("s1") is True
        assert await store.get("s1") is None
        assert await store.evict("s1") is False

    @pytest.mark.asyncio
    async def test_put_replaces_whole_record(self, store, vault):
        """Test that a second put replaces the first bundle entirely."""
        await store.put("s1", vault.encrypt("one"))
        second = vault.encrypt("two")
        await store.put("s1", second)
        assert await store.get("s1") == second
        assert len(store) == 1

    @pytest.mark.asyncio
    async def test_rejects_non_bundles(self, store):
        """Test that only EncryptedBundle records are accepted."""
        with pytest.raises(ValueError):
            await store.put("s1", {"iv": "", "content": "", "tag": ""})

    @pytest.mark.asyncio
    async def test_invalid_id_raises(self, store, vault):
        """Test id validation on every operation."""
        with pytest.raises(ValueError):
            await store.put("bad:id", vault.encrypt("x"))
        with pytest.raises(ValueError):
            await store.get("")

    @pytest.mark.asyncio
    async def test_ttl_expiry(self, store, vault, clock):
        """Test records disappear after their TTL."""
        await store.put("s1", vault.encrypt("short lived"))
        assert await store.expires_at("s1") == clock.now + 60

        clock.now += 61
        assert await store.get("s1") is None
        assert await store.ids() == []
        assert await store.evict("s1") is False

    @pytest.mark.asyncio
    async def test_permanent_records(self, store, vault, clock):
        """Test ttl=None stores a record that never expires."""
        await store.put("forever", vault.encrypt("kept"), ttl=None)
        clock.now += 10 ** 6
        assert await store.get("forever") is not None
        assert await store.expires_at("forever") is None

    @pytest.mark.asyncio
    async def test_purge_expired(self, store, vault, clock):
        """Test purge_expired drops only expired records."""
        await store.put("old", vault.encrypt("a"), ttl=10)
        await store.put("new", vault.encrypt("b"), ttl=100)
        clock.now += 50
        assert store.purge_expired() == 1
        assert await store.ids() == ["new"]

    @pytest.mark.asyncio
    async def test_max_sessions(self, vault, clock):
        """Test the capacity limit, which overwrites do not count against."""
        store = MemorySessionStore(max_sessions=2, clock=clock)
        await store.put("a", vault.encrypt("1"))
        await store.put("b", vault.encrypt("2"))
        await store.put("a", vault.encrypt("3"))
        with pytest.raises(ValueError):
            await store.put("c", vault.encrypt("4"))

    @pytest.mark.asyncio
    async def test_max_sessions_purges_first(self, vault, clock):
        """Test that expired records make room for new ones."""
        store = MemorySessionStore(default_ttl=5, max_sessions=1, clock=clock)
        await store.put("a", vault.encrypt("1"))
        clock.now += 10
        await store.put("b", vault.encrypt("2"))
        assert await store.ids() == ["b"]


class TestKeyRotation:
    """Tests for rotate_vault_key."""

    @pytest.mark.asyncio
    async def test_rotation(self, store, vault, clock):
        """Test every record is re-encrypted and keeps its expiry."""
        new_vault = CredentialVault(VaultKey.generate())
        await store.put("a", vault.encrypt("alpha"))
        await store.put("b", vault.encrypt("beta"), ttl=None)
        expires = await store.expires_at("a")

        stats = await rotate_vault_key(store, vault, new_vault)

        assert stats == {"total": 2, "rotated": 2, "skipped": 0, "errors": 0}
        assert new_vault.decrypt(await store.get("a")) == Ok("alpha")
        assert new_vault.decrypt(await store.get("b")) == Ok("beta")
        assert not vault.decrypt(await store.get("a"))
        assert await store.expires_at("a") == expires
        assert await store.expires_at("b") is None

    @pytest.mark.asyncio
    async def test_rotation_is_idempotent(self, store, vault):
        """Test a second run skips records already on the new key."""
        new_vault = CredentialVault(VaultKey.generate())
        await store.put("a", vault.encrypt("alpha"))
        await rotate_vault_key(store, vault, new_vault)

        stats = await rotate_vault_key(store, vault, new_vault)
        assert stats == {"total": 1, "rotated": 0, "skipped": 1, "errors": 0}

    @pytest.mark.asyncio
    async def test_rotation_counts_undecryptable(self, store, vault):
        """Test records under an unknown key are left untouched."""
        stranger = CredentialVault(VaultKey.generate())
        foreign = stranger.encrypt("foreign")
        await store.put("x", foreign)

        stats = await rotate_vault_key(
            store, vault, CredentialVault(VaultKey.generate()),
        )
        assert stats["errors"] == 1
        assert await store.get("x") == foreign
