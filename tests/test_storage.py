"""
Storage Backend Tests
=====================
The OTPStore contract, run against every backend, plus backend specifics.
"""

from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import IDENTITY


class TestStoreContract:
    """Behaviour every OTPStore must share."""
    
    @pytest.mark.asyncio
    async def test_implements_port(self, store):
        from otp_core.storage import OTPStore
        
        assert isinstance(store, OTPStore)
    
    @pytest.mark.asyncio
    async def test_save_and_get_active(self, store, make_record):
        """A fresh record is returned as active with all fields intact."""
        record = make_record()
        await store.save(record)
        
        active = await store.get_active(IDENTITY)
        
        assert active is not None
        assert active.id == record.id
        assert active.code_hash == record.code_hash
        assert active.salt == record.salt
        assert active.expires_at == record.expires_at
        assert active.attempt_count == 0
        assert active.used is False
        assert active.verified_at is None
    
    @pytest.mark.asyncio
    async def test_get_active_unknown_identity(self, store):
        assert await store.get_active("nobody@example.com") is None
        assert await store.get_latest_inactive("nobody@example.com") is None
    
    @pytest.mark.asyncio
    async def test_get_active_returns_newest(self, store, make_record, clock):
        """When several records qualify, the newest wins."""
        older = make_record()
        await store.save(older)
        clock.advance(seconds=5)
        newer = make_record(created_at=clock.now(), expires_at=clock.now() + timedelta(minutes=10))
        await store.save(newer)
        
        active = await store.get_active(IDENTITY)
        
        assert active.id == newer.id
    
    @pytest.mark.asyncio
    async def test_expired_record_is_not_active(self, store, make_record, clock):
        """Expiry is re-checked on read, whatever the backend thinks."""
        record = make_record()
        await store.save(record)
        
        clock.advance(minutes=10)
        
        assert await store.get_active(IDENTITY) is None
        inactive = await store.get_latest_inactive(IDENTITY)
        assert inactive.id == record.id
    
    @pytest.mark.asyncio
    async def test_exhausted_record_is_not_active(self, store, make_record):
        record = make_record(attempt_count=3, max_attempts=3)
        await store.save(record)
        
        assert await store.get_active(IDENTITY) is None
        assert (await store.get_latest_inactive(IDENTITY)).id == record.id
    
    @pytest.mark.asyncio
    async def test_update_persists_mutations(self, store, make_record, clock):
        """Attempt count, used flag and verified_at are written back."""
        await store.save(make_record())
        record = await store.get_active(IDENTITY)
        
        record.attempt_count = 1
        assert await store.update(record) is True
        assert record.version == 1
        
        record.used = True
        record.verified_at = clock.now()
        assert await store.update(record) is True
        
        assert await store.get_active(IDENTITY) is None
        stored = await store.get_latest_inactive(IDENTITY)
        assert stored.attempt_count == 1
        assert stored.used is True
        assert stored.verified_at == clock.now()
        assert stored.version == 2
    
    @pytest.mark.asyncio
    async def test_update_rejects_stale_version(self, store, make_record):
        """Two writers holding the same version: only the first lands."""
        await store.save(make_record())
        first = await store.get_active(IDENTITY)
        second = await store.get_active(IDENTITY)
        
        first.attempt_count = 1
        second.attempt_count = 1
        
        assert await store.update(first) is True
        assert await store.update(second) is False
        assert (await store.get_active(IDENTITY)).attempt_count == 1
    
    @pytest.mark.asyncio
    async def test_update_of_unknown_record_is_refused(self, store, make_record):
        """Update never creates a record."""
        record = make_record()
        record.attempt_count = 1
        
        assert await store.update(record) is False
        assert await store.get_active(IDENTITY) is None
    
    @pytest.mark.asyncio
    async def test_invalidate_all(self, store, make_record):
        """Unused records are marked used and counted."""
        await store.save(make_record())
        
        assert await store.invalidate_all(IDENTITY) == 1
        assert await store.get_active(IDENTITY) is None
        
        inactive = await store.get_latest_inactive(IDENTITY)
        assert inactive.used is True
        assert inactive.verified_at is None
        
        # Idempotent
        assert await store.invalidate_all(IDENTITY) == 0
    
    @pytest.mark.asyncio
    async def test_invalidate_all_bumps_version(self, store, make_record):
        """A verification racing an invalidation must not commit."""
        await store.save(make_record())
        in_flight = await store.get_active(IDENTITY)
        
        await store.invalidate_all(IDENTITY)
        in_flight.used = True
        
        assert await store.update(in_flight) is False
    
    @pytest.mark.asyncio
    async def test_invalidate_all_leaves_other_identities(self, store, make_record):
        await store.save(make_record())
        await store.save(make_record(identity="c@d.com"))
        
        await store.invalidate_all(IDENTITY)
        
        assert await store.get_active("c@d.com") is not None
    
    @pytest.mark.asyncio
    async def test_superseded_record_stays_visible(self, store, make_record):
        """After invalidate + save, the replaced record is the latest inactive one."""
        first = make_record()
        await store.save(first)
        await store.invalidate_all(IDENTITY)
        second = make_record()
        await store.save(second)
        
        assert (await store.get_active(IDENTITY)).id == second.id
        assert (await store.get_latest_inactive(IDENTITY)).id == first.id


class TestInMemoryStore:
    """In-memory backend specifics."""
    
    @pytest.mark.asyncio
    async def test_records_are_copied(self, memory_store, make_record):
        """Mutating a returned record does not touch stored state."""
        await memory_store.save(make_record())
        
        record = await memory_store.get_active(IDENTITY)
        record.used = True
        
        assert await memory_store.get_active(IDENTITY) is not None
    
    @pytest.mark.asyncio
    async def test_purge_expired(self, memory_store, make_record, clock):
        """Records go only after expiry plus the 24h grace."""
        await memory_store.save(make_record())
        
        clock.advance(hours=24)
        assert await memory_store.purge_expired() == 0
        
        clock.advance(minutes=11)
        assert await memory_store.purge_expired() == 1
        assert await memory_store.get_latest_inactive(IDENTITY) is None


class TestSQLAlchemyStore:
    """SQL backend specifics."""
    
    @pytest.mark.asyncio
    async def test_purge_expired(self, sql_store, make_record, clock):
        await sql_store.save(make_record())
        await sql_store.save(make_record(identity="c@d.com", expires_at=clock.now() + timedelta(hours=2)))
        
        clock.advance(hours=24, minutes=11)
        
        assert await sql_store.purge_expired() == 1
        assert await sql_store.get_latest_inactive(IDENTITY) is None
        assert await sql_store.get_latest_inactive("c@d.com") is not None
    
    @pytest.mark.asyncio
    async def test_update_after_purge_does_not_resurrect(self, sql_store, make_record, clock):
        await sql_store.save(make_record())
        record = await sql_store.get_active(IDENTITY)
        
        clock.advance(hours=25)
        await sql_store.purge_expired()
        record.attempt_count = 1
        
        assert await sql_store.update(record) is False
        assert await sql_store.get_latest_inactive(IDENTITY) is None
    
    @pytest.mark.asyncio
    async def test_timestamps_come_back_as_utc(self, sql_store, make_record):
        """SQLite drops tzinfo; records are normalised to aware UTC."""
        await sql_store.save(make_record())
        
        record = await sql_store.get_active(IDENTITY)
        
        assert record.created_at.tzinfo is not None
        assert record.expires_at.utcoffset() == timedelta(0)
    
    @pytest.mark.asyncio
    async def test_database_errors_are_wrapped(self, clock, tmp_path, make_record):
        """Driver errors surface as StorageUnavailableError, not as policy outcomes."""
        from otp_core.exceptions import StorageUnavailableError
        from otp_core.storage import SQLAlchemyOTPStore
        
        # Schema never created
        store = SQLAlchemyOTPStore.from_url(f"sqlite+aiosqlite:///{tmp_path / 'empty.db'}", clock=clock)
        try:
            with pytest.raises(StorageUnavailableError) as exc_info:
                await store.get_active(IDENTITY)
            
            assert exc_info.value.backend == "sql"
            assert exc_info.value.operation == "get_active"
            assert exc_info.value.__cause__ is not None
        finally:
            await store.close()


class TestRedisStore:
    """Redis backend specifics."""
    
    @pytest.mark.asyncio
    async def test_key_ttl_matches_remaining_validity_without_grace(self, fake_redis, clock, make_record):
        from otp_core.storage import RedisOTPStore
        
        store = RedisOTPStore(fake_redis, clock=clock, retention_grace_seconds=0)
        await store.save(make_record())
        current_key, _ = store.get_keys(IDENTITY)
        
        ttl = await fake_redis.pttl(current_key)
        
        assert 0 < ttl <= 10 * 60 * 1000
    
    @pytest.mark.asyncio
    async def test_key_outlives_expiry_by_retention_grace(self, fake_redis, clock, make_record):
        from otp_core.storage import RedisOTPStore
        
        store = RedisOTPStore(fake_redis, clock=clock, retention_grace_seconds=3600)
        await store.save(make_record())
        current_key, _ = store.get_keys(IDENTITY)
        
        ttl = await fake_redis.pttl(current_key)
        
        assert 60 * 60 * 1000 < ttl <= 70 * 60 * 1000
    
    @pytest.mark.asyncio
    async def test_expired_code_reported_after_real_expiry(self, fake_redis):
        """Redis expires keys on wall-clock time; the record must outlast the code."""
        import asyncio
        from otp_core.config import OTPConfig
        from otp_core.engine import OTPEngine
        from otp_core.models import FailureReason, VerificationOutcome
        from otp_core.storage import RedisOTPStore
        
        engine = OTPEngine(RedisOTPStore(fake_redis, retention_grace_seconds=60), OTPConfig(ttl_seconds=1))
        code = await engine.generate(IDENTITY)
        
        await asyncio.sleep(1.2)
        result = await engine.verify(IDENTITY, code)
        
        assert result.outcome == VerificationOutcome.EXPIRED
        assert result.reason == FailureReason.EXPIRED
    
    @pytest.mark.asyncio
    async def test_malformed_hash_raises_storage_error(self, redis_store, fake_redis):
        from otp_core.exceptions import StorageError, StorageUnavailableError
        
        current_key, _ = redis_store.get_keys(IDENTITY)
        await fake_redis.hset(current_key, mapping={"id": "abc", "created_at": "not-a-date"})
        
        with pytest.raises(StorageError) as exc_info:
            await redis_store.get_active(IDENTITY)
        
        assert not isinstance(exc_info.value, StorageUnavailableError)
        assert exc_info.value.backend == "redis"
        assert exc_info.value.operation == "get_active"
    
    @pytest.mark.asyncio
    async def test_unparseable_timestamp_raises_storage_error(self, redis_store, fake_redis, make_record):
        from otp_core.exceptions import StorageError
        
        await redis_store.save(make_record())
        current_key, _ = redis_store.get_keys(IDENTITY)
        await fake_redis.hset(current_key, "expires_at", "tomorrow")
        
        with pytest.raises(StorageError) as exc_info:
            await redis_store.get_latest_inactive(IDENTITY)
        
        assert isinstance(exc_info.value.__cause__, ValueError)
    
    @pytest.mark.asyncio
    async def test_save_moves_current_to_previous(self, redis_store, fake_redis, make_record):
        first = make_record()
        await redis_store.save(first)
        await redis_store.save(make_record())
        _, previous_key = redis_store.get_keys(IDENTITY)
        
        assert (await fake_redis.hget(previous_key, "id")).decode() == first.id
    
    @pytest.mark.asyncio
    async def test_update_keeps_ttl(self, redis_store, fake_redis, make_record):
        await redis_store.save(make_record())
        current_key, _ = redis_store.get_keys(IDENTITY)
        record = await redis_store.get_active(IDENTITY)
        
        record.attempt_count = 1
        await redis_store.update(record)
        
        assert await fake_redis.pttl(current_key) > 0
    
    @pytest.mark.asyncio
    async def test_update_after_key_expired_does_not_resurrect(self, redis_store, fake_redis, make_record):
        await redis_store.save(make_record())
        record = await redis_store.get_active(IDENTITY)
        
        # Simulate Redis expiring the key
        await fake_redis.delete(*redis_store.get_keys(IDENTITY))
        record.attempt_count = 1
        
        assert await redis_store.update(record) is False
        assert await fake_redis.exists(*redis_store.get_keys(IDENTITY)) == 0
    
    @pytest.mark.asyncio
    async def test_purge_is_a_no_op(self, redis_store, make_record, clock):
        await redis_store.save(make_record())
        clock.advance(hours=25)
        
        assert await redis_store.purge_expired() == 0
    
    @pytest.mark.asyncio
    async def test_connection_errors_are_wrapped(self, clock, make_record):
        from redis.exceptions import ConnectionError as RedisConnectionError
        from otp_core.exceptions import StorageUnavailableError
        from otp_core.storage import RedisOTPStore
        
        client = MagicMock()
        client.script_load = AsyncMock(side_effect=RedisConnectionError("connection refused"))
        store = RedisOTPStore(client, clock=clock)
        
        with pytest.raises(StorageUnavailableError) as exc_info:
            await store.save(make_record())
        
        assert exc_info.value.backend == "redis"
        assert isinstance(exc_info.value.__cause__, RedisConnectionError)
    
    @pytest.mark.asyncio
    async def test_reloads_flushed_scripts(self, clock):
        """NOSCRIPT after a restart or failover reloads the script once."""
        from redis.exceptions import NoScriptError
        from otp_core.storage import RedisOTPStore
        
        client = MagicMock()
        client.script_load = AsyncMock(return_value="sha1")
        client.evalsha = AsyncMock(side_effect=[NoScriptError("NOSCRIPT No matching script"), 1])
        store = RedisOTPStore(client, clock=clock)
        
        assert await store.invalidate_all(IDENTITY) == 1
        assert client.script_load.await_count == 2
