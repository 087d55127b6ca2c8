"""
Redis OTP Store
===============
Ephemeral OTP store on Redis, using Lua scripts for atomic operations.

Each identity owns two hash keys:

    otp:{identity}:current   - the newest record, PX TTL = remaining validity + grace
    otp:{identity}:previous  - the record current replaced, with its own TTL

Keeping the replaced record lets the engine recognise a superseded code being
replayed. Both keys share a hash tag so the scripts stay single-slot on
Redis Cluster. Keys outlive their validity by the retention grace so an
expired code is still reported as expired; the activity predicate is
re-checked after every read.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Sequence
from redis.asyncio import Redis
from redis.exceptions import NoScriptError, RedisError
import structlog

from ..clock import Clock, SystemClock
from ..exceptions import StorageError, StorageUnavailableError
from ..masking import mask_identity
from ..models import OtpRecord
from .base import DEFAULT_KEY_PREFIX

logger = structlog.get_logger(__name__)

# Moves current to previous (keeping its TTL) and writes the new record
SAVE_SCRIPT = """
local current = KEYS[1]
local previous = KEYS[2]

if redis.call('EXISTS', current) == 1 then
    redis.call('RENAME', current, previous)
end

redis.call('HSET', current,
    'id', ARGV[2],
    'identity', ARGV[3],
    'code_hash', ARGV[4],
    'salt', ARGV[5],
    'created_at', ARGV[6],
    'expires_at', ARGV[7],
    'max_attempts', ARGV[8],
    'attempt_count', ARGV[9],
    'used', ARGV[10],
    'verified_at', ARGV[11],
    'version', ARGV[12])
redis.call('PEXPIRE', current, ARGV[1])

return 1
"""

# Compare-and-set on version; HSET keeps the key's TTL and a missing key is never recreated
UPDATE_SCRIPT = """
for _, key in ipairs(KEYS) do
    if redis.call('HGET', key, 'id') == ARGV[1] then
        if redis.call('HGET', key, 'version') ~= ARGV[2] then
            return 0
        end
        redis.call('HSET', key,
            'attempt_count', ARGV[3],
            'used', ARGV[4],
            'verified_at', ARGV[5])
        redis.call('HINCRBY', key, 'version', 1)
        return 1
    end
end

return 0
"""

INVALIDATE_SCRIPT = """
local count = 0

for _, key in ipairs(KEYS) do
    if redis.call('HGET', key, 'used') == '0' then
        redis.call('HSET', key, 'used', '1')
        redis.call('HINCRBY', key, 'version', 1)
        count = count + 1
    end
end

return count
"""


def _decode(value: Any) -> str:
    return value.decode("utf-8") if isinstance(value, bytes) else value


def _to_record(raw: Dict[Any, Any], operation: str) -> Optional[OtpRecord]:
    """Rebuild a record from HGETALL output; None for a missing key."""
    if not raw:
        return None
    try:
        return _parse_record({_decode(k): _decode(v) for k, v in raw.items()})
    except (KeyError, TypeError, ValueError, UnicodeDecodeError) as e:
        logger.error("otp_record_corrupt", backend="redis", operation=operation, error=type(e).__name__)
        raise StorageError(f"malformed OTP record: {e!r}", backend="redis", operation=operation) from e


def _parse_record(data: Dict[str, str]) -> OtpRecord:
    return OtpRecord(
        id=data["id"],
        identity=data["identity"],
        code_hash=data["code_hash"],
        salt=data["salt"],
        created_at=datetime.fromisoformat(data["created_at"]),
        expires_at=datetime.fromisoformat(data["expires_at"]),
        max_attempts=int(data["max_attempts"]),
        attempt_count=int(data["attempt_count"]),
        used=data["used"] == "1",
        verified_at=datetime.fromisoformat(data["verified_at"]) if data.get("verified_at") else None,
        version=int(data["version"]),
    )


def _flag(value: bool) -> str:
    return "1" if value else "0"


def _timestamp(value: Optional[datetime]) -> str:
    return value.isoformat() if value else ""


class RedisOTPStore:
    """
    Redis-backed OTP store.
    
    Example:
        redis = Redis.from_url("redis://localhost:6379/0")
        engine = OTPEngine(RedisOTPStore(redis))
    """
    
    backend = "redis"
    
    def __init__(
        self,
        redis_client: Redis,
        clock: Optional[Clock] = None,
        key_prefix: str = DEFAULT_KEY_PREFIX,
        retention_grace_seconds: int = 86400,
    ):
        """
        Args:
            redis_client: Async Redis client
            clock: Time source for TTLs and the activity predicate
            key_prefix: Namespace for OTP keys
            retention_grace_seconds: How long a key outlives its expiry
        """
        self.redis = redis_client
        self.clock = clock or SystemClock()
        self.key_prefix = key_prefix
        self.retention_grace = timedelta(seconds=retention_grace_seconds)
        self._script_shas: Dict[str, str] = {}
    
    def get_keys(self, identity: str) -> List[str]:
        """Current and previous record keys for an identity."""
        base = f"{self.key_prefix}:{{{identity}}}"
        return [f"{base}:current", f"{base}:previous"]
    
    async def _ensure_script(self, script: str) -> str:
        """Load a Lua script into Redis if needed."""
        if script not in self._script_shas:
            self._script_shas[script] = await self.redis.script_load(script)
        return self._script_shas[script]
    
    async def _run_script(self, operation: str, script: str, keys: Sequence[str], *args: Any) -> Any:
        try:
            script_sha = await self._ensure_script(script)
            try:
                return await self.redis.evalsha(script_sha, len(keys), *keys, *args)
            except NoScriptError:
                # Script cache was flushed (restart or failover); load again once
                self._script_shas.pop(script, None)
                script_sha = await self._ensure_script(script)
                return await self.redis.evalsha(script_sha, len(keys), *keys, *args)
        except RedisError as e:
            logger.error("otp_store_failed", backend=self.backend, operation=operation, error=type(e).__name__)
            raise StorageUnavailableError(str(e), backend=self.backend, operation=operation) from e
    
    async def _load(self, operation: str, keys: Sequence[str]) -> List[Optional[OtpRecord]]:
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                for key in keys:
                    pipe.hgetall(key)
                raw_records = await pipe.execute()
        except RedisError as e:
            logger.error("otp_store_failed", backend=self.backend, operation=operation, error=type(e).__name__)
            raise StorageUnavailableError(str(e), backend=self.backend, operation=operation) from e
        return [_to_record(raw, operation) for raw in raw_records]
    
    async def save(self, record: OtpRecord) -> None:
        ttl = record.expires_at + self.retention_grace - self.clock.now()
        ttl_ms = max(int(ttl.total_seconds() * 1000), 1)
        
        await self._run_script(
            "save",
            SAVE_SCRIPT,
            self.get_keys(record.identity),
            ttl_ms,
            record.id,
            record.identity,
            record.code_hash,
            record.salt,
            _timestamp(record.created_at),
            _timestamp(record.expires_at),
            record.max_attempts,
            record.attempt_count,
            _flag(record.used),
            _timestamp(record.verified_at),
            record.version,
        )
        
        logger.info(
            "otp_record_saved",
            identity=mask_identity(record.identity),
            record_id=record.id,
            ttl_ms=ttl_ms,
        )
    
    async def get_active(self, identity: str) -> Optional[OtpRecord]:
        current, = await self._load("get_active", self.get_keys(identity)[:1])
        
        # Redis TTL is not trusted alone
        if current is None or not current.is_active(self.clock.now()):
            return None
        return current
    
    async def get_latest_inactive(self, identity: str) -> Optional[OtpRecord]:
        now = self.clock.now()
        for record in await self._load("get_latest_inactive", self.get_keys(identity)):
            if record is not None and not record.is_active(now):
                return record
        return None
    
    async def update(self, record: OtpRecord) -> bool:
        applied = await self._run_script(
            "update",
            UPDATE_SCRIPT,
            self.get_keys(record.identity),
            record.id,
            record.version,
            record.attempt_count,
            _flag(record.used),
            _timestamp(record.verified_at),
        )
        
        if not int(applied):
            logger.warning("otp_record_update_conflict", backend=self.backend, record_id=record.id)
            return False
        record.version += 1
        return True
    
    async def invalidate_all(self, identity: str) -> int:
        count = int(await self._run_script("invalidate_all", INVALIDATE_SCRIPT, self.get_keys(identity)))
        
        logger.info("otp_records_invalidated", identity=mask_identity(identity), count=count)
        return count
    
    async def purge_expired(self) -> int:
        # Keys carry their own TTL; Redis deletes them
        logger.debug("otp_purge_skipped", backend=self.backend, reason="ttl_managed")
        return 0
