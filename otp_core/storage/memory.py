"""
In-Memory OTP Store
===================
Process-local OTP store for development and testing.
"""

import asyncio
from dataclasses import replace
from datetime import timedelta
from typing import Dict, List, Optional
import structlog

from ..clock import Clock, SystemClock
from ..masking import mask_identity
from ..models import OtpRecord

logger = structlog.get_logger(__name__)


class InMemoryOTPStore:
    """
    Simple in-memory OTP store.
    
    For development and testing only. State lives in this process and is
    lost on restart; use SQLAlchemyOTPStore or RedisOTPStore in production.
    Records are copied on the way in and out, so callers only change stored
    state through update().
    """
    
    def __init__(self, clock: Optional[Clock] = None, retention_grace_seconds: int = 86400):
        self.clock = clock or SystemClock()
        self.retention_grace = timedelta(seconds=retention_grace_seconds)
        self._records: Dict[str, List[OtpRecord]] = {}
        self._lock = asyncio.Lock()
    
    async def save(self, record: OtpRecord) -> None:
        async with self._lock:
            self._records.setdefault(record.identity, []).append(replace(record))
        logger.debug("otp_record_saved", identity=mask_identity(record.identity), record_id=record.id)
    
    async def get_active(self, identity: str) -> Optional[OtpRecord]:
        now = self.clock.now()
        async with self._lock:
            candidates = [r for r in self._records.get(identity, []) if r.is_active(now)]
        if not candidates:
            return None
        return replace(max(reversed(candidates), key=lambda r: r.created_at))
    
    async def get_latest_inactive(self, identity: str) -> Optional[OtpRecord]:
        now = self.clock.now()
        async with self._lock:
            candidates = [r for r in self._records.get(identity, []) if not r.is_active(now)]
        if not candidates:
            return None
        return replace(max(reversed(candidates), key=lambda r: r.created_at))
    
    async def update(self, record: OtpRecord) -> bool:
        async with self._lock:
            for index, stored in enumerate(self._records.get(record.identity, [])):
                if stored.id != record.id:
                    continue
                if stored.version != record.version:
                    return False
                record.version += 1
                self._records[record.identity][index] = replace(record)
                return True
        return False
    
    async def invalidate_all(self, identity: str) -> int:
        count = 0
        async with self._lock:
            for stored in self._records.get(identity, []):
                if not stored.used:
                    stored.used = True
                    stored.version += 1
                    count += 1
        if count:
            logger.info("otp_records_invalidated", identity=mask_identity(identity), count=count)
        return count
    
    async def purge_expired(self) -> int:
        cutoff = self.clock.now() - self.retention_grace
        removed = 0
        async with self._lock:
            for identity in list(self._records):
                kept = [r for r in self._records[identity] if r.expires_at >= cutoff]
                removed += len(self._records[identity]) - len(kept)
                if kept:
                    self._records[identity] = kept
                else:
                    del self._records[identity]
        if removed:
            logger.info("otp_records_purged", count=removed)
        return removed
