"""
OTP Lifecycle Engine
====================
Issues one-time codes and verifies them against the configured store.

The engine keeps no state between calls. Everything mutable lives in the
store, and same-identity races are settled by the store's compare-and-set
update.
"""

import asyncio
from datetime import datetime, timedelta
from typing import Any, Awaitable, Optional, TypeVar
import structlog

from .clock import Clock, SystemClock
from .config import OTPConfig
from .crypto import generate_code, generate_salt, hash_code, verify_code_hash
from .exceptions import ConcurrentUpdateError
from .masking import mask_identity, normalize_identity
from .models import (
    FailureReason,
    OtpRecord,
    VerificationOutcome,
    VerificationResult,
)
from .storage.base import OTPStore

logger = structlog.get_logger(__name__)

T = TypeVar("T")

_UNSET = object()


class OTPEngine:
    """
    Generates and verifies one-time codes.
    
    Example:
        engine = OTPEngine(SQLAlchemyOTPStore.from_url(url))
        
        code = await engine.generate("user@example.com")
        await sender.send_code("user@example.com", code)
        
        result = await engine.verify("user@example.com", submitted)
        if not result.success:
            return error(result.public_message)
    """
    
    def __init__(
        self,
        store: OTPStore,
        config: Optional[OTPConfig] = None,
        clock: Optional[Clock] = None,
    ):
        self.store = store
        self.config = config or OTPConfig()
        self.clock = clock or SystemClock()
    
    async def _with_deadline(self, operation: Awaitable[T], timeout: Any) -> T:
        """Run under the caller's deadline, or the configured default."""
        if timeout is _UNSET:
            timeout = self.config.operation_timeout
        if timeout is None:
            return await operation
        return await asyncio.wait_for(operation, timeout)
    
    async def generate(self, identity: str, timeout: Any = _UNSET) -> str:
        """
        Issue a new code for an identity, revoking any earlier one.
        
        Args:
            identity: Email address or user handle
            timeout: Deadline in seconds (None = no deadline)
            
        Returns:
            The plaintext code. Only its hash is stored; deliver it and drop it.
        """
        return await self._with_deadline(self._generate(normalize_identity(identity)), timeout)
    
    async def _generate(self, identity: str) -> str:
        await self.store.invalidate_all(identity)
        
        code = generate_code(self.config.code_length)
        salt = generate_salt(self.config.salt_bytes)
        now = self.clock.now()
        
        record = OtpRecord(
            identity=identity,
            code_hash=hash_code(code, salt),
            salt=salt,
            created_at=now,
            expires_at=now + timedelta(seconds=self.config.ttl_seconds),
            max_attempts=self.config.max_attempts,
        )
        await self.store.save(record)
        
        logger.info(
            "otp_generated",
            identity=mask_identity(identity),
            record_id=record.id,
            expires_in=self.config.ttl_seconds,
        )
        return code
    
    async def verify(self, identity: str, candidate: str, timeout: Any = _UNSET) -> VerificationResult:
        """
        Check a submitted code.
        
        Policy failures come back as a VerificationResult; storage faults
        raise StorageError.
        
        Args:
            identity: Email address or user handle
            candidate: Code submitted by the user
            timeout: Deadline in seconds (None = no deadline)
        """
        identity = normalize_identity(identity)
        result = await self._with_deadline(self._verify(identity, candidate or ""), timeout)
        
        log = logger.info if result.success else logger.warning
        log(
            "otp_verification",
            identity=mask_identity(identity),
            outcome=result.outcome.value,
            reason=result.reason.value if result.reason else None,
            remaining=result.remaining_attempts,
        )
        return result
    
    async def _verify(self, identity: str, candidate: str) -> VerificationResult:
        for _ in range(self.config.max_write_conflicts):
            result = await self._verify_once(identity, candidate)
            if result is not None:
                return result
        
        raise ConcurrentUpdateError(
            f"record changed {self.config.max_write_conflicts} times during verification",
            backend=type(self.store).__name__,
            operation="verify",
        )
    
    async def _verify_once(self, identity: str, candidate: str) -> Optional[VerificationResult]:
        """One read-evaluate-write round. None means the write lost a race."""
        record = await self.store.get_active(identity)
        now = self.clock.now()
        
        if record is None:
            return await self._classify_inactive(identity, now)
        
        # Re-applied here; a backend filter is not trusted alone
        if record.is_expired(now):
            return VerificationResult.failed(VerificationOutcome.EXPIRED, FailureReason.EXPIRED)
        
        if record.is_exhausted():
            return VerificationResult.failed(
                VerificationOutcome.ATTEMPTS_EXHAUSTED, FailureReason.EXHAUSTED, remaining_attempts=0
            )
        
        if record.used:
            return VerificationResult.failed(VerificationOutcome.ALREADY_USED, FailureReason.CONSUMED)
        
        if verify_code_hash(candidate, record.salt, record.code_hash):
            record.used = True
            record.verified_at = now
            if not await self.store.update(record):
                return None
            return VerificationResult.succeeded()
        
        previous = await self.store.get_latest_inactive(identity)
        if previous is not None and previous.used and verify_code_hash(candidate, previous.salt, previous.code_hash):
            # Replay of the newest superseded or consumed code; the active record is not charged
            return VerificationResult.failed(VerificationOutcome.ALREADY_USED, FailureReason.SUPERSEDED_CODE)
        
        record.attempt_count += 1
        if not await self.store.update(record):
            return None
        return VerificationResult.failed(
            VerificationOutcome.INVALID_CODE,
            FailureReason.MISMATCH,
            remaining_attempts=record.remaining_attempts,
        )
    
    async def _classify_inactive(self, identity: str, now: datetime) -> VerificationResult:
        """Explain why no code can be verified. Never mutates."""
        record = await self.store.get_latest_inactive(identity)
        
        if record is None:
            return VerificationResult.failed(VerificationOutcome.NOT_FOUND, FailureReason.NEVER_REQUESTED)
        
        if record.used and not record.was_verified:
            return VerificationResult.failed(VerificationOutcome.NOT_FOUND, FailureReason.INVALIDATED)
        
        if record.is_expired(now):
            return VerificationResult.failed(VerificationOutcome.EXPIRED, FailureReason.EXPIRED)
        
        if record.is_exhausted():
            return VerificationResult.failed(
                VerificationOutcome.ATTEMPTS_EXHAUSTED, FailureReason.EXHAUSTED, remaining_attempts=0
            )
        
        return VerificationResult.failed(VerificationOutcome.ALREADY_USED, FailureReason.CONSUMED)
    
    async def invalidate(self, identity: str, timeout: Any = _UNSET) -> int:
        """Revoke every outstanding code for an identity. Returns how many were revoked."""
        identity = normalize_identity(identity)
        count = await self._with_deadline(self.store.invalidate_all(identity), timeout)
        logger.info("otp_invalidated", identity=mask_identity(identity), count=count)
        return count
    
    async def purge_expired(self, timeout: Any = _UNSET) -> int:
        """
        Delete records past their retention window.
        
        Maintenance only; call it from a scheduler, not from request handling.
        """
        count = await self._with_deadline(self.store.purge_expired(), timeout)
        logger.info("otp_purge_completed", count=count)
        return count
