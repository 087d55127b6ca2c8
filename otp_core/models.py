"""
OTP Models
==========
The stored OTP record and the typed results of a verification.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional


class RecordState(str, Enum):
    """Lifecycle state of one record at a given instant."""
    ACTIVE = "active"
    EXHAUSTED = "exhausted"
    EXPIRED = "expired"
    USED = "used"


class VerificationOutcome(str, Enum):
    """Result category of a verification attempt."""
    SUCCESS = "success"
    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    ATTEMPTS_EXHAUSTED = "attempts_exhausted"
    ALREADY_USED = "already_used"
    INVALID_CODE = "invalid_code"


class FailureReason(str, Enum):
    """Internal detail behind a failed outcome. Logged, never shown to users."""
    NEVER_REQUESTED = "never_requested"
    INVALIDATED = "invalidated"          # Superseded by a newer code
    EXPIRED = "expired"
    EXHAUSTED = "exhausted"
    CONSUMED = "consumed"                # Already verified successfully
    SUPERSEDED_CODE = "superseded_code"  # Candidate matched an older, used record
    MISMATCH = "mismatch"


REQUEST_NEW_CODE_MESSAGE = "This code is no longer valid. Please request a new one."
TOO_MANY_ATTEMPTS_MESSAGE = "Too many failed attempts. Please request a new code."
VERIFIED_MESSAGE = "Code verified successfully."


@dataclass
class OtpRecord:
    """One outstanding verification challenge for one identity."""
    identity: str
    code_hash: str = field(repr=False)
    salt: str = field(repr=False)
    created_at: datetime
    expires_at: datetime
    max_attempts: int = 3
    attempt_count: int = 0
    used: bool = False
    verified_at: Optional[datetime] = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    version: int = 0
    
    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at
    
    def is_exhausted(self) -> bool:
        return self.attempt_count >= self.max_attempts
    
    def is_active(self, now: datetime) -> bool:
        return not self.used and not self.is_exhausted() and not self.is_expired(now)
    
    @property
    def was_verified(self) -> bool:
        return self.verified_at is not None
    
    @property
    def remaining_attempts(self) -> int:
        return max(self.max_attempts - self.attempt_count, 0)
    
    def state(self, now: datetime) -> RecordState:
        """Derive the lifecycle state; used wins over expiry and exhaustion."""
        if self.used:
            return RecordState.USED
        if self.is_exhausted():
            return RecordState.EXHAUSTED
        if self.is_expired(now):
            return RecordState.EXPIRED
        return RecordState.ACTIVE


@dataclass
class VerificationResult:
    """Outcome of OTPEngine.verify."""
    outcome: VerificationOutcome
    remaining_attempts: Optional[int] = None
    reason: Optional[FailureReason] = None
    
    @property
    def success(self) -> bool:
        return self.outcome == VerificationOutcome.SUCCESS
    
    @property
    def public_message(self) -> str:
        """
        Message safe to show the end user.
        
        not_found, expired and already_used collapse into one message so the
        response never reveals whether a code was ever requested.
        """
        if self.outcome == VerificationOutcome.SUCCESS:
            return VERIFIED_MESSAGE
        if self.outcome == VerificationOutcome.INVALID_CODE:
            return f"Invalid code. {self.remaining_attempts} attempt(s) remaining."
        if self.outcome == VerificationOutcome.ATTEMPTS_EXHAUSTED:
            return TOO_MANY_ATTEMPTS_MESSAGE
        return REQUEST_NEW_CODE_MESSAGE
    
    @classmethod
    def succeeded(cls) -> "VerificationResult":
        return cls(outcome=VerificationOutcome.SUCCESS)
    
    @classmethod
    def failed(
        cls,
        outcome: VerificationOutcome,
        reason: FailureReason,
        remaining_attempts: Optional[int] = None,
    ) -> "VerificationResult":
        return cls(outcome=outcome, reason=reason, remaining_attempts=remaining_attempts)
