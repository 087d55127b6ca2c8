"""
OTP Core Library
================
One-time-password issuance and verification for email identity confirmation.
"""

__version__ = "0.1.0"

# Config
from otp_core.config import OTPConfig

# Clock
from otp_core.clock import Clock, SystemClock, ManualClock

# Crypto
from otp_core.crypto import (
    generate_code,
    generate_salt,
    hash_code,
    constant_time_equals,
    verify_code_hash,
)

# Models
from otp_core.models import (
    OtpRecord,
    RecordState,
    VerificationOutcome,
    VerificationResult,
    FailureReason,
)

# Errors
from otp_core.exceptions import (
    OTPError,
    StorageError,
    StorageUnavailableError,
    ConcurrentUpdateError,
)

# Masking
from otp_core.masking import mask_identity, normalize_identity

# Storage
from otp_core.storage import (
    OTPStore,
    InMemoryOTPStore,
    SQLAlchemyOTPStore,
    RedisOTPStore,
)

# Engine
from otp_core.engine import OTPEngine

# Delivery
from otp_core.delivery import CodeSender, OutboxCodeSender
from otp_core.service import OTPService, REQUEST_ACKNOWLEDGED_MESSAGE

__all__ = [
    # Config
    "OTPConfig",
    # Clock
    "Clock",
    "SystemClock",
    "ManualClock",
    # Crypto
    "generate_code",
    "generate_salt",
    "hash_code",
    "constant_time_equals",
    "verify_code_hash",
    # Models
    "OtpRecord",
    "RecordState",
    "VerificationOutcome",
    "VerificationResult",
    "FailureReason",
    # Errors
    "OTPError",
    "StorageError",
    "StorageUnavailableError",
    "ConcurrentUpdateError",
    # Masking
    "mask_identity",
    "normalize_identity",
    # Storage
    "OTPStore",
    "InMemoryOTPStore",
    "SQLAlchemyOTPStore",
    "RedisOTPStore",
    # Engine
    "OTPEngine",
    # Delivery
    "CodeSender",
    "OutboxCodeSender",
    "OTPService",
    "REQUEST_ACKNOWLEDGED_MESSAGE",
]
