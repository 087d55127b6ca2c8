"""
OTP Storage
===========
The OTPStore port and its reference backends.
"""

from .base import OTPStore, DEFAULT_KEY_PREFIX
from .memory import InMemoryOTPStore
from .sql import SQLAlchemyOTPStore, OtpRecordRow, Base
from .redis_store import RedisOTPStore, SAVE_SCRIPT, UPDATE_SCRIPT, INVALIDATE_SCRIPT

__all__ = [
    # Port
    "OTPStore",
    "DEFAULT_KEY_PREFIX",
    # Backends
    "InMemoryOTPStore",
    "SQLAlchemyOTPStore",
    "RedisOTPStore",
    # SQL schema
    "OtpRecordRow",
    "Base",
    # Scripts
    "SAVE_SCRIPT",
    "UPDATE_SCRIPT",
    "INVALIDATE_SCRIPT",
]
