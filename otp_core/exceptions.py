"""
OTP Exceptions
==============
Fault categories raised by storage backends and the lifecycle engine.

Policy failures (wrong code, expired code, ...) are never raised; they are
returned as a VerificationResult.
"""

from typing import Optional


class OTPError(Exception):
    """Base exception for all otp_core faults."""
    pass


class StorageError(OTPError):
    """Raised when a storage backend cannot complete an operation."""
    
    def __init__(self, message: str, backend: str = "unknown", operation: Optional[str] = None):
        self.message = message
        self.backend = backend
        self.operation = operation
        super().__init__(f"[{backend}] {message}" + (f" (operation: {operation})" if operation else ""))


class StorageUnavailableError(StorageError):
    """Raised when the backend is unreachable, timing out or rejecting commands."""
    pass


class ConcurrentUpdateError(StorageError):
    """Raised when a record keeps changing underneath a verification."""
    pass
