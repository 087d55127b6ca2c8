"""
OTP Configuration
=================
Policy settings for code issuance and verification.
"""

import os
from dataclasses import dataclass
from typing import Optional


def _env_float(name: str) -> Optional[float]:
    value = os.getenv(name)
    return float(value) if value else None


@dataclass
class OTPConfig:
    """Configuration for OTP issuance and verification."""
    ttl_seconds: int = 600                    # 10 minutes
    max_attempts: int = 3
    code_length: int = 6
    salt_bytes: int = 32                      # 256-bit salt
    retention_grace_seconds: int = 86400      # Keep expired records 24h before purge
    max_write_conflicts: int = 5              # Re-reads allowed when a record changes mid-verify
    operation_timeout: Optional[float] = None  # Seconds; None = no deadline
    
    def __post_init__(self):
        if self.ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        if self.max_attempts <= 0:
            raise ValueError("max_attempts must be positive")
        if self.code_length <= 0:
            raise ValueError("code_length must be positive")
        if self.salt_bytes < 16:
            raise ValueError("salt_bytes must be at least 16 (128 bits)")
        if self.retention_grace_seconds < 0:
            raise ValueError("retention_grace_seconds must not be negative")
        if self.max_write_conflicts <= 0:
            raise ValueError("max_write_conflicts must be positive")
        if self.operation_timeout is not None and self.operation_timeout <= 0:
            raise ValueError("operation_timeout must be positive")
    
    @classmethod
    def from_env(cls) -> "OTPConfig":
        """Build a config from OTP_* environment variables, falling back to defaults."""
        return cls(
            ttl_seconds=int(os.getenv("OTP_TTL_SECONDS", "600")),
            max_attempts=int(os.getenv("OTP_MAX_ATTEMPTS", "3")),
            retention_grace_seconds=int(os.getenv("OTP_RETENTION_GRACE_SECONDS", "86400")),
            operation_timeout=_env_float("OTP_OPERATION_TIMEOUT"),
        )
