"""
OTP Store Port
==============
The contract every OTP storage backend implements.

Backends are interchangeable: the engine holds whichever one is configured
and never inspects its type. Each method is atomic with respect to a single
identity. Identities passed in are already normalized.
"""

from typing import Optional, Protocol, runtime_checkable

from ..models import OtpRecord

DEFAULT_KEY_PREFIX = "otp"


@runtime_checkable
class OTPStore(Protocol):
    """Storage port consumed by OTPEngine."""
    
    async def save(self, record: OtpRecord) -> None:
        """Persist a new record. Callers invalidate older records first."""
        ...
    
    async def get_active(self, identity: str) -> Optional[OtpRecord]:
        """Newest record that is unused, under its attempt ceiling and unexpired."""
        ...
    
    async def get_latest_inactive(self, identity: str) -> Optional[OtpRecord]:
        """Newest record that is used, exhausted or expired."""
        ...
    
    async def update(self, record: OtpRecord) -> bool:
        """
        Persist attempt_count, used and verified_at of an existing record.
        
        Applied only if the stored version still equals record.version; the
        version is then bumped on both sides. Returns False when the record
        was modified concurrently or no longer exists. Never recreates a
        deleted record.
        """
        ...
    
    async def invalidate_all(self, identity: str) -> int:
        """Mark every unused record of the identity as used. Returns the count."""
        ...
    
    async def purge_expired(self) -> int:
        """Delete records past expiry plus the retention grace. Returns the count."""
        ...
