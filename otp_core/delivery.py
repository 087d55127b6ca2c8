"""
Code Delivery
=============
Port for the collaborator that delivers plaintext codes (email, SMS, ...),
plus an in-memory outbox implementation for development and tests.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Protocol
import structlog

from .clock import Clock, SystemClock
from .masking import mask_identity

logger = structlog.get_logger(__name__)


class CodeSender(Protocol):
    """Delivers a code to an identity. Returns False when delivery failed."""
    
    async def send_code(self, identity: str, code: str) -> bool:
        ...


@dataclass
class OutboxMessage:
    """A code captured by OutboxCodeSender."""
    identity: str
    code: str
    sent_at: datetime
    
    def __repr__(self) -> str:
        return f"OutboxMessage(identity={mask_identity(self.identity)!r}, sent_at={self.sent_at.isoformat()})"


class OutboxCodeSender:
    """
    Collects codes in memory instead of sending them.
    
    For development and tests only.
    """
    
    def __init__(self, clock: Optional[Clock] = None, available: bool = True):
        self.clock = clock or SystemClock()
        self.available = available
        self.messages: List[OutboxMessage] = []
    
    async def send_code(self, identity: str, code: str) -> bool:
        if not self.available:
            logger.warning("otp_delivery_unavailable", identity=mask_identity(identity))
            return False
        
        self.messages.append(OutboxMessage(identity=identity, code=code, sent_at=self.clock.now()))
        logger.info("otp_delivered_to_outbox", identity=mask_identity(identity))
        return True
    
    def last_code(self, identity: str) -> Optional[str]:
        """Most recent code sent to an identity."""
        for message in reversed(self.messages):
            if message.identity == identity:
                return message.code
        return None
