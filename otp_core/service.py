"""
OTP Service
===========
Request/verify flow for transport layers (HTTP handlers, RPC methods).

Wraps the engine and a CodeSender so every transport answers the same way:
a code request always gets the same acknowledgement, whether or not the
identity exists or the delivery worked.
"""

import structlog

from .delivery import CodeSender
from .engine import OTPEngine
from .masking import mask_identity, normalize_identity
from .models import VerificationResult

logger = structlog.get_logger(__name__)

REQUEST_ACKNOWLEDGED_MESSAGE = "If this email is registered, you will receive a verification code shortly."


class OTPService:
    """Issues codes, hands them to the sender, and verifies submissions."""
    
    def __init__(self, engine: OTPEngine, sender: CodeSender):
        self.engine = engine
        self.sender = sender
    
    async def request_code(self, identity: str) -> str:
        """
        Generate and deliver a code.
        
        Storage faults propagate. Delivery failures are logged and otherwise
        invisible to the caller.
        
        Returns:
            The acknowledgement message to show the user
        """
        identity = normalize_identity(identity)
        code = await self.engine.generate(identity)
        
        try:
            delivered = await self.sender.send_code(identity, code)
        except Exception as e:
            logger.error(
                "otp_delivery_failed",
                identity=mask_identity(identity),
                error=type(e).__name__,
                exc_info=True,
            )
            delivered = False
        
        if not delivered:
            logger.warning("otp_not_delivered", identity=mask_identity(identity))
        
        return REQUEST_ACKNOWLEDGED_MESSAGE
    
    async def verify_code(self, identity: str, candidate: str) -> VerificationResult:
        """Verify a submitted code; map the result with result.public_message."""
        return await self.engine.verify(identity, candidate)
