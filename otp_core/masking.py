"""
Identity Masking
================
Normalization and log-safe masking of email addresses and user handles.
"""


def normalize_identity(identity: str) -> str:
    """
    Normalize an identity for storage and lookup.
    
    Args:
        identity: Raw email address or user handle
        
    Returns:
        Stripped, case-folded identity
        
    Raises:
        ValueError: If the identity is empty
    """
    normalized = (identity or "").strip().casefold()
    if not normalized:
        raise ValueError("identity must not be empty")
    return normalized


def mask_identity(identity: str) -> str:
    """
    Mask an email address or handle for safe logging.
    
    Args:
        identity: Email address or user handle
        
    Returns:
        Masked identity (e.g., "user@example.com" -> "u***@example.com")
    """
    if not identity:
        return "***"
    
    if "@" not in identity:
        # Plain handle
        return identity[0] + "***" if len(identity) > 1 else "***"
    
    local_part, _, domain = identity.rpartition("@")
    if not local_part or not domain:
        return "***"
    
    if len(local_part) <= 1:
        return f"*@{domain}"
    
    return f"{local_part[0]}***@{domain}"
