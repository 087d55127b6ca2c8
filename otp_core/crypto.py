"""
OTP Crypto Primitives
=====================
Secure code generation, salted hashing and constant-time comparison.
"""

import base64
import hashlib
import hmac
import secrets
from typing import Union

CODE_LENGTH = 6
SALT_BYTES = 32


def generate_code(length: int = CODE_LENGTH) -> str:
    """
    Generate a numeric one-time code from the OS CSPRNG.
    
    Uniform over 0 .. 10**length - 1 and left-padded with zeros, so
    "000042" is as likely as "982113".
    
    Args:
        length: Number of digits
        
    Returns:
        Zero-padded numeric code
    """
    if length <= 0:
        raise ValueError("length must be positive")
    return str(secrets.randbelow(10 ** length)).zfill(length)


def generate_salt(num_bytes: int = SALT_BYTES) -> str:
    """
    Generate a random salt for code hashing.
    
    Args:
        num_bytes: Raw salt size in bytes (at least 16)
        
    Returns:
        Base64-encoded salt
    """
    if num_bytes < 16:
        raise ValueError("salt must be at least 16 bytes")
    return base64.b64encode(secrets.token_bytes(num_bytes)).decode("ascii")


def hash_code(code: str, salt: str) -> str:
    """
    Hash a code with its salt using SHA-256 over salt || code.
    
    Args:
        code: Plain code
        salt: Base64 salt of the record
        
    Returns:
        64-character hex digest
    """
    return hashlib.sha256(f"{salt}{code}".encode("utf-8")).hexdigest()


def constant_time_equals(a: Union[str, bytes], b: Union[str, bytes]) -> bool:
    """
    Compare two values without short-circuiting on the first differing byte.
    
    Returns False for inputs of different length.
    """
    if isinstance(a, str):
        a = a.encode("utf-8")
    if isinstance(b, str):
        b = b.encode("utf-8")
    return hmac.compare_digest(a, b)


def verify_code_hash(code: str, salt: str, stored_hash: str) -> bool:
    """
    Verify a candidate code against a stored hash.
    
    Args:
        code: User-provided code
        salt: Salt of the record
        stored_hash: Stored digest to compare
        
    Returns:
        True if the code matches
    """
    return constant_time_equals(hash_code(code, salt), stored_hash)
