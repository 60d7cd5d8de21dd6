"""
Security primitives: rate limiting, brute force protection, HMAC signing
and secret encryption.
"""

from .brute_force import (
    BruteForceProtector,
    LockStatus,
    get_brute_force_protector,
)
from .hmac import compute_hmac, verify_hmac
from .rate_limit import (
    RateLimiter,
    RateLimitResult,
    get_client_ip,
    get_rate_limiter,
)

__all__ = [
    "BruteForceProtector",
    "LockStatus",
    "get_brute_force_protector",
    "compute_hmac",
    "verify_hmac",
    "RateLimiter",
    "RateLimitResult",
    "get_client_ip",
    "get_rate_limiter",
]
