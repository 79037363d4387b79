"""
Rate limiting package for the Gateway.

Holds the in-process token bucket, the keyed bucket registry and the tier
policy that decides each bucket's budget.
"""

from .tiers import RateLimitTiers
from .token_bucket import RateLimitDecision, RateLimitRegistry, TokenBucket

__all__ = [
    "RateLimitDecision",
    "RateLimitRegistry",
    "RateLimitTiers",
    "TokenBucket",
]
