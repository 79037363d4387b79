"""
Rate limit tier policy.

Role tiers give every caller one global budget. Endpoint classes carry
stricter budgets and, when they apply, replace the role tier for that call.
"""

from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping, Optional, Tuple

DEFAULT_ROLE_LIMITS = MappingProxyType({
    "ANONYMOUS": 10,
    "USER": 60,
    "SHOP_ADMIN": 100,
    "ADMIN": 500,
})

DEFAULT_ENDPOINT_LIMITS = MappingProxyType({
    "uploads": 5,
    "auth": 5,
    "messages": 30,
})

# Checked in order; the first marker found in the path wins
ENDPOINT_MARKERS: Tuple[Tuple[str, str], ...] = (
    ("/uploads", "uploads"),
    ("/auth", "auth"),
    ("/messages", "messages"),
)


@dataclass(frozen=True)
class RateLimitTiers:
    """Requests-per-window budgets by role and endpoint class."""
    role_limits: Mapping[str, int] = field(default_factory=lambda: DEFAULT_ROLE_LIMITS)
    endpoint_limits: Mapping[str, int] = field(default_factory=lambda: DEFAULT_ENDPOINT_LIMITS)
    window_seconds: float = 60.0
    fallback_role: str = "ANONYMOUS"
    default_endpoint_role: str = "USER"

    @classmethod
    def from_config(cls, config) -> "RateLimitTiers":
        roles = dict(DEFAULT_ROLE_LIMITS)
        roles.update(config.role_rate_limits())
        endpoints = dict(DEFAULT_ENDPOINT_LIMITS)
        endpoints.update(config.endpoint_rate_limits())
        return cls(
            role_limits=MappingProxyType(roles),
            endpoint_limits=MappingProxyType(endpoints),
            window_seconds=float(config.rate_limit_window_seconds),
        )

    def normalise_role(self, role: Optional[str]) -> str:
        """Map unknown or missing roles onto the anonymous tier."""
        if role is None:
            return self.fallback_role
        name = getattr(role, "value", role)
        return name if name in self.role_limits else self.fallback_role

    def role_limit(self, role: Optional[str]) -> int:
        return self.role_limits[self.normalise_role(role)]

    def endpoint_class(self, path: str) -> Optional[str]:
        for marker, name in ENDPOINT_MARKERS:
            if marker in path and name in self.endpoint_limits:
                return name
        return None

    def endpoint_limit(self, path: str) -> int:
        endpoint_class = self.endpoint_class(path)
        if endpoint_class is None:
            return self.role_limits[self.default_endpoint_role]
        return self.endpoint_limits[endpoint_class]

    def applies_to(self, path: str) -> bool:
        """Whether an endpoint tier overrides the role tier for ``path``."""
        return self.endpoint_class(path) is not None
