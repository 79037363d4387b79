"""
Resource ownership checks.

A caller may modify a resource when it owns it or is an administrator.
Anonymous callers never pass either test.
"""

from dataclasses import dataclass
from typing import Any, Callable, Mapping, Optional

from shared.errors import AuthorizationError, ConfigurationError
from shared.logging import get_logger

from ..auth.identity import Identity, Role

OWNERSHIP_DENIED = "Access Denied: You can only modify your own resources"

audit_logger = get_logger("gateway.audit")


class OwnershipAuthorizer:
    """Answers ownership and role questions about one caller."""

    def __init__(self, identity: Optional[Identity]):
        self.identity = identity

    def is_authenticated(self) -> bool:
        return self.identity is not None and self.identity.is_authenticated

    def has_role(self, role: Role) -> bool:
        return self.is_authenticated() and self.identity.role is role

    def is_admin(self) -> bool:
        return self.has_role(Role.ADMIN)

    def is_shop_admin(self) -> bool:
        return self.has_role(Role.SHOP_ADMIN) or self.is_admin()

    def is_resource_owner(self, resource_owner_id: Any) -> bool:
        if not self.is_authenticated() or resource_owner_id is None:
            return False
        return self.identity.id == str(resource_owner_id)

    def can_modify_resource(self, resource_owner_id: Any) -> bool:
        return self.is_resource_owner(resource_owner_id) or self.is_admin()


def parse_user_id(value: str) -> str:
    """Default owner-id extractor: a positive integer user id."""
    if not value.isascii() or not value.isdigit():
        raise ValueError(f"not a user id: {value!r}")
    return str(int(value))


@dataclass(frozen=True)
class OwnershipCheck:
    """Route declaration: path parameter ``param`` must name the caller."""
    param: str
    extractor: Callable[[str], Any] = parse_user_id

    def enforce(self, identity: Optional[Identity], path_params: Mapping[str, Any],
                route: str = "") -> None:
        """Raise unless the caller owns the resource or is an admin."""
        if self.param not in path_params:
            raise ConfigurationError(
                f"Path variable '{self.param}' not found",
                details={"route": route, "param": self.param},
            )

        raw = path_params[self.param]
        try:
            owner_id = self.extractor(str(raw))
        except ValueError as exc:
            self._deny(identity, route, raw, reason="unparsable owner id")
            raise AuthorizationError(OWNERSHIP_DENIED) from exc

        if not OwnershipAuthorizer(identity).can_modify_resource(owner_id):
            self._deny(identity, route, raw, reason="not owner")
            raise AuthorizationError(OWNERSHIP_DENIED)

    def _deny(self, identity: Optional[Identity], route: str, raw: Any, reason: str) -> None:
        audit_logger.warning(
            "Ownership check denied",
            route=route,
            param=self.param,
            resource_owner_id=str(raw),
            requester_id=identity.id if identity else None,
            requester_role=identity.role.value if identity else None,
            reason=reason,
        )
