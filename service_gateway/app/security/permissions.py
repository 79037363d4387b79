"""
Static role capability table.

Built once at import time and exposed read-only. Anything not listed is
denied, including unknown roles, resources and actions.
"""

from enum import Enum
from types import MappingProxyType
from typing import Dict, FrozenSet, Iterable, Mapping, Optional, Tuple, Union

from ..auth.identity import Role, parse_role


class Action(str, Enum):
    READ = "READ"
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    SHARE = "SHARE"
    EXECUTE = "EXECUTE"


class ResourceType(str, Enum):
    USER = "USER"
    SHOP = "SHOP"
    POST = "POST"
    MESSAGE = "MESSAGE"
    RESERVATION = "RESERVATION"
    REVIEW = "REVIEW"
    NOTIFICATION = "NOTIFICATION"


Capability = Tuple[ResourceType, Action]
RoleLike = Union[Role, str, None]


def _grants(*entries: Tuple[ResourceType, Iterable[Action]]) -> FrozenSet[Capability]:
    return frozenset((resource, action) for resource, actions in entries for action in actions)


_CRUD = (Action.READ, Action.CREATE, Action.UPDATE, Action.DELETE)

DEFAULT_TABLE: Mapping[Role, FrozenSet[Capability]] = MappingProxyType({
    Role.ADMIN: _grants(
        (ResourceType.USER, _CRUD),
        (ResourceType.SHOP, _CRUD),
        (ResourceType.POST, _CRUD),
    ),
    Role.SHOP_ADMIN: _grants(
        (ResourceType.SHOP, (Action.READ, Action.UPDATE)),
        (ResourceType.POST, (Action.CREATE, Action.UPDATE, Action.DELETE)),
        (ResourceType.RESERVATION, (Action.READ, Action.UPDATE)),
    ),
    Role.USER: _grants(
        (ResourceType.USER, (Action.READ, Action.UPDATE)),
        (ResourceType.POST, (Action.READ, Action.CREATE)),
        (ResourceType.MESSAGE, (Action.CREATE, Action.READ)),
        (ResourceType.RESERVATION, (Action.CREATE,)),
        (ResourceType.REVIEW, (Action.CREATE,)),
    ),
    # USER READ is deliberately absent for anonymous callers
    Role.ANONYMOUS: _grants(
        (ResourceType.SHOP, (Action.READ,)),
        (ResourceType.POST, (Action.READ,)),
        (ResourceType.REVIEW, (Action.READ,)),
    ),
})


def _as_role(role: RoleLike) -> Optional[Role]:
    if isinstance(role, Role):
        return role
    return parse_role(role)


def _as_enum(enum_cls, value):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).upper())
    except ValueError:
        return None


class PermissionMatrix:
    """Read-only lookup over a role -> capabilities table."""

    def __init__(self, table: Mapping[Role, FrozenSet[Capability]] = DEFAULT_TABLE):
        self._table: Mapping[Role, FrozenSet[Capability]] = MappingProxyType(
            {role: frozenset(table.get(role, ())) for role in Role}
        )

    def capabilities(self, role: RoleLike) -> FrozenSet[Capability]:
        """Every (resource, action) pair ``role`` may perform."""
        resolved = _as_role(role)
        if resolved is None:
            return frozenset()
        return self._table[resolved]

    def is_action_allowed(self, role: RoleLike, resource: Union[ResourceType, str],
                          action: Union[Action, str]) -> bool:
        resource_type = _as_enum(ResourceType, resource)
        action_value = _as_enum(Action, action)
        if resource_type is None or action_value is None:
            return False
        return (resource_type, action_value) in self.capabilities(role)

    def resource_permissions(self, role: RoleLike, resource) -> Dict[str, bool]:
        """Action name -> allowed, for every action defined on ``resource``."""
        return {action.value: self.is_action_allowed(role, resource, action) for action in Action}


default_matrix = PermissionMatrix()


def capabilities(role: RoleLike) -> FrozenSet[Capability]:
    return default_matrix.capabilities(role)


def is_action_allowed(role: RoleLike, resource, action) -> bool:
    return default_matrix.is_action_allowed(role, resource, action)


def can_read(role: RoleLike, resource) -> bool:
    return is_action_allowed(role, resource, Action.READ)


def can_create(role: RoleLike, resource) -> bool:
    return is_action_allowed(role, resource, Action.CREATE)


def can_update(role: RoleLike, resource) -> bool:
    return is_action_allowed(role, resource, Action.UPDATE)


def can_delete(role: RoleLike, resource) -> bool:
    return is_action_allowed(role, resource, Action.DELETE)


def can_share(role: RoleLike, resource) -> bool:
    return is_action_allowed(role, resource, Action.SHARE)


def has_any_permission(role: RoleLike, resource, *actions) -> bool:
    return any(is_action_allowed(role, resource, action) for action in actions)


def has_all_permissions(role: RoleLike, resource, *actions) -> bool:
    return all(is_action_allowed(role, resource, action) for action in actions)


def resource_permissions(role: RoleLike, resource) -> Dict[str, bool]:
    return default_matrix.resource_permissions(role, resource)
