"""
Caller identity as seen by the request pipeline.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional

ANONYMOUS_PREFIX = "anonymous:"


class Role(str, Enum):
    """Caller roles, lowest privilege first."""
    ANONYMOUS = "ANONYMOUS"
    USER = "USER"
    SHOP_ADMIN = "SHOP_ADMIN"
    ADMIN = "ADMIN"


_PRECEDENCE = {role: rank for rank, role in enumerate(Role)}


def parse_role(value: Optional[str]) -> Optional[Role]:
    """Parse ``USER`` or ``ROLE_USER`` style names. Unknown names give None."""
    if not value:
        return None
    name = value.strip().upper()
    if name.startswith("ROLE_"):
        name = name[5:]
    try:
        return Role(name)
    except ValueError:
        return None


def highest_role(values: Iterable[str]) -> Optional[Role]:
    """The most privileged recognised role among ``values``."""
    roles = [role for role in (parse_role(value) for value in values) if role is not None]
    if not roles:
        return None
    return max(roles, key=_PRECEDENCE.__getitem__)


@dataclass(frozen=True)
class Identity:
    """Authenticated or anonymous caller, fixed for the life of a request."""
    id: str
    role: Role

    @classmethod
    def anonymous(cls, client_ip: str) -> "Identity":
        return cls(id=f"{ANONYMOUS_PREFIX}{client_ip}", role=Role.ANONYMOUS)

    @property
    def is_anonymous(self) -> bool:
        return self.role is Role.ANONYMOUS or self.id.startswith(ANONYMOUS_PREFIX)

    @property
    def is_authenticated(self) -> bool:
        return not self.is_anonymous
