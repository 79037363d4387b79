"""
Authentication helpers for the Access Gateway service.
"""

from .bearer import BearerIdentityResolver
from .identity import Identity, Role, highest_role, parse_role

__all__ = [
    "BearerIdentityResolver",
    "Identity",
    "Role",
    "highest_role",
    "parse_role",
]
