"""
Request security checks for the Gateway: IP admission, request signing,
role capabilities and resource ownership.
"""

from .ip_guard import IPAdmissionGuard, resolve_client_ip
from .ownership import OwnershipAuthorizer, OwnershipCheck
from .permissions import Action, PermissionMatrix, ResourceType, default_matrix
from .signing import SignatureValidator, sign

__all__ = [
    "Action",
    "IPAdmissionGuard",
    "OwnershipAuthorizer",
    "OwnershipCheck",
    "PermissionMatrix",
    "ResourceType",
    "SignatureValidator",
    "default_matrix",
    "resolve_client_ip",
    "sign",
]
