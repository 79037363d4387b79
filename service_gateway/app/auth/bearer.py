"""
Bearer token identity resolution for the Access Gateway.
"""

from __future__ import annotations

import time
from typing import Any, Dict, List, Mapping, Optional

from jose import JWTError, jwt

from shared.errors import AuthenticationError
from shared.logging import get_logger

from .identity import Identity, Role, highest_role


class BearerIdentityResolver:
    """Turns an ``Authorization: Bearer <jwt>`` header into an Identity."""

    def __init__(self, secret: str, algorithm: str = "HS256") -> None:
        self._secret = secret
        self.algorithm = algorithm
        self.logger = get_logger("gateway.auth.bearer")

    @classmethod
    def from_config(cls, config) -> "BearerIdentityResolver":
        return cls(config.jwt_secret, config.jwt_algorithm)

    def resolve(self, headers: Mapping[str, str], client_ip: str) -> Identity:
        """Identity for the request. No header means anonymous; a bad token raises."""
        token = self._extract_token(headers)
        if token is None:
            return Identity.anonymous(client_ip)

        claims = self._decode(token)
        subject = claims.get("sub")
        if not isinstance(subject, str) or not subject:
            raise AuthenticationError("Token missing subject claim")

        role = highest_role(self._extract_roles(claims))
        if role is None or role is Role.ANONYMOUS:
            raise AuthenticationError("Token carries no recognised role")

        return Identity(id=subject, role=role)

    def peek(self, headers: Mapping[str, str], client_ip: str) -> Identity:
        """Best-effort identity for stages that run before authentication.

        Never raises: a token that does not verify is treated as anonymous.
        """
        try:
            return self.resolve(headers, client_ip)
        except AuthenticationError:
            return Identity.anonymous(client_ip)

    def issue_token(self, user_id: str, role: Role, ttl_seconds: int = 3600) -> str:
        """Mint a token for ``user_id``. Used by sign-in and tests."""
        now = int(time.time())
        claims = {"sub": user_id, "roles": [role.value], "iat": now, "exp": now + ttl_seconds}
        return jwt.encode(claims, self._secret, algorithm=self.algorithm)

    def _extract_token(self, headers: Mapping[str, str]) -> Optional[str]:
        authorization = headers.get("Authorization")
        if not authorization:
            return None
        if not authorization.startswith("Bearer "):
            raise AuthenticationError("Invalid authorization header format")
        token = authorization[7:].strip()
        if not token:
            raise AuthenticationError("Authorization header contained empty bearer token")
        return token

    def _decode(self, token: str) -> Dict[str, Any]:
        try:
            return jwt.decode(token, self._secret, algorithms=[self.algorithm])
        except JWTError as exc:
            self.logger.warning("Bearer token rejected", error=str(exc))
            raise AuthenticationError("Invalid bearer token") from exc

    def _extract_roles(self, claims: Dict[str, Any]) -> List[str]:
        roles: List[str] = []
        direct = claims.get("roles")
        if isinstance(direct, list):
            roles.extend(role for role in direct if isinstance(role, str))
        single = claims.get("role")
        if isinstance(single, str):
            roles.append(single)
        return roles
