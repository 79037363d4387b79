"""
API Gateway service for the Shopfront Access Layer.

Business operations on shops, posts, messages and the rest are served by
downstream services; the handlers here only acknowledge the call once the
security pipeline has admitted it.
"""

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Mapping, Optional

from fastapi import Body, Request

from shared.base_service import BaseService
from shared.clock import system_clock
from shared.config import ServiceConfig, get_config
from shared.errors import AuthenticationError, ValidationError

from .auth import BearerIdentityResolver, Identity, Role
from .domain.middleware import RoutePolicies, SecurityPipelineMiddleware
from .domain.pipeline import RateLimitRule, RequestPipeline, RoutePolicy
from .ratelimit import RateLimitRegistry, RateLimitTiers
from .security import Action, IPAdmissionGuard, OwnershipCheck, ResourceType, SignatureValidator

ADMIN_ONLY = frozenset({Role.ADMIN})


@dataclass(frozen=True)
class Account:
    """Sign-in credentials known to the gateway."""
    user_id: str
    password: str
    role: Role


class GatewayService(BaseService):
    """API Gateway service implementation."""

    def __init__(self, config: Optional[ServiceConfig] = None, clock=system_clock,
                 accounts: Optional[Mapping[str, Account]] = None):
        super().__init__("gateway", 8000, config=config)
        self.clock = clock
        self.accounts: Dict[str, Account] = dict(accounts or {})

        self.rate_limiter = RateLimitRegistry(
            RateLimitTiers.from_config(self.config),
            clock=clock,
            idle_seconds=self.config.rate_limit_idle_seconds,
        )
        self.ip_guard = IPAdmissionGuard.from_config(self.config)
        self.signature_validator = SignatureValidator.from_config(self.config, clock=clock, metrics=self.metrics)
        self.identity_resolver = BearerIdentityResolver.from_config(self.config)
        self.pipeline = RequestPipeline(
            rate_limits=self.rate_limiter,
            ip_guard=self.ip_guard,
            signatures=self.signature_validator,
            identities=self.identity_resolver,
            metrics=self.metrics,
        )
        self.policies = RoutePolicies()

        self._setup_auth_routes()
        self._setup_resource_routes()
        self._setup_admin_routes()
        self.app.add_middleware(SecurityPipelineMiddleware, pipeline=self.pipeline, policies=self.policies)

        # Expose service instance via app state for introspection/testing
        self.app.state.gateway_service = self

    def route(self, method: str, path: str, endpoint: Callable, policy: Optional[RoutePolicy] = None,
              status_code: int = 200) -> None:
        """Register ``endpoint`` together with the security policy it runs under."""
        policy = policy or RoutePolicy()
        if not policy.name:
            policy = replace(policy, name=f"{method} {path}")
        self.app.add_api_route(path, endpoint, methods=[method], status_code=status_code)
        self.policies.register(method, path, policy)

    async def _check_dependencies(self) -> Dict[str, str]:
        return {
            "rate_limiter": "ok",
            "ip_whitelist": "enabled" if self.ip_guard.enabled else "disabled",
            "request_signing": "enabled" if self.signature_validator.enabled else "disabled",
        }

    def _setup_auth_routes(self):
        """Sign-in and sign-up. Excluded from rate limiting and signing by path."""

        async def signin(payload: Dict[str, Any] = Body(...)):
            username = str(payload.get("username", ""))
            account = self.accounts.get(username)
            if account is None or account.password != str(payload.get("password", "")):
                raise AuthenticationError("Invalid username or password")
            return {
                "token": self.identity_resolver.issue_token(account.user_id, account.role),
                "token_type": "Bearer",
                "user_id": account.user_id,
                "role": account.role.value,
            }

        async def signup(payload: Dict[str, Any] = Body(...)):
            username = str(payload.get("username", "")).strip()
            password = str(payload.get("password", ""))
            if not username or not password:
                raise ValidationError("username and password are required")
            if username in self.accounts:
                raise ValidationError("Username is already taken")
            user_id = str(len(self.accounts) + 1)
            self.accounts[username] = Account(user_id=user_id, password=password, role=Role.USER)
            return {"user_id": user_id, "role": Role.USER.value}

        self.route("POST", "/api/auth/signin", signin)
        self.route("POST", "/api/auth/signup", signup, status_code=201)

    def _setup_resource_routes(self):
        """Placeholder resource routes, each declaring the checks it needs."""
        owner = OwnershipCheck("id")
        user_owner = OwnershipCheck("userId")

        self.route("GET", "/api/shops", _ack("shop", "list"),
                   RoutePolicy(permission=(ResourceType.SHOP, Action.READ)))
        self.route("GET", "/api/shops/{id}", _ack("shop", "read"),
                   RoutePolicy(permission=(ResourceType.SHOP, Action.READ)))
        self.route("POST", "/api/shops/user/{userId}", _ack("shop", "create"),
                   RoutePolicy(ownership=user_owner))
        self.route("PUT", "/api/shops/{id}", _ack("shop", "update"),
                   RoutePolicy(authenticated=True, permission=(ResourceType.SHOP, Action.UPDATE)))
        self.route("DELETE", "/api/shops/delete/{id}", _ack("shop", "delete"),
                   RoutePolicy(authenticated=True, permission=(ResourceType.SHOP, Action.DELETE)))

        self.route("GET", "/api/users/{id}", _ack("user", "read"),
                   RoutePolicy(authenticated=True, permission=(ResourceType.USER, Action.READ)))
        self.route("PUT", "/api/users/{id}", _ack("user", "update"), RoutePolicy(ownership=owner))
        self.route("PUT", "/api/users/{id}/change-password", _ack("user", "change-password"),
                   RoutePolicy(ownership=owner, rate_limit=RateLimitRule(capacity=3)))
        self.route("DELETE", "/api/users/delete/{id}", _ack("user", "delete"), RoutePolicy(ownership=owner))

        self.route("GET", "/api/posts", _ack("post", "list"),
                   RoutePolicy(permission=(ResourceType.POST, Action.READ)))
        self.route("POST", "/api/posts/shop/{shopId}", _ack("post", "create"),
                   RoutePolicy(authenticated=True, permission=(ResourceType.POST, Action.CREATE)),
                   status_code=201)
        self.route("DELETE", "/api/posts/{id}", _ack("post", "delete"),
                   RoutePolicy(authenticated=True, permission=(ResourceType.POST, Action.DELETE)))

        self.route("GET", "/api/messages/shop/{shopId}", _ack("message", "list"),
                   RoutePolicy(authenticated=True, permission=(ResourceType.MESSAGE, Action.READ)))
        self.route("POST", "/api/messages/user/{userId}/shop/{shopId}", _ack("message", "create"),
                   RoutePolicy(ownership=user_owner, permission=(ResourceType.MESSAGE, Action.CREATE)),
                   status_code=201)

        self.route("GET", "/api/reservations/user/{userId}", _ack("reservation", "list"),
                   RoutePolicy(ownership=user_owner))
        self.route("POST", "/api/reservations/user/{userId}/shop/{shopId}", _ack("reservation", "create"),
                   RoutePolicy(ownership=user_owner, permission=(ResourceType.RESERVATION, Action.CREATE)),
                   status_code=201)
        self.route("PUT", "/api/reservations/{id}/status", _ack("reservation", "update"),
                   RoutePolicy(authenticated=True, permission=(ResourceType.RESERVATION, Action.UPDATE)))

        self.route("GET", "/api/reviews/shop/{shopId}", _ack("review", "list"),
                   RoutePolicy(permission=(ResourceType.REVIEW, Action.READ)))
        self.route("POST", "/api/reviews/user/{userId}/shop/{shopId}", _ack("review", "create"),
                   RoutePolicy(ownership=user_owner, permission=(ResourceType.REVIEW, Action.CREATE)),
                   status_code=201)

        self.route("POST", "/api/uploads", _ack("upload", "create"),
                   RoutePolicy(authenticated=True), status_code=201)
        self.route("POST", "/api/notifications/broadcast", _ack("notification", "broadcast"),
                   RoutePolicy(roles=ADMIN_ONLY, rate_limit=RateLimitRule(capacity=3)))

    def _setup_admin_routes(self):
        """Operational hooks for the whitelist and rate limit registry."""

        async def get_whitelist():
            return {"enabled": self.ip_guard.enabled, "ips": sorted(self.ip_guard.snapshot())}

        async def add_whitelist_entry(payload: Dict[str, Any] = Body(...)):
            ip = str(payload.get("ip", "")).strip()
            if not ip:
                raise ValidationError("ip is required")
            self.ip_guard.add(ip)
            return {"ips": sorted(self.ip_guard.snapshot())}

        async def replace_whitelist(payload: Dict[str, Any] = Body(...)):
            ips = payload.get("ips")
            if not isinstance(ips, list) or not all(isinstance(ip, str) for ip in ips):
                raise ValidationError("ips must be a list of strings")
            self.ip_guard.reload(ips)
            return {"ips": sorted(self.ip_guard.snapshot())}

        async def remove_whitelist_entry(ip: str):
            self.ip_guard.remove(ip)
            return {"ips": sorted(self.ip_guard.snapshot())}

        async def get_rate_limits():
            return self.rate_limiter.stats()

        async def clear_rate_limits():
            self.rate_limiter.clear()
            return {"cleared": True}

        async def delete_user(id: str, request: Request):
            return _acknowledgement("user", "admin-delete", request, {"id": id})

        admin = RoutePolicy(roles=ADMIN_ONLY)
        self.route("GET", "/api/admin/whitelist", get_whitelist, admin)
        self.route("POST", "/api/admin/whitelist", add_whitelist_entry, admin)
        self.route("PUT", "/api/admin/whitelist", replace_whitelist, admin)
        self.route("DELETE", "/api/admin/whitelist/{ip}", remove_whitelist_entry, admin)
        self.route("GET", "/api/admin/rate-limits", get_rate_limits, admin)
        self.route("DELETE", "/api/admin/rate-limits", clear_rate_limits, admin)
        self.route("DELETE", "/api/admin/users/{id}", delete_user,
                   RoutePolicy(roles=ADMIN_ONLY, permission=(ResourceType.USER, Action.DELETE)))


def _acknowledgement(resource: str, action: str, request: Request,
                     path_params: Mapping[str, Any]) -> Dict[str, Any]:
    identity: Optional[Identity] = getattr(request.state, "identity", None)
    return {
        "status": "accepted",
        "resource": resource,
        "action": action,
        "params": dict(path_params),
        "requested_by": identity.id if identity else None,
        "timestamp": datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z"),
    }


def _ack(resource: str, action: str) -> Callable:
    """Handler that acknowledges an admitted call on behalf of the owning service."""

    async def handler(request: Request):
        return _acknowledgement(resource, action, request, request.path_params)

    handler.__name__ = f"{action.replace('-', '_')}_{resource}"
    return handler


def create_app(config: Optional[ServiceConfig] = None, clock=system_clock,
               accounts: Optional[Mapping[str, Account]] = None):
    """Create the gateway FastAPI application."""
    return GatewayService(config=config, clock=clock, accounts=accounts).app


def build_config(**overrides) -> ServiceConfig:
    return get_config("gateway", 8000, **overrides)


def main() -> None:
    GatewayService().run()


if __name__ == "__main__":
    main()
