"""
Request security pipeline.

Every request passes the same stages in the same order:

    rate limit -> IP admission -> request signature -> identity -> route authorization

Each stage either lets the request through or stops it with a terminal
state; later stages never run after a rejection. Routes describe what they
need as a ``RoutePolicy`` at registration time.
Denied authorization decisions and admitted state-changing calls on user,
shop and admin resources are written to the ``gateway.audit`` logger.
"""

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple

from shared.errors import (
    AccessLayerException,
    AuthenticationError,
    AuthorizationError,
    IPNotAllowedError,
    RateLimitError,
    SignatureError,
)
from shared.logging import get_logger, set_user_context

from ..auth.bearer import BearerIdentityResolver
from ..auth.identity import Identity, Role
from ..ratelimit.token_bucket import RateLimitDecision, RateLimitRegistry
from ..security.ip_guard import IPAdmissionGuard, resolve_client_ip
from ..security.ownership import OwnershipCheck
from ..security.permissions import Action, PermissionMatrix, ResourceType, default_matrix
from ..security.signing import SIGNATURE_HEADER, TIMESTAMP_HEADER, SignatureValidator

# Matched as whole path segments: "/api/auth/signin/otp" is excluded,
# "/api/admin/users/health" is not
EXCLUDED_PATHS: Tuple[str, ...] = (
    "/api/auth/signin",
    "/api/auth/signup",
    "/h2-console",
    "/swagger-ui",
    "/v3/api-docs",
    "/docs",
    "/redoc",
    "/openapi.json",
    "/health",
    "/metrics",
)

# Admitted calls on these prefixes are audited when they change state
AUDITED_PREFIXES: Tuple[str, ...] = ("/api/users", "/api/shops", "/api/admin/")
AUDITED_RESOURCES = frozenset({ResourceType.USER, ResourceType.SHOP})
SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})


class PipelineState(str, Enum):
    PENDING = "PENDING"
    RATE_LIMITED = "RATE_LIMITED"
    IP_DENIED = "IP_DENIED"
    SIGNATURE_INVALID = "SIGNATURE_INVALID"
    UNAUTHENTICATED = "UNAUTHENTICATED"
    FORBIDDEN = "FORBIDDEN"
    ADMITTED = "ADMITTED"


@dataclass(frozen=True)
class RateLimitRule:
    """Per-route budget that replaces the caller's role budget for that route."""
    capacity: int
    window_seconds: float = 60.0


@dataclass(frozen=True)
class RoutePolicy:
    """Checks a route asks for beyond the global stages."""
    name: str = ""
    authenticated: bool = False
    rate_limit: Optional[RateLimitRule] = None
    roles: FrozenSet[Role] = frozenset()
    permission: Optional[Tuple[ResourceType, Action]] = None
    ownership: Optional[OwnershipCheck] = None

    @property
    def requires_identity(self) -> bool:
        return self.authenticated or bool(self.roles) or self.ownership is not None


DEFAULT_POLICY = RoutePolicy()


@dataclass(frozen=True)
class RequestContext:
    """The parts of an HTTP request the pipeline looks at."""
    method: str
    path: str
    headers: Mapping[str, str]
    peer: Optional[str] = None
    path_params: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))


@dataclass
class PipelineResult:
    state: PipelineState
    client_ip: str
    identity: Optional[Identity] = None
    rate_limit: Optional[RateLimitDecision] = None
    error: Optional[AccessLayerException] = None

    @property
    def admitted(self) -> bool:
        return self.state is PipelineState.ADMITTED

    def headers(self) -> Dict[str, str]:
        return self.rate_limit.headers() if self.rate_limit else {}


class RequestPipeline:
    """Runs the security stages for one request at a time, safe to share."""

    def __init__(self, rate_limits: RateLimitRegistry, ip_guard: IPAdmissionGuard,
                 signatures: SignatureValidator, identities: BearerIdentityResolver,
                 permissions: PermissionMatrix = default_matrix,
                 excluded_paths: Tuple[str, ...] = EXCLUDED_PATHS, metrics=None):
        self.rate_limits = rate_limits
        self.ip_guard = ip_guard
        self.signatures = signatures
        self.identities = identities
        self.permissions = permissions
        self.excluded_paths = excluded_paths
        self.metrics = metrics
        self.logger = get_logger("gateway.pipeline")
        self.audit_logger = get_logger("gateway.audit")

    def is_excluded(self, path: str) -> bool:
        return any(
            path == excluded or path.startswith(excluded.rstrip("/") + "/")
            for excluded in self.excluded_paths
        )

    def evaluate(self, ctx: RequestContext, policy: RoutePolicy = DEFAULT_POLICY) -> PipelineResult:
        """Run every stage. ConfigurationError propagates; other failures become states."""
        client_ip = resolve_client_ip(ctx.headers, ctx.peer)
        result = PipelineResult(state=PipelineState.PENDING, client_ip=client_ip)
        excluded = self.is_excluded(ctx.path)

        try:
            if not excluded:
                result.rate_limit = self._check_rate_limit(ctx, policy, client_ip)
            self._check_ip(ctx, client_ip)
            if not excluded:
                self._check_signature(ctx)
            result.identity = self._resolve_identity(ctx, policy, client_ip)
            self._authorize(ctx, policy, result.identity)
        except AccessLayerException as exc:
            state = _STATE_FOR_ERROR.get(type(exc))
            if state is None:
                raise
            result.state = state
            result.error = exc
            if isinstance(exc, _RateLimited):
                result.rate_limit = exc.decision
        else:
            result.state = PipelineState.ADMITTED

        self._record(result, ctx, policy)
        return result

    def _check_rate_limit(self, ctx: RequestContext, policy: RoutePolicy,
                          client_ip: str) -> RateLimitDecision:
        caller = self.identities.peek(ctx.headers, client_ip)
        if policy.rate_limit is not None:
            decision = self.rate_limits.allow_custom(
                caller.id, policy.name or ctx.path,
                policy.rate_limit.capacity, policy.rate_limit.window_seconds,
            )
        elif self.rate_limits.tiers.applies_to(ctx.path):
            decision = self.rate_limits.allow_endpoint(caller.id, ctx.path)
        else:
            decision = self.rate_limits.allow(caller.id, caller.role)

        if not decision.allowed:
            if self.metrics is not None:
                self.metrics.increment_counter("rate_limit_hits_total", scope=decision.scope)
            raise _RateLimited(decision)
        return decision

    def _check_ip(self, ctx: RequestContext, client_ip: str) -> None:
        if not self.ip_guard.check(ctx.path, client_ip):
            raise IPNotAllowedError()

    def _check_signature(self, ctx: RequestContext) -> None:
        if not self.signatures.check(
            ctx.method, ctx.path,
            ctx.headers.get(TIMESTAMP_HEADER), ctx.headers.get(SIGNATURE_HEADER),
        ):
            raise SignatureError()

    def _resolve_identity(self, ctx: RequestContext, policy: RoutePolicy,
                          client_ip: str) -> Identity:
        identity = self.identities.resolve(ctx.headers, client_ip)
        set_user_context(identity.id, client_ip)
        if policy.requires_identity and identity.is_anonymous:
            raise AuthenticationError()
        return identity

    def _authorize(self, ctx: RequestContext, policy: RoutePolicy, identity: Identity) -> None:
        if policy.roles and identity.role not in policy.roles:
            raise AuthorizationError()
        if policy.permission is not None:
            resource, action = policy.permission
            if not self.permissions.is_action_allowed(identity.role, resource, action):
                raise AuthorizationError()
        if policy.ownership is not None:
            policy.ownership.enforce(identity, ctx.path_params, route=policy.name or ctx.path)

    def _record(self, result: PipelineResult, ctx: RequestContext, policy: RoutePolicy) -> None:
        if self.metrics is not None:
            self.metrics.increment_counter("pipeline_decisions_total", state=result.state.value)
            self.metrics.set_gauge("rate_limit_buckets", len(self.rate_limits))
        if not result.admitted:
            self.logger.warning(
                "Request rejected",
                state=result.state.value,
                method=ctx.method,
                path=ctx.path,
                client_ip=result.client_ip,
                identity=result.identity.id if result.identity else None,
            )
        self._audit(result, ctx, policy)

    def _audit(self, result: PipelineResult, ctx: RequestContext, policy: RoutePolicy) -> None:
        identity = result.identity
        fields = {
            "route": policy.name or ctx.path,
            "method": ctx.method,
            "path": ctx.path,
            "client_ip": result.client_ip,
            "identity": identity.id if identity else None,
            "role": identity.role.value if identity else None,
        }
        if policy.permission is not None:
            fields["resource"] = policy.permission[0].value
            fields["action"] = policy.permission[1].value

        if result.state is PipelineState.FORBIDDEN:
            self.audit_logger.warning(
                "Access denied", reason=self._denial_reason(policy, identity), **fields
            )
        elif result.admitted and self._is_sensitive(ctx, policy):
            self.audit_logger.info("Sensitive operation", **fields)

    def _is_sensitive(self, ctx: RequestContext, policy: RoutePolicy) -> bool:
        method = ctx.method.upper()
        if method == "DELETE":
            return True
        if method in SAFE_METHODS:
            return False
        if policy.permission is not None and policy.permission[0] in AUDITED_RESOURCES:
            return True
        return ctx.path.startswith(AUDITED_PREFIXES)

    def _denial_reason(self, policy: RoutePolicy, identity: Optional[Identity]) -> str:
        if identity is None:
            return "unknown"
        if policy.roles and identity.role not in policy.roles:
            return "role"
        if policy.permission is not None and not self.permissions.is_action_allowed(
            identity.role, *policy.permission
        ):
            return "capability"
        return "ownership"


class _RateLimited(RateLimitError):
    """RateLimitError that keeps the decision so headers can be sent back."""

    def __init__(self, decision: RateLimitDecision):
        super().__init__(
            f"Rate limit exceeded. Maximum {decision.limit} requests per minute."
        )
        self.decision = decision


_STATE_FOR_ERROR = {
    _RateLimited: PipelineState.RATE_LIMITED,
    IPNotAllowedError: PipelineState.IP_DENIED,
    SignatureError: PipelineState.SIGNATURE_INVALID,
    AuthenticationError: PipelineState.UNAUTHENTICATED,
    AuthorizationError: PipelineState.FORBIDDEN,
}
