"""
HTTP adapter for the request security pipeline.
"""

from typing import Any, Dict, Mapping, Optional, Tuple

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.routing import Match

from shared.base_service import error_response
from shared.errors import ConfigurationError
from shared.logging import clear_context, get_logger, set_request_id

from .pipeline import DEFAULT_POLICY, RequestContext, RequestPipeline, RoutePolicy

REQUEST_ID_HEADER = "X-Request-ID"


class RoutePolicies:
    """Policies declared by routes at registration, keyed by method and path template."""

    def __init__(self):
        self._policies: Dict[Tuple[str, str], RoutePolicy] = {}

    def register(self, method: str, path: str, policy: RoutePolicy) -> None:
        self._policies[(method.upper(), path)] = policy

    def lookup(self, method: str, path: str) -> RoutePolicy:
        return self._policies.get((method.upper(), path), DEFAULT_POLICY)

    def __len__(self) -> int:
        return len(self._policies)


def match_route(request: Request) -> Tuple[Optional[str], Mapping[str, Any]]:
    """Path template and raw path parameters of the route that will serve ``request``."""
    for route in request.app.router.routes:
        match, child_scope = route.matches(request.scope)
        if match == Match.FULL:
            return getattr(route, "path", None), child_scope.get("path_params", {})
    return None, {}


class SecurityPipelineMiddleware(BaseHTTPMiddleware):
    """Runs the pipeline ahead of routing and stops rejected requests."""

    def __init__(self, app, pipeline: RequestPipeline, policies: RoutePolicies):
        super().__init__(app)
        self.pipeline = pipeline
        self.policies = policies
        self.logger = get_logger("gateway.security_middleware")

    async def dispatch(self, request: Request, call_next):
        request_id = set_request_id(request.headers.get(REQUEST_ID_HEADER))
        try:
            template, path_params = match_route(request)
            policy = self.policies.lookup(request.method, template) if template else DEFAULT_POLICY
            ctx = RequestContext(
                method=request.method,
                path=request.url.path,
                headers=request.headers,
                peer=request.client.host if request.client else None,
                path_params=path_params,
            )

            try:
                result = self.pipeline.evaluate(ctx, policy)
            except ConfigurationError as exc:
                self.logger.error(
                    "Route security misconfigured",
                    path=request.url.path,
                    message=exc.message,
                    details=exc.details,
                )
                response = error_response(ConfigurationError("Internal server error"))
                response.headers[REQUEST_ID_HEADER] = request_id
                return response

            if not result.admitted:
                response = error_response(result.error, headers=result.headers())
            else:
                request.state.identity = result.identity
                request.state.client_ip = result.client_ip
                response = await call_next(request)
                for name, value in result.headers().items():
                    response.headers[name] = value

            response.headers[REQUEST_ID_HEADER] = request_id
            return response
        finally:
            clear_context()
