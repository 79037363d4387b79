"""
Domain layer for the Gateway Service.

Holds the request security pipeline and the middleware that runs it ahead
of routing.
"""

from .middleware import RoutePolicies, SecurityPipelineMiddleware
from .pipeline import (
    PipelineResult,
    PipelineState,
    RateLimitRule,
    RequestContext,
    RequestPipeline,
    RoutePolicy,
)

__all__ = [
    "PipelineResult",
    "PipelineState",
    "RateLimitRule",
    "RequestContext",
    "RequestPipeline",
    "RoutePolicies",
    "RoutePolicy",
    "SecurityPipelineMiddleware",
]
