"""
API Gateway Service package for the Shopfront Access Layer.

The gateway fronts client requests, enforcing:
- Rate limiting: in-process token buckets per caller and endpoint class
- IP admission: whitelist on administrative paths
- Request signing: HMAC-SHA256 over method, path and timestamp
- Authorization: role capabilities and resource ownership

Structure:
- app.main: FastAPI app, routes, and middleware wiring.
- app.auth: Caller identity and bearer token handling.
- app.ratelimit: Token buckets and rate tiers.
- app.security: IP guard, signing, permissions and ownership.
- app.domain: The request pipeline and its middleware.
"""
