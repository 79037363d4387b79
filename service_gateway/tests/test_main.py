"""
Unit tests for Gateway main service.
"""

import pytest
from fastapi.testclient import TestClient

from shared.clock import ManualClock
from service_gateway.app.auth import Role
from service_gateway.app.domain import RoutePolicy
from service_gateway.app.main import Account, GatewayService, build_config
from service_gateway.app.security import OwnershipCheck, sign

SIGNING_SECRET = "gateway-signing-secret"
LOCAL = {"X-Forwarded-For": "127.0.0.1"}


class TestGatewayService:
    """Test cases for GatewayService."""

    @pytest.fixture
    def clock(self):
        """Manually advanced clock."""
        return ManualClock()

    @pytest.fixture
    def config(self):
        """Gateway settings with whitelist and signing switched on."""
        return build_config(
            whitelist_enabled=True,
            signing_enabled=True,
            signing_secret=SIGNING_SECRET,
            jwt_secret="gateway-jwt-secret",
        )

    @pytest.fixture
    def gateway_service(self, config, clock):
        """Create GatewayService instance."""
        accounts = {
            "alice": Account(user_id="5", password="pw-alice", role=Role.USER),
            "root": Account(user_id="1", password="pw-root", role=Role.ADMIN),
        }
        return GatewayService(config=config, clock=clock, accounts=accounts)

    @pytest.fixture
    def client(self, gateway_service):
        """Create test client."""
        return TestClient(gateway_service.app)

    def _bearer(self, gateway_service, user_id, role):
        token = gateway_service.identity_resolver.issue_token(user_id, role)
        return {"Authorization": f"Bearer {token}"}

    def _signed(self, clock, method, path, *extra):
        ts = str(clock.now_millis())
        headers = {"X-Timestamp": ts, "X-Signature": sign(method, path, ts, SIGNING_SECRET)}
        for more in extra:
            headers.update(more)
        return headers

    def test_health_endpoint(self, client):
        """Test health endpoint reports pipeline components."""
        response = client.get("/health")

        assert response.status_code == 200
        data = response.json()
        assert data["service"] == "gateway"
        assert data["dependencies"] == {
            "rate_limiter": "ok",
            "ip_whitelist": "enabled",
            "request_signing": "enabled",
        }

    def test_request_id_echoed(self, client):
        """Test that a supplied request id comes back on the response."""
        response = client.get("/api/shops", headers={"X-Request-ID": "req-123"})

        assert response.headers["X-Request-ID"] == "req-123"

    def test_request_id_generated(self, client):
        """Test that a request id is generated when none is supplied."""
        response = client.get("/api/shops")

        assert response.headers["X-Request-ID"]

    def test_public_read_with_rate_limit_headers(self, client):
        """Test an anonymous read of a public resource."""
        response = client.get("/api/shops/3")

        assert response.status_code == 200
        assert response.json()["params"] == {"id": "3"}
        assert response.json()["requested_by"] == "anonymous:testclient"
        assert response.headers["X-RateLimit-Limit"] == "10"
        assert response.headers["X-RateLimit-Remaining"] == "9"

    def test_anonymous_rate_limit(self, client):
        """Test the 429 response once the anonymous budget is spent."""
        for _ in range(10):
            assert client.get("/api/shops").status_code == 200

        response = client.get("/api/shops", headers={"X-Request-ID": "req-429"})

        assert response.status_code == 429
        assert response.json() == {
            "error": "Rate limit exceeded. Maximum 10 requests per minute.",
            "code": "RATE_LIMIT_ERROR",
            "request_id": "req-429",
        }
        assert response.headers["Retry-After"] == "6"
        assert response.headers["X-RateLimit-Remaining"] == "0"

    def test_rate_limit_recovers_after_refill(self, client, clock):
        """Test that waiting out the retry period admits the caller again."""
        for _ in range(10):
            client.get("/api/shops")
        assert client.get("/api/shops").status_code == 429

        clock.advance(6)

        assert client.get("/api/shops").status_code == 200

    def test_unsigned_delete_rejected(self, client):
        """Test that a signed path without signature headers is refused."""
        response = client.delete("/api/users/delete/5", headers=LOCAL)

        assert response.status_code == 401
        assert response.json()["error"] == "Invalid request signature"
        assert response.json()["code"] == "SIGNATURE_ERROR"

    def test_signed_owner_delete(self, client, clock, gateway_service):
        """Test a signed delete by the resource owner."""
        path = "/api/users/delete/5"
        headers = self._signed(clock, "DELETE", path, LOCAL, self._bearer(gateway_service, "5", Role.USER))

        response = client.delete(path, headers=headers)

        assert response.status_code == 200
        assert response.json()["requested_by"] == "5"

    def test_stale_signature_rejected(self, client, clock, gateway_service):
        """Test that a signature older than the allowed skew is refused."""
        path = "/api/users/delete/5"
        headers = self._signed(clock, "DELETE", path, LOCAL, self._bearer(gateway_service, "5", Role.USER))
        clock.advance(301)

        assert client.delete(path, headers=headers).status_code == 401

    @pytest.mark.parametrize("path", ["/api/admin/users/health", "/api/admin/whitelist/metrics"])
    def test_unsigned_admin_call_with_excluded_name_rejected(self, client, gateway_service, path):
        """Test that naming a service endpoint in an admin path does not skip signing."""
        headers = dict(LOCAL, **self._bearer(gateway_service, "1", Role.ADMIN))

        response = client.delete(path, headers=headers)

        assert response.status_code == 401
        assert response.json()["error"] == "Invalid request signature"
        assert gateway_service.ip_guard.snapshot() == frozenset({"127.0.0.1", "localhost"})

    def test_ip_not_whitelisted(self, client):
        """Test the 403 body for callers outside the whitelist."""
        response = client.get("/api/users/5", headers={"X-Forwarded-For": "203.0.113.7"})

        assert response.status_code == 403
        assert response.json()["error"] == "Access denied. Your IP is not whitelisted."
        assert response.json()["code"] == "IP_NOT_ALLOWED"

    def test_authentication_required(self, client):
        """Test that anonymous calls to authenticated routes get 401."""
        response = client.post("/api/posts/shop/1", json={})

        assert response.status_code == 401
        assert response.json()["code"] == "AUTHENTICATION_ERROR"

    def test_ownership_denied(self, client, gateway_service):
        """Test that a user cannot update another user's profile."""
        headers = dict(LOCAL, **self._bearer(gateway_service, "5", Role.USER))

        response = client.put("/api/users/6", headers=headers, json={})

        assert response.status_code == 403
        assert response.json()["error"] == "Access Denied: You can only modify your own resources"

    def test_owner_update(self, client, gateway_service):
        """Test that a user can update their own profile."""
        headers = dict(LOCAL, **self._bearer(gateway_service, "5", Role.USER))

        response = client.put("/api/users/5", headers=headers, json={})

        assert response.status_code == 200
        assert response.json()["action"] == "update"

    def test_admin_only_route(self, client, gateway_service):
        """Test that role-restricted routes refuse other roles."""
        response = client.post(
            "/api/notifications/broadcast",
            headers=self._bearer(gateway_service, "5", Role.USER),
            json={},
        )

        assert response.status_code == 403
        assert response.json()["error"] == "Access Denied"

    def test_signup_and_signin(self, client, gateway_service):
        """Test account creation and token issue on excluded paths."""
        signup = client.post("/api/auth/signup", json={"username": "bob", "password": "pw-bob"})
        assert signup.status_code == 201
        user_id = signup.json()["user_id"]

        signin = client.post("/api/auth/signin", json={"username": "bob", "password": "pw-bob"})
        assert signin.status_code == 200
        token = signin.json()["token"]

        response = client.put(
            f"/api/users/{user_id}",
            headers=dict(LOCAL, Authorization=f"Bearer {token}"),
            json={},
        )
        assert response.status_code == 200

    def test_signin_bad_password(self, client):
        """Test that wrong credentials are rejected."""
        response = client.post("/api/auth/signin", json={"username": "alice", "password": "nope"})

        assert response.status_code == 401

    def test_signup_duplicate(self, client):
        """Test that taken usernames are refused."""
        response = client.post("/api/auth/signup", json={"username": "alice", "password": "x"})

        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"

    def test_admin_whitelist_management(self, client, clock, gateway_service):
        """Test adding an address through the admin API."""
        admin = self._bearer(gateway_service, "1", Role.ADMIN)
        path = "/api/admin/whitelist"

        response = client.post(path, headers=self._signed(clock, "POST", path, LOCAL, admin),
                               json={"ip": "198.51.100.4"})
        assert response.status_code == 200
        assert "198.51.100.4" in response.json()["ips"]

        listing = client.get(path, headers=self._signed(clock, "GET", path, admin,
                                                        {"X-Forwarded-For": "198.51.100.4"}))
        assert listing.status_code == 200
        assert listing.json()["enabled"] is True

    def test_admin_rate_limit_reset(self, client, clock, gateway_service):
        """Test clearing rate limit buckets through the admin API."""
        for _ in range(10):
            client.get("/api/shops")
        assert client.get("/api/shops").status_code == 429

        path = "/api/admin/rate-limits"
        admin = self._bearer(gateway_service, "1", Role.ADMIN)
        response = client.delete(path, headers=self._signed(clock, "DELETE", path, LOCAL, admin))

        assert response.status_code == 200
        assert client.get("/api/shops").status_code == 200

    def test_misconfigured_route_is_server_error(self, client, gateway_service):
        """Test that an ownership check on a missing path parameter yields 500."""

        async def broken(shopId: str):
            return {"shopId": shopId}

        gateway_service.route("GET", "/api/broken/{shopId}", broken,
                              RoutePolicy(ownership=OwnershipCheck("id")))

        response = client.get("/api/broken/1", headers=self._bearer(gateway_service, "5", Role.USER))

        assert response.status_code == 500
        assert response.json()["error"] == "Internal server error"
        assert response.json()["code"] == "CONFIGURATION_ERROR"
