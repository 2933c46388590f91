"""Tests for the request authentication gate.

Tests for:
- API key resolution and rejection
- Bearer token resolution
- Step ordering and short-circuit
- Tiered rate limiting
"""

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.responses import JSONResponse
from fastapi.testclient import TestClient

from modgate import app as app_module
from modgate.api.gate import (
    RATE_LIMIT_TIERS,
    GateContext,
    Principal,
    RequestAuthenticationGate,
)
from modgate.service.runtime import check_rate_limit, get_runtime
from modgate.storage.models import ROLE_API, Tier

API = "/api/v1"
KEY_HEADER = "X-Modgate-Key"


@pytest.fixture
def client():
    return TestClient(app_module.app)


@pytest.fixture
def account():
    return get_runtime().store.create_account("gatekeeper", email="gate@example.com")


@pytest.fixture
def raw_key(account):
    _, raw = get_runtime().api_keys.create_api_key(account.id, "gate-test")
    return raw


def _ctx(path=f"{API}/auth/me", method="GET", headers=None) -> GateContext:
    return GateContext(path=path, method=method, headers=headers or {}, client_ip="10.0.0.1")


class TestApiKeyStep:
    async def test_valid_key_sets_principal(self, raw_key, account):
        gate = RequestAuthenticationGate()
        ctx = _ctx(headers={KEY_HEADER: raw_key})

        assert await gate.resolve_api_key(ctx) is None

        assert ctx.principal.account_id == account.id
        assert ctx.principal.method == "api_key"
        assert ROLE_API in ctx.principal.roles

    async def test_invalid_key_short_circuits(self):
        gate = RequestAuthenticationGate()

        response = await gate.resolve_api_key(_ctx(headers={KEY_HEADER: "mg_not-a-real-key-at-all"}))

        assert response.status_code == 401

    async def test_key_outside_api_prefix_is_ignored(self):
        gate = RequestAuthenticationGate()
        ctx = _ctx(path="/healthz", headers={KEY_HEADER: "mg_not-a-real-key-at-all"})

        assert await gate.resolve_api_key(ctx) is None
        assert ctx.principal is None

    async def test_deleted_owner_is_rejected(self, raw_key, account):
        get_runtime().store.mark_deleted(account.id)
        gate = RequestAuthenticationGate()

        response = await gate.resolve_api_key(_ctx(headers={KEY_HEADER: raw_key}))

        assert response.status_code == 401


class TestBearerStep:
    async def test_access_token_sets_principal(self, account):
        token = get_runtime().tokens.generate_access_token(account)
        gate = RequestAuthenticationGate()
        ctx = _ctx(headers={"Authorization": f"Bearer {token}"})

        assert await gate.resolve_bearer_token(ctx) is None

        assert ctx.principal.account_id == account.id
        assert ctx.principal.method == "bearer"

    @pytest.mark.parametrize("kind", ["refresh", "pre_auth", "garbage"])
    async def test_non_access_tokens_leave_request_anonymous(self, account, kind):
        tokens = get_runtime().tokens
        token = {
            "refresh": lambda: tokens.generate_refresh_token(account),
            "pre_auth": lambda: tokens.generate_pre_auth_token(account.id),
            "garbage": lambda: "not.a.token",
        }[kind]()
        gate = RequestAuthenticationGate()
        ctx = _ctx(headers={"Authorization": f"Bearer {token}"})

        assert await gate.resolve_bearer_token(ctx) is None
        assert ctx.principal is None

    async def test_deleted_account_is_anonymous(self, account):
        token = get_runtime().tokens.generate_access_token(account)
        get_runtime().store.mark_deleted(account.id)
        gate = RequestAuthenticationGate()
        ctx = _ctx(headers={"Authorization": f"Bearer {token}"})

        assert await gate.resolve_bearer_token(ctx) is None
        assert ctx.principal is None

    async def test_api_key_wins_over_bearer(self, raw_key, account):
        other = get_runtime().store.create_account("someone_else")
        token = get_runtime().tokens.generate_access_token(other)
        gate = RequestAuthenticationGate()
        ctx = _ctx(headers={KEY_HEADER: raw_key, "Authorization": f"Bearer {token}"})

        assert await gate.run(ctx) is None

        assert ctx.principal.account_id == account.id


class TestPipeline:
    async def test_first_response_stops_the_pipeline(self):
        calls = []

        async def deny(ctx):
            calls.append("deny")
            return JSONResponse({"denied": True}, status_code=418)

        async def never(ctx):
            calls.append("never")
            return None

        gate = RequestAuthenticationGate(steps=[deny, never])

        response = await gate.run(_ctx())

        assert response.status_code == 418
        assert calls == ["deny"]

    def test_invalid_key_rejected_over_http(self, client):
        response = client.get(f"{API}/auth/me", headers={KEY_HEADER: "mg_forged-key-value-123"})

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Invalid API Key."

    def test_gate_rejection_carries_cors_headers(self, client):
        response = client.get(
            f"{API}/auth/me",
            headers={KEY_HEADER: "mg_forged-key-value-123", "Origin": "http://localhost:5173"},
        )

        assert response.status_code == 401
        assert response.headers["access-control-allow-origin"] == "http://localhost:5173"
        assert response.headers["access-control-allow-credentials"] == "true"

    def test_invalid_bearer_reaches_route_as_anonymous(self, client):
        response = client.post(f"{API}/auth/signout", headers={"Authorization": "Bearer nope"})

        assert response.status_code == 200


class TestRateLimit:
    def _principal(self, **overrides) -> Principal:
        values = dict(
            account_id="a1", username="alice", roles=["USER"], tier=Tier.USER, method="bearer"
        )
        values.update(overrides)
        return Principal(**values)

    def test_tier_selection(self):
        gate = RequestAuthenticationGate()

        assert gate._rate_tier(None) == "anonymous"
        assert gate._rate_tier(self._principal()) == "user"
        assert gate._rate_tier(self._principal(roles=["USER", "ADMIN"])) == "admin"
        assert gate._rate_tier(self._principal(method="api_key", api_key_id="k")) == "api"
        assert (
            gate._rate_tier(self._principal(method="api_key", api_key_id="k", tier=Tier.ENTERPRISE))
            == "api-enterprise"
        )

    async def test_disabled_rate_limit_adds_no_headers(self):
        gate = RequestAuthenticationGate()
        ctx = _ctx()

        assert await gate.enforce_rate_limit(ctx) is None
        assert ctx.response_headers == {}

    async def test_anonymous_writes_are_limited(self):
        get_runtime().settings.rate_limit_enabled = True
        gate = RequestAuthenticationGate()
        writes, _ = RATE_LIMIT_TIERS["anonymous"]

        for _ in range(writes):
            assert await gate.enforce_rate_limit(_ctx(method="POST")) is None

        ctx = _ctx(method="POST")
        response = await gate.enforce_rate_limit(ctx)

        assert response.status_code == 429
        assert int(response.headers["Retry-After"]) >= 1
        assert response.headers["X-RateLimit-Tier"] == "anonymous"
        assert ctx.response_headers["X-RateLimit-Remaining"] == "0"

    async def test_reads_and_writes_use_separate_buckets(self):
        get_runtime().settings.rate_limit_enabled = True
        gate = RequestAuthenticationGate()
        writes, _ = RATE_LIMIT_TIERS["anonymous"]
        for _ in range(writes):
            await gate.enforce_rate_limit(_ctx(method="POST"))

        assert await gate.enforce_rate_limit(_ctx(method="GET")) is None

    def test_rate_limit_headers_on_http_responses(self, client):
        get_runtime().settings.rate_limit_enabled = True

        response = client.get(f"{API}/auth/me")

        assert response.headers["X-RateLimit-Tier"] == "anonymous"
        assert response.headers["X-RateLimit-Limit"] == str(RATE_LIMIT_TIERS["anonymous"][1])

    def test_rate_limit_rejection_carries_cors_headers(self, client):
        get_runtime().settings.rate_limit_enabled = True
        writes, _ = RATE_LIMIT_TIERS["anonymous"]
        origin = {"Origin": "http://localhost:5173"}
        for _ in range(writes):
            client.post(f"{API}/auth/signout", headers=origin)

        response = client.post(f"{API}/auth/signout", headers=origin)

        assert response.status_code == 429
        assert response.headers["access-control-allow-origin"] == "http://localhost:5173"


class TestClientAddress:
    """Anonymous buckets key on the peer address unless a proxy is trusted."""

    def test_forwarded_headers_ignored_by_default(self, client):
        get_runtime().settings.rate_limit_enabled = True
        writes, _ = RATE_LIMIT_TIERS["anonymous"]
        statuses = [
            client.post(
                f"{API}/auth/signout",
                headers={"X-Forwarded-For": f"203.0.113.{i}", "CF-Connecting-IP": f"198.51.100.{i}"},
            ).status_code
            for i in range(writes + 1)
        ]

        assert statuses[:writes] == [200] * writes
        assert statuses[-1] == 429

    def test_forwarded_headers_used_behind_trusted_proxy(self, client):
        settings = get_runtime().settings
        settings.rate_limit_enabled = True
        settings.trust_proxy_headers = True
        writes, _ = RATE_LIMIT_TIERS["anonymous"]
        for _ in range(writes):
            client.post(f"{API}/auth/signout", headers={"X-Forwarded-For": "203.0.113.7, 10.0.0.1"})

        blocked = client.post(f"{API}/auth/signout", headers={"X-Forwarded-For": "203.0.113.7"})
        other = client.post(f"{API}/auth/signout", headers={"X-Forwarded-For": "203.0.113.8"})
        cloudflare = client.post(
            f"{API}/auth/signout",
            headers={"CF-Connecting-IP": "198.51.100.1", "X-Forwarded-For": "203.0.113.7"},
        )

        assert blocked.status_code == 429
        assert other.status_code == 200
        assert cloudflare.status_code == 200


class TestLocalBucketEviction:
    async def test_idle_buckets_are_dropped(self):
        runtime = get_runtime()
        stale_at = datetime.now(timezone.utc) - timedelta(seconds=120)
        runtime._local_rate_limits["gate:ip:203.0.113.9:write"] = (0.0, stale_at, 60)

        assert await check_rate_limit(runtime, "gate:ip:10.0.0.1:write", 5, 60) is True

        assert "gate:ip:203.0.113.9:write" not in runtime._local_rate_limits
        assert "gate:ip:10.0.0.1:write" in runtime._local_rate_limits

    async def test_recent_buckets_survive(self):
        runtime = get_runtime()
        for _ in range(5):
            await check_rate_limit(runtime, "gate:ip:10.0.0.2:write", 5, 60)
        runtime._local_rate_limit_next_sweep = None

        assert await check_rate_limit(runtime, "gate:ip:10.0.0.3:write", 5, 60) is True
        assert await check_rate_limit(runtime, "gate:ip:10.0.0.2:write", 5, 60) is False
