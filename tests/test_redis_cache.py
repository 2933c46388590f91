"""Tests for RedisCache against an in-process fake client."""

import json
from datetime import datetime, timedelta, timezone

from modgate.storage.redis_cache import RedisCache


class _FakeScript:
    def __init__(self, results):
        self.results = list(results)
        self.calls = []

    async def __call__(self, keys, args):
        self.calls.append((keys, args))
        return self.results.pop(0)


class _FakeRedis:
    def __init__(self, script_results=()):
        self.values = {}
        self.expiry = {}
        self.script = _FakeScript(script_results)
        self.closed = False

    def register_script(self, source):
        assert "HMGET" in source
        return self.script

    async def set(self, key, value, ex=None):
        self.values[key] = value
        self.expiry[key] = ex

    async def getdel(self, key):
        return self.values.pop(key, None)

    async def aclose(self):
        self.closed = True


def _cache(script_results=()):
    fake = _FakeRedis(script_results)
    return RedisCache("redis://fake:6379/0", client=fake), fake


class TestRateLimit:
    async def test_allowed_result_is_parsed(self):
        cache, fake = _cache([[1, "4.5", 0]])

        allowed, remaining, reset = await cache.check_rate_limit(
            "gate:ip:1.2.3.4:read", 5, 60, return_remaining=True
        )

        assert (allowed, remaining, reset) == (True, 4, 0)
        keys, args = fake.script.calls[0]
        assert keys[0].startswith("rate:")
        assert "1.2.3.4" not in keys[0]
        assert args[2] == 5

    async def test_denied_result_reports_reset(self):
        cache, _ = _cache([[0, "0.2", 12]])

        assert await cache.check_rate_limit("k", 5, 60) is False

    async def test_same_logical_key_maps_to_same_bucket(self):
        cache, fake = _cache([[1, 1, 0], [1, 0, 0]])

        await cache.check_rate_limit("gate:key:abc:write", 2, 60)
        await cache.check_rate_limit("gate:key:abc:write", 2, 60)

        assert fake.script.calls[0][0] == fake.script.calls[1][0]


class TestOAuthState:
    async def test_state_round_trip_is_single_use(self):
        cache, fake = _cache()
        expires_at = datetime.now(timezone.utc) + timedelta(minutes=10)

        await cache.set_oauth_state("state-1", "github", expires_at, "account-1")

        assert 1 <= fake.expiry["auth:oauth:state-1"] <= 600
        provider, stored_expiry, link_account_id = await cache.pop_oauth_state("state-1")
        assert provider == "github"
        assert link_account_id == "account-1"
        assert abs((stored_expiry - expires_at).total_seconds()) < 1
        assert await cache.pop_oauth_state("state-1") is None

    async def test_corrupt_state_is_ignored(self):
        cache, fake = _cache()
        fake.values["auth:oauth:bad"] = "{not json"

        assert await cache.pop_oauth_state("bad") is None

    async def test_naive_expiry_is_treated_as_utc(self):
        cache, fake = _cache()
        naive = datetime.now(timezone.utc).replace(tzinfo=None) + timedelta(minutes=5)

        await cache.set_oauth_state("state-2", "google", naive)

        payload = json.loads(fake.values["auth:oauth:state-2"])
        assert payload["expires_at"].endswith("+00:00")


async def test_close_releases_client():
    cache, fake = _cache()

    await cache.close()

    assert fake.closed is True
