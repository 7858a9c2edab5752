"""Tests for the enrichment client and shared enrichment cache."""

import json

import httpx
import pytest

from ccmetrics.config import EnrichmentConfig
from ccmetrics.enrichment import (
    OAUTH_BETA_HEADER,
    EnrichmentCache,
    EnrichmentClient,
    EnrichmentData,
    FailureKind,
    refresh_enrichment_cache,
)
from ccmetrics.store import MemoryStore

USAGE_URL = "https://api.test/usage"
PROFILE_URL = "https://api.test/profile"

USAGE_BODY = {
    "seven_day": {"utilization": 42.7, "resets_at": "2026-03-05T00:00:00Z"},
    "five_hour": {"utilization": 12, "resets_at": "2026-03-01T17:00:00Z"},
    "seven_day_sonnet": {"utilization": 3.5, "resets_at": "2026-03-05T00:00:00Z"},
}
PROFILE_BODY = {"account": {"email": "dev@example.com"}}


def make_client(handler, **overrides):
    """Build an EnrichmentClient over a mock transport, recording sleeps."""
    config = EnrichmentConfig(usage_url=USAGE_URL, profile_url=PROFILE_URL, **overrides)
    sleeps: list[float] = []
    http_client = httpx.Client(transport=httpx.MockTransport(handler))
    return EnrichmentClient(config, http_client=http_client, sleep=sleeps.append), sleeps


def scripted(*responses):
    """Handler returning the given responses in order, recording requests."""
    requests: list[httpx.Request] = []
    queue = list(responses)

    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        item = queue.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    return handler, requests


class TestFetchWithRetry:
    """Tests for retry and failure classification."""

    def test_success(self):
        handler, requests = scripted(httpx.Response(200, json=USAGE_BODY))
        client, sleeps = make_client(handler)

        result = client.fetch_with_retry(USAGE_URL, "tok", timeout=3.0)

        assert result.ok
        assert result.data == USAGE_BODY
        assert result.attempts == 1
        assert sleeps == []
        assert requests[0].headers["Authorization"] == "Bearer tok"
        assert requests[0].headers["anthropic-beta"] == OAUTH_BETA_HEADER

    @pytest.mark.parametrize("status", [401, 403])
    def test_auth_failure_not_retried(self, status):
        handler, requests = scripted(httpx.Response(status), httpx.Response(200, json={}))
        client, sleeps = make_client(handler)

        result = client.fetch_with_retry(USAGE_URL, "tok", timeout=3.0)

        assert not result.ok
        assert result.error.kind is FailureKind.AUTH
        assert result.error.status_code == status
        assert len(requests) == 1
        assert sleeps == []

    def test_transient_then_success(self):
        handler, requests = scripted(
            httpx.Response(503), httpx.Response(200, json=USAGE_BODY)
        )
        client, sleeps = make_client(handler)

        result = client.fetch_with_retry(USAGE_URL, "tok", timeout=3.0)

        assert result.ok
        assert result.attempts == 2
        assert len(requests) == 2
        assert sleeps == [1.0]

    def test_transient_twice(self):
        handler, requests = scripted(httpx.Response(500), httpx.Response(502))
        client, sleeps = make_client(handler)

        result = client.fetch_with_retry(USAGE_URL, "tok", timeout=3.0)

        assert result.error.kind is FailureKind.TRANSIENT
        assert result.error.status_code == 502
        assert result.attempts == 2
        assert len(requests) == 2
        assert sleeps == [1.0]

    def test_timeout_is_transient(self):
        handler, requests = scripted(
            httpx.ReadTimeout("timed out"), httpx.Response(200, json=USAGE_BODY)
        )
        client, _ = make_client(handler)

        result = client.fetch_with_retry(USAGE_URL, "tok", timeout=3.0)

        assert result.ok
        assert len(requests) == 2

    def test_connection_error_twice(self):
        handler, _ = scripted(
            httpx.ConnectError("refused"), httpx.ConnectError("refused")
        )
        client, _ = make_client(handler)

        result = client.fetch_with_retry(USAGE_URL, "tok", timeout=3.0)

        assert result.error.kind is FailureKind.TRANSIENT
        assert "ConnectError" in result.error.message

    def test_no_retry_when_disabled(self):
        handler, requests = scripted(httpx.Response(500), httpx.Response(200, json={}))
        client, sleeps = make_client(handler)

        result = client.fetch_with_retry(USAGE_URL, "tok", timeout=2.0, retry=False)

        assert result.error.kind is FailureKind.TRANSIENT
        assert len(requests) == 1
        assert sleeps == []

    def test_error_envelope_is_terminal(self):
        handler, requests = scripted(
            httpx.Response(200, json={"error": {"message": "rate limited"}}),
            httpx.Response(200, json=USAGE_BODY),
        )
        client, sleeps = make_client(handler)

        result = client.fetch_with_retry(USAGE_URL, "tok", timeout=3.0)

        assert result.error.kind is FailureKind.APPLICATION
        assert result.error.message == "rate limited"
        assert len(requests) == 1
        assert sleeps == []

    def test_unparseable_body(self):
        handler, _ = scripted(httpx.Response(200, content=b"<html>oops</html>"))
        client, _ = make_client(handler)

        result = client.fetch_with_retry(USAGE_URL, "tok", timeout=3.0)

        assert result.error.kind is FailureKind.APPLICATION

    def test_timeout_passed_to_request(self):
        handler, requests = scripted(httpx.Response(200, json={}))
        client, _ = make_client(handler)

        client.fetch_with_retry(USAGE_URL, "tok", timeout=2.0)

        assert requests[0].extensions["timeout"]["read"] == 2.0


class TestFetch:
    """Tests for fetching both endpoints."""

    def test_both_endpoints(self):
        def handler(request):
            if request.url.path == "/usage":
                return httpx.Response(200, json=USAGE_BODY)
            return httpx.Response(200, json=PROFILE_BODY)

        client, _ = make_client(handler)
        data = client.fetch("tok")

        assert data.seven_day_utilization == 42.7
        assert data.seven_day_resets_at == "2026-03-05T00:00:00Z"
        assert data.five_hour_utilization == 12
        assert data.seven_day_sonnet_utilization == 3.5
        assert data.claude_account_email == "dev@example.com"
        assert data.usage_ok and data.profile_ok

    def test_usage_failure_does_not_suppress_profile(self):
        def handler(request):
            if request.url.path == "/usage":
                return httpx.Response(500)
            return httpx.Response(200, json=PROFILE_BODY)

        client, _ = make_client(handler)
        data = client.fetch("tok")

        assert data.seven_day_utilization is None
        assert data.claude_account_email == "dev@example.com"
        assert data.usage_ok is False
        assert data.profile_ok is True

    def test_background_uses_short_timeout_and_single_attempt(self):
        calls = []

        def handler(request):
            calls.append(request)
            return httpx.Response(500)

        client, sleeps = make_client(handler, background_timeout=1.5)
        client.fetch("tok", background=True)

        assert len(calls) == 2  # one per endpoint
        assert sleeps == []
        assert all(r.extensions["timeout"]["read"] == 1.5 for r in calls)

    def test_missing_windows_are_null(self):
        def handler(request):
            if request.url.path == "/usage":
                return httpx.Response(200, json={"seven_day": {"utilization": 10}})
            return httpx.Response(200, json={"account": {}})

        client, _ = make_client(handler)
        data = client.fetch("tok")

        assert data.seven_day_utilization == 10
        assert data.seven_day_resets_at is None
        assert data.five_hour_utilization is None
        assert data.claude_account_email is None


class TestEnrichmentData:
    """Tests for EnrichmentData merging and serialization."""

    def test_merged_with_fills_null_groups(self):
        live = EnrichmentData(five_hour_utilization=20, five_hour_resets_at="live")
        cached = EnrichmentData(
            seven_day_utilization=40,
            seven_day_resets_at="cached",
            five_hour_utilization=99,
            five_hour_resets_at="cached",
            claude_account_email="dev@example.com",
        )

        merged = live.merged_with(cached)

        assert merged.seven_day_utilization == 40
        assert merged.seven_day_resets_at == "cached"
        assert merged.five_hour_utilization == 20
        assert merged.five_hour_resets_at == "live"
        assert merged.claude_account_email == "dev@example.com"
        assert live.seven_day_utilization is None

    def test_merged_with_none(self):
        live = EnrichmentData(seven_day_utilization=1)
        assert live.merged_with(None) == live

    def test_dict_round_trip_ignores_unknown_keys(self):
        data = EnrichmentData(seven_day_utilization=5, fetched_at=100)
        as_dict = data.to_dict()

        assert "usage_ok" not in as_dict
        assert EnrichmentData.from_dict({**as_dict, "legacy": 1}) == data


class FakeGuard:
    def __init__(self, token):
        self.token = token

    def access_token(self, now=None, quiet=False):
        return self.token

    def is_valid(self, now=None, quiet=False):
        return self.token is not None


class TestEnrichmentCache:
    """Tests for the shared enrichment cache."""

    def test_missing_is_stale(self):
        cache = EnrichmentCache(MemoryStore())
        assert cache.load() is None
        assert cache.is_stale(now=1000, max_age=300) is True

    def test_fresh_and_stale(self):
        cache = EnrichmentCache(MemoryStore())
        cache.save(EnrichmentData(seven_day_utilization=5, fetched_at=1000))

        assert cache.is_stale(now=1299, max_age=300) is False
        assert cache.is_stale(now=1300, max_age=300) is True
        assert cache.age_seconds(now=1060) == 60

    def test_corrupt_cache_is_absent(self):
        store = MemoryStore()
        store.put("_enrichment", b"{broken")
        cache = EnrichmentCache(store)
        assert cache.load() is None
        assert cache.is_stale(now=0, max_age=300) is True


class TestRefreshEnrichmentCache:
    """Tests for the background refresh worker body."""

    def test_fresh_cache_skips_fetch(self):
        def handler(request):
            raise AssertionError("no request expected")

        cache = EnrichmentCache(MemoryStore())
        cache.save(EnrichmentData(fetched_at=1000))
        client, _ = make_client(handler)

        assert refresh_enrichment_cache(cache, FakeGuard("tok"), client, 300, now=1100) is False

    def test_no_credentials_skips_fetch(self):
        def handler(request):
            raise AssertionError("no request expected")

        cache = EnrichmentCache(MemoryStore())
        client, _ = make_client(handler)

        assert refresh_enrichment_cache(cache, FakeGuard(None), client, 300, now=1100) is False
        assert cache.load() is None

    def test_stale_cache_refreshed(self):
        def handler(request):
            if request.url.path == "/usage":
                return httpx.Response(200, json=USAGE_BODY)
            return httpx.Response(200, json=PROFILE_BODY)

        store = MemoryStore()
        cache = EnrichmentCache(store)
        client, _ = make_client(handler)

        assert refresh_enrichment_cache(cache, FakeGuard("tok"), client, 300, now=5000.7) is True

        saved = json.loads(store.get("_enrichment"))
        assert saved["fetched_at"] == 5000
        assert saved["seven_day_utilization"] == 42.7
        assert saved["claude_account_email"] == "dev@example.com"

    def test_failed_endpoint_keeps_previous_values(self):
        def handler(request):
            if request.url.path == "/usage":
                return httpx.Response(200, json=USAGE_BODY)
            return httpx.Response(503)

        cache = EnrichmentCache(MemoryStore())
        cache.save(
            EnrichmentData(
                seven_day_utilization=1, claude_account_email="old@example.com", fetched_at=0
            )
        )
        client, _ = make_client(handler)

        refresh_enrichment_cache(cache, FakeGuard("tok"), client, 300, now=1000)
        refreshed = cache.load()

        assert refreshed.seven_day_utilization == 42.7
        assert refreshed.claude_account_email == "old@example.com"
        assert refreshed.fetched_at == 1000
