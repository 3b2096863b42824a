"""
Tests for API Contract
======================

Envelope shape, status codes per error kind, and the auth flow over HTTP.
"""

import pytest
import redis
from fastapi import FastAPI, Request
from fastapi.testclient import TestClient
from sqlalchemy import select, update

from docket_api.api import app, get_assembler
from docket_api.auth import verify_password
from docket_api.config import Settings, get_settings
from docket_api.db.models import User
from docket_api.db.session import session_scope
from docket_api.errors import UpstreamUnavailable
from docket_api.middleware.rate_limit import RateLimiter, RateLimitMiddleware, client_key, parse_networks

from .conftest import PASSWORD

API = "/api/v1"


# =============================================================================
# Test Client
# =============================================================================

@pytest.fixture
def client(db_url):
    """Create test client"""
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def alice_headers(seeded, issue_token):
    return {"Authorization": f"Bearer {issue_token(seeded.alice, username='alice')}"}


def _assert_error(response, status_code, code):
    assert response.status_code == status_code
    body = response.json()
    assert body["status"] == "error"
    assert body["error"] == code
    assert body["message"]


# =============================================================================
# Health
# =============================================================================

class TestHealthEndpoint:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["entities"] == ["cases", "triggers", "events"]

    def test_root(self, client):
        assert client.get("/").json()["status"] == "success"

    def test_security_headers(self, client):
        response = client.get("/health")
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert response.headers["X-Frame-Options"] == "DENY"


# =============================================================================
# Authentication
# =============================================================================

class TestAuthErrors:
    def test_missing_token_401(self, client, seeded):
        _assert_error(client.get(f"{API}/cases"), 401, "invalid_credential")

    def test_garbage_token_401(self, client, seeded):
        response = client.get(f"{API}/cases", headers={"Authorization": "Bearer garbage"})
        _assert_error(response, 401, "invalid_credential")

    def test_revoked_token_403(self, client, seeded, issue_token):
        old = issue_token(seeded.alice)
        issue_token(seeded.alice)

        response = client.get(f"{API}/cases", headers={"Authorization": f"Bearer {old}"})
        _assert_error(response, 403, "revoked_credential")


class TestLogin:
    def test_login_issues_working_token(self, client, seeded):
        response = client.post(f"{API}/auth/login", json={"username": "alice", "password": PASSWORD})
        assert response.status_code == 200
        body = response.json()
        assert body["data"]["username"] == "alice"

        me = client.get(f"{API}/auth/me", headers={"Authorization": f"Bearer {body['token']}"})
        assert me.status_code == 200
        assert me.json()["data"]["id"] == seeded.alice

    def test_second_login_revokes_first(self, client, seeded):
        first = client.post(f"{API}/auth/login", json={"username": "alice", "password": PASSWORD}).json()
        client.post(f"{API}/auth/login", json={"username": "alice", "password": PASSWORD})

        response = client.get(f"{API}/auth/me", headers={"Authorization": f"Bearer {first['token']}"})
        _assert_error(response, 403, "revoked_credential")

    def test_wrong_password(self, client, seeded):
        response = client.post(f"{API}/auth/login", json={"username": "alice", "password": "nope"})
        _assert_error(response, 401, "invalid_credential")

    def test_password_too_long(self, client, seeded):
        response = client.post(f"{API}/auth/login", json={"username": "alice", "password": "x" * 100})
        assert response.status_code == 400
        assert response.json()["status"] == "error"

    def test_warning_without_api_access(self, client, seeded):
        body = client.post(f"{API}/auth/login", json={"username": "alice", "password": PASSWORD}).json()
        assert body["data"]["api_access"] == "no"
        assert "does not have API access" in body["warning"]

    def test_no_warning_with_api_access(self, client, seeded):
        _set_user(seeded.alice, api_access="yes")
        body = client.post(f"{API}/auth/login", json={"username": "alice", "password": PASSWORD}).json()
        assert body["warning"] is None


def _set_user(user_id, **values):
    with session_scope() as db:
        db.execute(update(User).where(User.id == user_id).values(**values))


NEW_USER = {
    "firstname": "Carol",
    "lastname": "Clark",
    "username": "carol",
    "password": "s3cret-pass",
}


class TestRegister:
    def test_register_returns_working_token(self, client, seeded):
        response = client.post(f"{API}/auth/register", json=NEW_USER)
        assert response.status_code == 201
        body = response.json()
        assert body["data"]["username"] == "carol"
        assert body["data"]["api_access"] == "no"
        assert body["warning"]

        me = client.get(f"{API}/auth/me", headers={"Authorization": f"Bearer {body['token']}"})
        assert me.status_code == 200
        assert me.json()["data"]["id"] == body["data"]["id"]

        cases = client.get(f"{API}/cases", headers={"Authorization": f"Bearer {body['token']}"}).json()
        assert cases["data"] == []

    def test_registered_password_is_hashed(self, client, seeded):
        client.post(f"{API}/auth/register", json={**NEW_USER, "api_access": "yes"})

        with session_scope() as db:
            user = db.execute(select(User).where(User.username == "carol")).scalar_one()
            assert user.password_hash != NEW_USER["password"]
            assert verify_password(NEW_USER["password"], user.password_hash)
            assert user.api_access == "yes"

        login = client.post(f"{API}/auth/login", json={"username": "carol", "password": NEW_USER["password"]})
        assert login.status_code == 200
        assert login.json()["warning"] is None

    def test_duplicate_username(self, client, seeded):
        response = client.post(f"{API}/auth/register", json={**NEW_USER, "username": "alice"})
        _assert_error(response, 400, "http_400")
        assert response.json()["message"] == "User already exists"

    @pytest.mark.parametrize("field, value", [
        ("username", "ab"),
        ("password", "short"),
        ("firstname", ""),
        ("api_access", "maybe"),
    ])
    def test_invalid_fields_422(self, client, seeded, field, value):
        response = client.post(f"{API}/auth/register", json={**NEW_USER, field: value})
        _assert_error(response, 422, "validation_error")


class TestApiAccess:
    def test_non_admin_forbidden(self, client, alice_headers, seeded):
        response = client.put(
            f"{API}/auth/api-access", json={"user_id": seeded.bob, "access": "yes"}, headers=alice_headers
        )
        _assert_error(response, 403, "forbidden")

        with session_scope() as db:
            assert db.execute(select(User.api_access).where(User.id == seeded.bob)).scalar_one() == "no"

    def test_admin_grants_access(self, client, alice_headers, seeded):
        _set_user(seeded.alice, user_level="admin")

        response = client.put(
            f"{API}/auth/api-access", json={"user_id": seeded.bob, "access": "yes"}, headers=alice_headers
        )
        assert response.status_code == 200
        assert response.json()["message"] == f"API access for user {seeded.bob} updated to yes"

        login = client.post(f"{API}/auth/login", json={"username": "bob", "password": PASSWORD}).json()
        assert login["data"]["api_access"] == "yes"
        assert login["warning"] is None

    def test_admin_unknown_user_404(self, client, alice_headers, seeded):
        _set_user(seeded.alice, user_level="admin")
        response = client.put(
            f"{API}/auth/api-access", json={"user_id": 999999, "access": "no"}, headers=alice_headers
        )
        _assert_error(response, 404, "not_found")

    def test_requires_token(self, client, seeded):
        response = client.put(f"{API}/auth/api-access", json={"user_id": seeded.bob, "access": "yes"})
        _assert_error(response, 401, "invalid_credential")


# =============================================================================
# Entities
# =============================================================================

class TestCaseEndpoints:
    def test_list_envelope(self, client, alice_headers, seeded):
        body = client.get(f"{API}/cases", headers=alice_headers).json()

        assert body["status"] == "success"
        assert body["message"] == "Cases retrieved successfully"
        assert body["count"] == len(body["data"]) == 2
        assert {c["id"] for c in body["data"]} == {seeded.c1, seeded.c2}

    def test_get_case(self, client, alice_headers, seeded):
        body = client.get(f"{API}/cases/{seeded.c1}", headers=alice_headers).json()
        case = body["data"]

        assert case["case_name"] == "Smith v. Jones"
        assert case["assignees"] == [{"email": "a@firm.com", "name": "Alice Adams"}]
        assert case["custom_details"]["title"] == "Smith matter"

    def test_foreign_and_absent_both_404(self, client, alice_headers, seeded):
        foreign = client.get(f"{API}/cases/{seeded.c3}", headers=alice_headers)
        absent = client.get(f"{API}/cases/999999", headers=alice_headers)

        _assert_error(foreign, 404, "not_found")
        assert foreign.json() == absent.json()

    def test_case_triggers(self, client, alice_headers, seeded):
        body = client.get(f"{API}/cases/{seeded.c1}/triggers", headers=alice_headers).json()
        assert [t["id"] for t in body["data"]] == [seeded.t1]
        assert body["data"][0]["number_of_events"] == 2

    def test_case_events(self, client, alice_headers, seeded):
        body = client.get(f"{API}/cases/{seeded.c1}/events", headers=alice_headers).json()
        assert [e["id"] for e in body["data"]] == [seeded.e1]

    def test_name_filter(self, client, alice_headers, seeded):
        body = client.get(f"{API}/cases", params={"name": "DOE"}, headers=alice_headers).json()
        assert [c["id"] for c in body["data"]] == [seeded.c2]

    def test_assignee_filter(self, client, alice_headers, seeded):
        body = client.get(f"{API}/cases", params={"assignee": "a@firm.com"}, headers=alice_headers).json()
        assert [c["id"] for c in body["data"]] == [seeded.c1]
        assert body["pagination"]["total"] == 1

    def test_pagination_metadata(self, client, alice_headers, seeded):
        first = client.get(f"{API}/cases", params={"limit": 1}, headers=alice_headers).json()
        assert first["count"] == 1
        assert first["pagination"] == {"total": 2, "page": 1, "limit": 1, "total_pages": 2}

        second = client.get(f"{API}/cases", params={"limit": 1, "offset": 1}, headers=alice_headers).json()
        assert [c["id"] for c in second["data"]] == [seeded.c2]
        assert second["pagination"]["page"] == 2

    def test_default_page_size(self, client, alice_headers, seeded):
        body = client.get(f"{API}/cases", headers=alice_headers).json()
        assert body["pagination"] == {"total": 2, "page": 1, "limit": 50, "total_pages": 1}

    def test_invalid_limit_422(self, client, alice_headers, seeded):
        response = client.get(f"{API}/cases", params={"limit": 0}, headers=alice_headers)
        _assert_error(response, 422, "validation_error")


class TestTriggerAndEventEndpoints:
    def test_trigger_events(self, client, alice_headers, seeded):
        body = client.get(f"{API}/triggers/{seeded.t1}/events", headers=alice_headers).json()
        assert body["count"] == 2
        assert all("categories" in e for e in body["data"])

    def test_trigger_cases(self, client, alice_headers, seeded):
        body = client.get(f"{API}/triggers/{seeded.t1}/cases", headers=alice_headers).json()
        assert [c["id"] for c in body["data"]] == [seeded.c1]

    def test_foreign_trigger_404(self, client, alice_headers, seeded):
        _assert_error(client.get(f"{API}/triggers/{seeded.t4}", headers=alice_headers), 404, "not_found")

    def test_event_type_filter(self, client, alice_headers, seeded):
        body = client.get(f"{API}/events", params={"type": "hearing"}, headers=alice_headers).json()
        assert [e["id"] for e in body["data"]] == [seeded.e2]

    def test_event_search_params(self, client, alice_headers, seeded):
        by_case = client.get(f"{API}/events", params={"case_id": seeded.c1}, headers=alice_headers).json()
        assert [e["id"] for e in by_case["data"]] == [seeded.e1]

        by_trigger = client.get(
            f"{API}/events", params={"trigger_name": "complaint", "limit": 1}, headers=alice_headers
        ).json()
        assert by_trigger["count"] == 1
        assert by_trigger["pagination"] == {"total": 2, "page": 1, "limit": 1, "total_pages": 2}

        by_name = client.get(f"{API}/events", params={"event_name": "responses"}, headers=alice_headers).json()
        assert [e["id"] for e in by_name["data"]] == [seeded.e3]

    def test_trigger_list_pagination(self, client, alice_headers, seeded):
        body = client.get(f"{API}/triggers", params={"jurisdiction": "CA-SF"}, headers=alice_headers).json()
        assert body["pagination"]["total"] == 2

    def test_event_date_range_validation(self, client, alice_headers, seeded):
        response = client.get(
            f"{API}/events", params={"from": "2024-03-01", "to": "2024-02-01"}, headers=alice_headers
        )
        assert response.status_code == 400

    def test_get_event(self, client, alice_headers, seeded):
        event = client.get(f"{API}/events/{seeded.e1}", headers=alice_headers).json()["data"]
        assert event["categories"] == [{"label": "Filing"}, {"label": "Urgent"}]
        assert event["trigger_id"] == seeded.t1


class TestServerErrors:
    def test_upstream_message_hidden_in_production(self, client, alice_headers, seeded, monkeypatch):
        class DownAssembler:
            async def assemble_page(self, *args, **kwargs):
                raise UpstreamUnavailable("connection refused by db-primary:5432")

        app.dependency_overrides[get_assembler] = lambda: DownAssembler()
        monkeypatch.setenv("ENVIRONMENT", "production")
        get_settings.cache_clear()

        response = client.get(f"{API}/cases", headers=alice_headers)

        _assert_error(response, 500, "upstream_unavailable")
        assert "db-primary" not in response.json()["message"]


# =============================================================================
# Rate limiting
# =============================================================================

class StubLimiter:
    def __init__(self, allowed):
        self.allowed = allowed
        self.calls = []

    def is_allowed(self, key, limit, window_seconds):
        self.calls.append((key, limit, window_seconds))
        return (self.allowed, 0 if not self.allowed else limit - 1, 1700000000)


def _limited_app(limiter, settings):
    limited = FastAPI()
    limited.add_middleware(RateLimitMiddleware, limiter=limiter, settings=settings)

    @limited.get("/api/v1/ping")
    async def ping():
        return {"status": "success"}

    @limited.get("/health")
    async def health():
        return {"status": "healthy"}

    return limited


class TestRateLimit:
    def test_blocked_request_gets_429_envelope(self):
        limiter = StubLimiter(allowed=False)
        settings = Settings(environment="production", rate_limit_enabled=True)
        response = TestClient(_limited_app(limiter, settings)).get("/api/v1/ping")

        _assert_error(response, 429, "rate_limited")
        assert response.headers["X-RateLimit-Limit"] == "50"
        assert limiter.calls[0][1:] == (50, 900)

    def test_allowed_request_has_headers(self):
        limiter = StubLimiter(allowed=True)
        settings = Settings(environment="development", rate_limit_enabled=True)
        response = TestClient(_limited_app(limiter, settings)).get("/api/v1/ping")

        assert response.status_code == 200
        assert response.headers["X-RateLimit-Limit"] == "500"

    def test_health_exempt(self):
        limiter = StubLimiter(allowed=False)
        settings = Settings(rate_limit_enabled=True)
        response = TestClient(_limited_app(limiter, settings)).get("/health")

        assert response.status_code == 200
        assert limiter.calls == []

    def test_forwarded_header_ignored_without_trusted_proxy(self):
        limiter = StubLimiter(allowed=True)
        settings = Settings(rate_limit_enabled=True)
        client = TestClient(_limited_app(limiter, settings))

        client.get("/api/v1/ping", headers={"X-Forwarded-For": "1.1.1.1"})
        client.get("/api/v1/ping", headers={"X-Forwarded-For": "2.2.2.2"})
        client.get("/api/v1/ping")

        keys = {call[0] for call in limiter.calls}
        assert keys == {"ratelimit:client:testclient"}

    def test_unreachable_redis_allows_traffic(self):
        limiter = RateLimiter("redis://127.0.0.1:1/0")
        assert limiter.is_allowed("ratelimit:client:test", 1, 60) == (True, 1, 0)

    def test_unreachable_redis_waits_before_reconnecting(self, monkeypatch):
        attempts = []

        class DownRedis:
            def ping(self):
                raise redis.ConnectionError("connection refused")

        def from_url(url, **kwargs):
            attempts.append(url)
            return DownRedis()

        monkeypatch.setattr(redis, "from_url", from_url)
        now = [1000.0]
        limiter = RateLimiter("redis://cache:6379/0", retry_seconds=30, clock=lambda: now[0])

        for _ in range(5):
            assert limiter.is_allowed("ratelimit:client:test", 1, 60) == (True, 1, 0)
        assert len(attempts) == 1

        now[0] += 31
        limiter.is_allowed("ratelimit:client:test", 1, 60)
        assert len(attempts) == 2


def _request(peer, forwarded=None):
    headers = [(b"x-forwarded-for", forwarded.encode())] if forwarded else []
    return Request({"type": "http", "client": (peer, 50000), "headers": headers})


class TestClientKey:
    def test_peer_address_by_default(self):
        assert client_key(_request("10.0.0.9", "1.1.1.1")) == "10.0.0.9"
        assert client_key(_request("10.0.0.9", "2.2.2.2")) == "10.0.0.9"

    def test_untrusted_peer_header_ignored(self):
        proxies = parse_networks(["10.0.0.0/8"])
        assert client_key(_request("198.51.100.4", "1.1.1.1"), proxies) == "198.51.100.4"

    def test_rightmost_untrusted_hop_behind_proxy(self):
        proxies = parse_networks(["10.0.0.0/8"])
        request = _request("10.0.0.9", "1.1.1.1, 203.0.113.7, 10.0.0.2")
        assert client_key(request, proxies) == "203.0.113.7"

    def test_spoofed_leftmost_hop_does_not_change_key(self):
        proxies = parse_networks(["10.0.0.9"])
        first = client_key(_request("10.0.0.9", "1.1.1.1, 203.0.113.7"), proxies)
        second = client_key(_request("10.0.0.9", "2.2.2.2, 203.0.113.7"), proxies)
        assert first == second == "203.0.113.7"

    def test_invalid_proxy_entries_skipped(self):
        assert [str(n) for n in parse_networks(["not-an-ip", " 192.168.0.0/16 "])] == ["192.168.0.0/16"]
