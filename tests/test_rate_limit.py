"""Tests for the sliding window store, admission controller and middleware."""

import asyncio
import threading

import pytest
from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.testclient import TestClient

from forum.app.core.config import settings
from forum.app.exceptions import ForumException, RateLimitedError
from forum.app.middleware.rate_limit import (
    ANONYMOUS_IDENTITY,
    ActionClass,
    AdmissionController,
    AdmissionDecision,
    RateLimit,
    RateLimitDependency,
    RateLimitMiddleware,
    WindowCounterStore,
    caller_identity,
    client_address,
    limits_from_settings,
    rate_limit_key,
)

LIMITS = {
    ActionClass.REQUESTS: RateLimit(max_requests=2, window_seconds=60),
    ActionClass.POSTS: RateLimit(max_requests=1, window_seconds=1800),
    ActionClass.COMMENTS: RateLimit(max_requests=3, window_seconds=3600),
}


@pytest.fixture
def store(clock):
    return WindowCounterStore(clock=clock)


@pytest.fixture
def controller(store):
    return AdmissionController(store, LIMITS)


class TestWindowCounterStore:
    """Tests for the per-key timestamp history."""

    def test_records_while_under_ceiling(self, store):
        first = store.record_and_count("k", 60, 2)
        second = store.record_and_count("k", 60, 2)
        third = store.record_and_count("k", 60, 2)

        assert (first.count, first.recorded) == (0, True)
        assert (second.count, second.recorded) == (1, True)
        assert (third.count, third.recorded) == (2, False)
        assert store.peek("k", 60) == 2

    def test_oldest_is_first_in_window_stamp(self, store, clock):
        store.record_and_count("k", 60, 5)
        clock.advance(10)
        window = store.record_and_count("k", 60, 5)
        assert window.oldest == 1_000.0
        assert window.now == 1_010.0

    def test_expired_stamps_are_dropped(self, store, clock):
        store.record_and_count("k", 60, 1)
        clock.advance(61)
        window = store.record_and_count("k", 60, 1)
        assert window.count == 0
        assert window.oldest is None
        assert window.recorded is True

    def test_stamp_exactly_at_window_start_still_counts(self, store, clock):
        store.record_and_count("k", 60, 1)
        clock.advance(60)
        window = store.record_and_count("k", 60, 1)
        assert window.count == 1
        assert window.recorded is False

    def test_keys_are_independent(self, store):
        store.record_and_count("a", 60, 1)
        window = store.record_and_count("b", 60, 1)
        assert window.count == 0
        assert window.recorded is True

    def test_prune_drops_stale_keys_only(self, store, clock):
        store.record_and_count("old", 60, 10)
        clock.advance(500)
        store.record_and_count("fresh", 60, 10)

        removed = store.prune(horizon_seconds=100)

        assert removed == 1
        assert len(store) == 1
        assert store.peek("fresh", 60) == 1

    def test_prune_uses_configured_horizon(self, clock):
        store = WindowCounterStore(clock=clock, stale_horizon=30)
        store.record_and_count("k", 60, 10)
        clock.advance(31)
        assert store.prune() == 1
        assert len(store) == 0

    def test_pruned_key_starts_over(self, store, clock):
        store.record_and_count("k", 60, 1)
        clock.advance(200)
        store.prune(horizon_seconds=100)
        window = store.record_and_count("k", 60, 1)
        assert window.count == 0

    def test_reset(self, store):
        store.record_and_count("a", 60, 1)
        store.record_and_count("b", 60, 1)
        store.reset()
        assert len(store) == 0

    def test_concurrent_checks_never_exceed_ceiling(self):
        store = WindowCounterStore()
        admitted = []
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            for _ in range(50):
                if store.record_and_count("shared", 60, 100).recorded:
                    admitted.append(1)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(admitted) == 100
        assert store.peek("shared", 60) == 100

    def test_checks_survive_concurrent_prune(self, clock):
        store = WindowCounterStore(clock=clock)
        errors = []

        def checker():
            try:
                for _ in range(200):
                    store.record_and_count("k", 60, 10_000)
            except Exception as exc:
                errors.append(exc)

        def pruner():
            for _ in range(200):
                store.prune(horizon_seconds=0)

        threads = [threading.Thread(target=checker), threading.Thread(target=pruner)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []

    @pytest.mark.asyncio
    async def test_background_sweep_prunes(self, clock):
        store = WindowCounterStore(clock=clock, sweep_interval=0.01, stale_horizon=10)
        store.record_and_count("k", 60, 1)
        clock.advance(20)

        await store.start()
        await asyncio.sleep(0.05)
        await store.stop()

        assert len(store) == 0

    @pytest.mark.asyncio
    async def test_start_twice_and_stop_without_start(self, store):
        await store.stop()
        await store.start()
        await store.start()
        await store.stop()


class TestAdmissionController:
    """Tests for admission decisions."""

    def test_allows_until_limit_then_denies(self, controller, clock):
        limit = RateLimit(max_requests=2, window_seconds=60)

        first = controller.check("k", limit)
        clock.advance(1)
        second = controller.check("k", limit)
        clock.advance(1)
        third = controller.check("k", limit)

        assert first.allowed and first.remaining == 1
        assert second.allowed and second.remaining == 0
        assert not third.allowed
        assert third.remaining == 0
        assert third.reset_at == 1_060.0
        assert third.retry_after == 58

    def test_first_check_resets_one_window_ahead(self, controller):
        decision = controller.check("k", RateLimit(5, 60))
        assert decision.allowed
        assert decision.limit == 5
        assert decision.remaining == 4
        assert decision.reset_at == 1_060.0
        assert decision.retry_after == 0

    def test_denied_checks_do_not_consume_quota(self, controller, store, clock):
        limit = RateLimit(max_requests=1, window_seconds=60)
        controller.check("k", limit)
        for _ in range(5):
            clock.advance(1)
            assert not controller.check("k", limit).allowed

        assert store.peek("k", 60) == 1
        clock.advance(56)
        assert controller.check("k", limit).allowed

    def test_readmitted_after_reset_at(self, controller, clock):
        limit = RateLimit(max_requests=1, window_seconds=60)
        controller.check("k", limit)
        denied = controller.check("k", limit)

        clock.now = denied.reset_at + 0.001
        assert controller.check("k", limit).allowed

    def test_retry_after_rounds_up(self, controller, clock):
        limit = RateLimit(max_requests=1, window_seconds=60)
        controller.check("k", limit)
        clock.advance(0.5)
        assert controller.check("k", limit).retry_after == 60

    def test_action_classes_are_independent(self, controller):
        identity = caller_identity("agent-1", None)
        assert controller.check_action(identity, ActionClass.POSTS).allowed
        assert not controller.check_action(identity, ActionClass.POSTS).allowed
        assert controller.check_action(identity, ActionClass.COMMENTS).allowed
        assert controller.check_action(identity, ActionClass.REQUESTS).allowed

    def test_limit_for_unknown_class(self, store):
        controller = AdmissionController(store, {ActionClass.REQUESTS: RateLimit(1, 1)})
        with pytest.raises(ValueError):
            controller.limit_for(ActionClass.POSTS)

    def test_longest_window(self, controller):
        assert controller.longest_window == 3600

    def test_defaults_come_from_settings(self, store):
        controller = AdmissionController(store)
        assert controller.limits == limits_from_settings()
        assert controller.limit_for(ActionClass.POSTS) == RateLimit(1, 1800)


class TestRateLimitModels:

    def test_rate_limit_rejects_nonsense(self):
        with pytest.raises(ValueError):
            RateLimit(max_requests=0, window_seconds=60)
        with pytest.raises(ValueError):
            RateLimit(max_requests=1, window_seconds=0)

    def test_headers_for_allowed_decision(self):
        decision = AdmissionDecision(allowed=True, limit=10, remaining=7, reset_at=1_234.9)
        assert decision.headers() == {
            "X-RateLimit-Limit": "10",
            "X-RateLimit-Remaining": "7",
            "X-RateLimit-Reset": "1234",
        }

    def test_headers_for_denied_decision(self):
        decision = AdmissionDecision(
            allowed=False, limit=10, remaining=0, reset_at=1_234.0, retry_after=12
        )
        assert decision.headers()["Retry-After"] == "12"


class TestCallerIdentity:

    def test_agent_wins_over_address(self):
        assert caller_identity("agent-1", "10.0.0.1") == "agent:agent-1"

    def test_address_when_no_agent(self):
        identity = caller_identity(None, "10.0.0.1")
        assert identity.startswith("ip:")
        assert "10.0.0.1" not in identity

    def test_anonymous_fallback(self):
        assert caller_identity(None, None) == ANONYMOUS_IDENTITY
        assert caller_identity("", "") == ANONYMOUS_IDENTITY

    def test_same_agent_same_identity(self):
        assert caller_identity("a", "1.1.1.1") == caller_identity("a", "2.2.2.2")

    def test_key_layout(self):
        assert rate_limit_key(ActionClass.POSTS, "ip:abc") == "rl:posts:ip:abc"


class TestClientAddress:

    @staticmethod
    def _request(forwarded=None, peer="203.0.113.9"):
        headers = []
        if forwarded is not None:
            headers.append((b"x-forwarded-for", forwarded.encode()))
        return Request({
            "type": "http",
            "method": "GET",
            "path": "/",
            "headers": headers,
            "client": (peer, 1234) if peer else None,
        })

    def test_forwarded_for_ignored_without_trusted_proxy(self):
        request = self._request("1.2.3.4")
        assert client_address(request, trusted_hops=0) == "203.0.113.9"

    def test_one_proxy_uses_rightmost_entry(self):
        request = self._request("6.6.6.6, 1.2.3.4")
        assert client_address(request, trusted_hops=1) == "1.2.3.4"

    def test_two_proxies(self):
        request = self._request("6.6.6.6, 1.2.3.4, 10.0.0.2")
        assert client_address(request, trusted_hops=2) == "1.2.3.4"

    def test_short_chain_falls_back_to_leftmost(self):
        request = self._request("1.2.3.4")
        assert client_address(request, trusted_hops=5) == "1.2.3.4"

    def test_no_header_uses_peer(self):
        assert client_address(self._request(), trusted_hops=1) == "203.0.113.9"

    def test_hops_default_from_settings(self, monkeypatch):
        monkeypatch.setattr(settings, "rate_limit_trusted_proxy_hops", 1)
        assert client_address(self._request("1.2.3.4")) == "1.2.3.4"


KNOWN_TOKENS = {"forum_good": "agent-1", "forum_other": "agent-2"}


async def _resolve_known(token: str):
    return KNOWN_TOKENS.get(token)


def _make_app(controller: AdmissionController) -> FastAPI:
    app = FastAPI()
    app.state.admission = controller
    app.state.resolve_agent = _resolve_known
    app.add_middleware(RateLimitMiddleware, controller=controller)

    @app.exception_handler(RateLimitedError)
    async def rate_limited_handler(request, exc: RateLimitedError):
        return JSONResponse(status_code=429, content=exc.to_response(), headers=exc.headers)

    @app.exception_handler(ForumException)
    async def forum_handler(request, exc: ForumException):
        return JSONResponse(status_code=exc.status_code, content=exc.to_response())

    @app.get("/ping")
    async def ping():
        return {"ok": True}

    @app.post("/comment", dependencies=[Depends(RateLimitDependency(ActionClass.COMMENTS))])
    async def comment():
        return {"ok": True}

    return app


class TestRateLimitMiddleware:
    """Tests for the HTTP layer."""

    def test_headers_on_admitted_request(self, controller):
        client = TestClient(_make_app(controller))
        resp = client.get("/ping")
        assert resp.status_code == 200
        assert resp.headers["X-RateLimit-Limit"] == "2"
        assert resp.headers["X-RateLimit-Remaining"] == "1"
        assert "X-RateLimit-Reset" in resp.headers

    def test_denied_request_gets_429(self, controller):
        client = TestClient(_make_app(controller))
        client.get("/ping")
        client.get("/ping")
        resp = client.get("/ping")

        assert resp.status_code == 429
        body = resp.json()
        assert body["success"] is False
        assert body["code"] == "RATE_LIMITED"
        assert body["retry_after"] == 60
        assert resp.headers["Retry-After"] == "60"
        assert resp.headers["X-RateLimit-Remaining"] == "0"

    def test_known_agent_counted_apart_from_address(self, controller):
        client = TestClient(_make_app(controller))
        client.get("/ping")
        client.get("/ping")
        resp = client.get("/ping", headers={"Authorization": "Bearer forum_good"})
        assert resp.status_code == 200

    def test_unknown_tokens_share_the_address_bucket(self, controller, store):
        client = TestClient(_make_app(controller))
        statuses = [
            client.get("/ping", headers={"Authorization": f"Bearer random-{i}"}).status_code
            for i in range(5)
        ]
        assert statuses == [200, 200, 429, 429, 429]
        assert len(store) == 1

    def test_rotating_forwarded_for_is_ignored(self, controller):
        client = TestClient(_make_app(controller))
        statuses = [
            client.get("/ping", headers={"X-Forwarded-For": f"10.9.{i}.1"}).status_code
            for i in range(4)
        ]
        assert statuses == [200, 200, 429, 429]

    def test_trusted_proxy_counts_rightmost_hop(self, controller, monkeypatch):
        monkeypatch.setattr(settings, "rate_limit_trusted_proxy_hops", 1)
        client = TestClient(_make_app(controller))
        for i in range(2):
            client.get("/ping", headers={"X-Forwarded-For": f"6.6.{i}.6, 1.2.3.4"})
        blocked = client.get("/ping", headers={"X-Forwarded-For": "9.9.9.9, 1.2.3.4"})
        other = client.get("/ping", headers={"X-Forwarded-For": "5.6.7.8"})
        assert blocked.status_code == 429
        assert other.status_code == 200

    def test_route_check_reuses_middleware_identity(self, store):
        limits = dict(LIMITS)
        limits[ActionClass.REQUESTS] = RateLimit(100, 60)
        controller = AdmissionController(store, limits)
        client = TestClient(_make_app(controller))

        client.post("/comment", headers={"Authorization": "Bearer forum_good"})
        assert store.peek(rate_limit_key(ActionClass.COMMENTS, "agent:agent-1"), 3600) == 1

    def test_oversized_token_rejected(self, controller):
        client = TestClient(_make_app(controller))
        resp = client.get("/ping", headers={"Authorization": "Bearer " + "x" * 600})
        assert resp.status_code == 400

    def test_route_class_headers_override_general(self, store):
        limits = dict(LIMITS)
        limits[ActionClass.REQUESTS] = RateLimit(100, 60)
        controller = AdmissionController(store, limits)
        client = TestClient(_make_app(controller))

        resp = client.post("/comment")
        assert resp.status_code == 200
        assert resp.headers["X-RateLimit-Limit"] == "3"
        assert resp.headers["X-RateLimit-Remaining"] == "2"

    def test_route_class_denial(self, store):
        limits = dict(LIMITS)
        limits[ActionClass.REQUESTS] = RateLimit(100, 60)
        limits[ActionClass.COMMENTS] = RateLimit(1, 3600)
        controller = AdmissionController(store, limits)
        client = TestClient(_make_app(controller))

        assert client.post("/comment").status_code == 200
        resp = client.post("/comment")
        assert resp.status_code == 429
        assert resp.headers["Retry-After"] == "3600"
        assert resp.json()["retry_after_minutes"] == 60
