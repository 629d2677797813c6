"""Integration tests for the rate limit administration endpoints."""

import asyncio
import time
from unittest.mock import Mock

import httpx
import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from app.adapters.behavior.static_scorer import StaticBehaviorScorer
from app.adapters.rate_limit.base import CounterSnapshot
from app.adapters.rate_limit.in_memory import InMemoryCounterStore
from app.core.app_factory import create_app
from app.core.config import RateLimitSettings
from app.core.errors import InfrastructureAppError
from app.core.rate_limit import get_rate_limit_engine
from app.services.rate_limit_engine import RateLimitEngine

USER_HEADERS = {"X-API-Key": "test-api-key-123"}
ADMIN_HEADERS = {"X-API-Key": "admin-key"}
RESET_HEADERS = {"X-API-Key": "reset-key"}


def _client_for(engine: RateLimitEngine) -> TestClient:
    app: FastAPI = create_app()
    app.dependency_overrides[get_rate_limit_engine] = lambda: engine
    return TestClient(app)


@pytest.fixture
def engine() -> RateLimitEngine:
    return RateLimitEngine(InMemoryCounterStore(), StaticBehaviorScorer(0.0), RateLimitSettings())


@pytest.fixture
def client(engine: RateLimitEngine) -> TestClient:
    return _client_for(engine)


def test_missing_api_key_is_forbidden(client: TestClient) -> None:
    response = client.post("/v1/rate-limits/check", json={"action": "list"})

    assert response.status_code == 403


def test_check_allows_then_throttles(client: TestClient) -> None:
    body = {"action": "list", "max_attempts": 2, "window_seconds": 60}

    first = client.post("/v1/rate-limits/check", json=body, headers=USER_HEADERS)
    second = client.post("/v1/rate-limits/check", json=body, headers=USER_HEADERS)
    third = client.post("/v1/rate-limits/check", json=body, headers=USER_HEADERS)

    assert first.status_code == 200
    assert first.json()["remaining"] == 1
    assert first.headers["X-RateLimit-Limit"] == "2"
    assert second.json()["remaining"] == 0

    assert third.status_code == 429
    assert 1 <= int(third.headers["Retry-After"]) <= 60
    error = third.json()["error"]
    assert error["code"] == "rate_limit_exceeded"
    assert error["retry_after"] == int(third.headers["Retry-After"])


def test_callers_are_counted_separately(client: TestClient) -> None:
    body = {"action": "list", "max_attempts": 1}

    assert client.post("/v1/rate-limits/check", json=body, headers=USER_HEADERS).status_code == 200
    assert client.post("/v1/rate-limits/check", json=body, headers=ADMIN_HEADERS).status_code == 200
    assert client.post("/v1/rate-limits/check", json=body, headers=USER_HEADERS).status_code == 429


def test_resource_policy_requires_resource_fields(client: TestClient) -> None:
    response = client.post(
        "/v1/rate-limits/check",
        json={"policy": "resource", "action": "export"},
        headers=USER_HEADERS,
    )

    assert response.status_code == 422


def test_resource_policy_uses_operation_limits(client: TestClient) -> None:
    body = {"policy": "resource", "action": "export", "resource": "reports", "operation": "export"}

    response = client.post("/v1/rate-limits/check", json=body, headers=USER_HEADERS)

    assert response.status_code == 200
    assert response.json()["limit"] == 5


def test_multi_level_policy(client: TestClient) -> None:
    body = {
        "policy": "multi_level",
        "action": "search",
        "levels": {
            "ip": {"attempts": 1, "window": 60},
            "user": {"attempts": 100, "window": 60},
        },
    }

    first = client.post("/v1/rate-limits/check", json=body, headers=USER_HEADERS)
    second = client.post("/v1/rate-limits/check", json=body, headers=USER_HEADERS)

    assert first.status_code == 200
    assert first.json()["levels_checked"] == 2
    assert second.status_code == 429


def test_multi_level_without_levels_is_rejected() -> None:
    config = RateLimitSettings()
    config.multi_level = {}
    client = _client_for(RateLimitEngine(InMemoryCounterStore(), StaticBehaviorScorer(0.0), config))

    response = client.post(
        "/v1/rate-limits/check",
        json={"policy": "multi_level", "action": "search"},
        headers=USER_HEADERS,
    )

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "rate_limit_levels_missing"


def test_conditional_policy_uses_admin_tier(client: TestClient) -> None:
    response = client.post(
        "/v1/rate-limits/check",
        json={"policy": "conditional", "action": "list"},
        headers=ADMIN_HEADERS,
    )

    assert response.json()["limit"] == 1000


def test_status_is_read_only(client: TestClient) -> None:
    client.post("/v1/rate-limits/check", json={"action": "list"}, headers=USER_HEADERS)

    first = client.get("/v1/rate-limits/status", params={"action": "list"}, headers=USER_HEADERS)
    second = client.get("/v1/rate-limits/status", params={"action": "list"}, headers=USER_HEADERS)

    assert first.status_code == 200
    assert first.json()["remaining"] == 59
    assert second.json()["remaining"] == 59
    assert first.headers["X-RateLimit-Policy"] == "60;w=60"


def test_behavior_gate_passes_low_scores(client: TestClient) -> None:
    response = client.get("/v1/rate-limits/behavior", headers=USER_HEADERS)

    assert response.status_code == 200
    assert response.json()["allowed"] is True


def test_behavior_gate_rejects_high_scores() -> None:
    engine = RateLimitEngine(InMemoryCounterStore(), StaticBehaviorScorer(0.7), RateLimitSettings())
    client = _client_for(engine)

    response = client.get(
        "/v1/rate-limits/behavior",
        params={"operation": "delete_account", "max_score": 0.5},
        headers=USER_HEADERS,
    )

    assert response.status_code == 403
    assert response.json()["error"]["code"] == "behavior_verification_required"


def test_reset_requires_permission(client: TestClient) -> None:
    response = client.post(
        "/v1/rate-limits/reset",
        json={"identifier": "rate_limits:list:alice"},
        headers=USER_HEADERS,
    )

    assert response.status_code == 403
    assert response.json()["error"]["code"] == "permission_denied"


def test_reset_clears_counter(client: TestClient) -> None:
    body = {"action": "list", "max_attempts": 1}
    client.post("/v1/rate-limits/check", json=body, headers=USER_HEADERS)
    assert client.post("/v1/rate-limits/check", json=body, headers=USER_HEADERS).status_code == 429

    response = client.post(
        "/v1/rate-limits/reset",
        json={"identifier": "rate_limits:list:alice"},
        headers=RESET_HEADERS,
    )

    assert response.status_code == 200
    assert response.json() == {"reset": True, "key": "rate_limits:list:alice"}
    assert client.post("/v1/rate-limits/check", json=body, headers=USER_HEADERS).status_code == 200


def test_reset_without_target_is_rejected(client: TestClient) -> None:
    response = client.post("/v1/rate-limits/reset", json={}, headers=ADMIN_HEADERS)

    assert response.status_code == 400


def test_readiness_reports_store_outage() -> None:
    store = Mock(spec=InMemoryCounterStore)
    store.peek.side_effect = InfrastructureAppError(
        code="rate_limit_store_unavailable",
        message="Rate limit store is unavailable",
    )
    client = _client_for(RateLimitEngine(store, StaticBehaviorScorer(0.0), RateLimitSettings()))

    assert client.get("/health").status_code == 200
    assert client.get("/health/ready").status_code == 503


def test_openapi_documents_throttling(client: TestClient) -> None:
    schema = client.get("/openapi.json").json()

    check = schema["paths"]["/v1/rate-limits/check"]["post"]
    assert "429" in check["responses"]
    assert schema["paths"]["/health"]["get"]["security"] == []


def test_behavior_gate_is_itself_rate_limited(client: TestClient) -> None:
    for _ in range(30):
        assert client.get("/v1/rate-limits/behavior", headers=USER_HEADERS).status_code == 200

    response = client.get("/v1/rate-limits/behavior", headers=USER_HEADERS)

    assert response.status_code == 429
    assert response.json()["error"]["details"]["action"] == "behavior"


def test_route_dependencies_skip_when_disabled(client: TestClient, monkeypatch: pytest.MonkeyPatch) -> None:
    from app.core.config import settings

    monkeypatch.setattr(settings.rate_limit, "enabled", False)

    for _ in range(31):
        assert client.get("/v1/rate-limits/behavior", headers=USER_HEADERS).status_code == 200


class SlowCounterStore(InMemoryCounterStore):
    """In-memory store whose increments take as long as a remote round trip."""

    def __init__(self, delay: float) -> None:
        super().__init__()
        self.delay = delay

    def increment(self, key: str, window_seconds: int) -> CounterSnapshot:
        time.sleep(self.delay)
        return super().increment(key, window_seconds)


@pytest.mark.asyncio
async def test_slow_store_does_not_block_event_loop() -> None:
    delay, concurrency = 0.3, 4
    engine = RateLimitEngine(SlowCounterStore(delay), StaticBehaviorScorer(0.0), RateLimitSettings())
    app = create_app()
    app.dependency_overrides[get_rate_limit_engine] = lambda: engine

    ticks = 0
    done = asyncio.Event()

    async def ticker() -> None:
        nonlocal ticks
        while not done.is_set():
            await asyncio.sleep(0.01)
            ticks += 1

    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        ticker_task = asyncio.create_task(ticker())
        started = time.perf_counter()
        responses = await asyncio.gather(
            *(
                http.post(
                    "/v1/rate-limits/check",
                    json={"action": f"list-{i}"},
                    headers=USER_HEADERS,
                )
                for i in range(concurrency)
            )
        )
        elapsed = time.perf_counter() - started
        done.set()
        await ticker_task

    assert [response.status_code for response in responses] == [200] * concurrency
    assert elapsed < delay * concurrency * 0.75
    assert ticks >= 10
