"""Tests for the HTTP surface (health, cache admin, sessions, metrics)."""

import pytest
from fastapi.testclient import TestClient
from prometheus_client import REGISTRY

from backend.api.v1.dependencies import get_current_settings
from backend.core.config import Environment, Settings, settings
from backend.main import app

PREFIX = settings.api_prefix


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def client():
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def production_settings():
    prod = Settings(environment=Environment.PRODUCTION, admin_api_key="secret")
    app.dependency_overrides[get_current_settings] = lambda: prod
    return prod


def unit(index: int, dim: int = 8) -> list[float]:
    v = [0.0] * dim
    v[index] = 1.0
    return v


async def seed_answer(vector):
    return await app.state.response_cache.put(
        vector,
        {"response_text": "Loan cap is ₹15 lakh", "metadata": {"sources": ["doc1"], "confidence": 0.9}},
    )


# ============================================================================
# Health
# ============================================================================


class TestHealth:
    """Test health endpoints."""

    def test_health_includes_cache_stats(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["response_cache"]["backend"] == "memory"
        assert body["embedding_cache"]["backend"] == "memory"

    def test_ready_with_memory_backend(self, client):
        response = client.get("/health/ready")
        assert response.status_code == 200
        assert response.json()["checks"]["cache"] is True

    def test_live(self, client):
        assert client.get("/health/live").json() == {"status": "alive"}

    def test_request_id_header(self, client):
        response = client.get("/health/live", headers={"X-Request-ID": "abc123"})
        assert response.headers["X-Request-ID"] == "abc123"
        assert "X-Response-Time-Ms" in response.headers

    def test_metrics(self, client):
        client.get("/health")
        response = client.get("/metrics")
        assert response.status_code == 200
        assert "answer_cache_requests_total" in response.text


# ============================================================================
# Cache admin
# ============================================================================


class TestCacheEndpoints:
    """Test /cache routes."""

    def test_stats(self, client):
        response = client.get(f"{PREFIX}/cache/stats")
        assert response.status_code == 200
        body = response.json()
        assert set(body) == {"embedding_cache", "response_cache"}
        assert body["response_cache"]["lsh_bits"] == settings.cache.response_cache_lsh_bits

    def test_lookup_hit(self, client):
        client.portal.call(seed_answer, unit(0))

        response = client.post(f"{PREFIX}/cache/lookup", json={"vector": unit(0)})

        assert response.status_code == 200
        body = response.json()
        assert body["hit"] is True
        assert body["item"]["response_text"] == "Loan cap is ₹15 lakh"
        assert "vector_b64" not in body["item"]

    def test_lookup_leaves_stats_untouched(self, client):
        client.portal.call(seed_answer, unit(0))

        client.post(f"{PREFIX}/cache/lookup", json={"vector": unit(0)})
        body = client.post(f"{PREFIX}/cache/lookup", json={"vector": unit(4)}).json()

        assert body["hit"] is False
        stats = client.get(f"{PREFIX}/cache/stats").json()["response_cache"]
        assert stats["hits"] == 0
        assert stats["misses"] == 0

    def test_lookup_miss(self, client):
        response = client.post(f"{PREFIX}/cache/lookup", json={"vector": unit(3)})
        assert response.status_code == 200
        assert response.json()["hit"] is False

    def test_lookup_validation(self, client):
        response = client.post(f"{PREFIX}/cache/lookup", json={"vector": []})
        assert response.status_code == 422
        assert response.json()["error"] == "Validation Error"

    def test_clear_in_development(self, client):
        client.portal.call(seed_answer, unit(1))

        response = client.post(f"{PREFIX}/cache/clear")

        assert response.status_code == 200
        body = response.json()
        assert body["target"] == "all"
        assert body["removed"]["response_cache"] >= 1
        assert client.post(f"{PREFIX}/cache/lookup", json={"vector": unit(1)}).json()["hit"] is False

    def test_clear_single_target(self, client):
        response = client.post(f"{PREFIX}/cache/clear", params={"target": "embedding"})
        assert response.status_code == 200
        assert set(response.json()["removed"]) == {"embedding_cache"}

    def test_clear_requires_key_in_production(self, client, production_settings):
        assert client.post(f"{PREFIX}/cache/clear").status_code == 401
        assert client.post(f"{PREFIX}/cache/clear", headers={"X-Api-Key": "wrong"}).status_code == 401
        assert client.post(f"{PREFIX}/cache/clear", headers={"X-Api-Key": "secret"}).status_code == 200

    def test_clear_disabled_without_key_in_production(self, client):
        prod = Settings(environment=Environment.PRODUCTION, admin_api_key=None)
        app.dependency_overrides[get_current_settings] = lambda: prod
        assert client.post(f"{PREFIX}/cache/clear").status_code == 403


# ============================================================================
# Sessions
# ============================================================================


class TestSessionEndpoints:
    """Test /sessions routes."""

    def test_append_get_clear(self, client):
        url = f"{PREFIX}/sessions/s1/history"

        created = client.post(url, json={"role": "user", "content": "Who is eligible?"})
        assert created.status_code == 201
        client.post(url, json={"role": "robot", "content": "Students."})

        messages = client.get(url).json()["messages"]
        assert [m["content"] for m in messages] == ["Who is eligible?", "Students."]
        assert messages[1]["role"] == "user"

        assert client.delete(url).status_code == 204
        assert client.get(url).json()["messages"] == []


# ============================================================================
# Metrics
# ============================================================================


class TestRequestMetrics:
    """Test request metric labelling."""

    def test_endpoint_label_uses_route_template(self, client):
        template = f"{PREFIX}/sessions/{{session_id}}/history"
        labels = {"endpoint": template, "status": "success"}
        before = REGISTRY.get_sample_value("answer_cache_requests_total", labels) or 0.0

        for i in range(3):
            assert client.get(f"{PREFIX}/sessions/sess-{i}/history").status_code == 200

        assert REGISTRY.get_sample_value("answer_cache_requests_total", labels) == before + 3
        endpoints = {
            sample.labels["endpoint"]
            for metric in REGISTRY.collect()
            if metric.name == "answer_cache_requests"
            for sample in metric.samples
        }
        assert not any("sess-" in endpoint for endpoint in endpoints)

    def test_unknown_path_is_unmatched(self, client):
        labels = {"endpoint": "unmatched", "status": "error"}
        before = REGISTRY.get_sample_value("answer_cache_requests_total", labels) or 0.0

        assert client.get("/no/such/path").status_code == 404

        assert REGISTRY.get_sample_value("answer_cache_requests_total", labels) == before + 1
