"""Integration tests for the IDE HTTP API.

Runs the full application (middleware, routers, error handlers) against the
in-memory runtime and state store selected in conftest.
"""

import time

import httpx
import pytest
from fastapi.testclient import TestClient

from src.config import settings
from src.dependencies import (
    get_capacity_guard,
    get_execution_gateway,
    get_lifecycle_manager,
    get_rate_limiter,
    get_runtime_backend,
    reset_services,
)
from src.main import app
from src.models.errors import ServiceUnavailableError
from src.services.ide import ExecutionGateway
from src.services.ide.runtime import RuntimeState

TEST_API_KEY = settings.api_key
START_BODY = {"bucketRef": "bucket-1", "userId": "user-1", "region": "us-east-1"}


@pytest.fixture
def client():
    """Test client with a fresh set of services and a valid API key."""
    reset_services()
    with TestClient(app, headers={"x-api-key": TEST_API_KEY}) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    reset_services()


def wait_for_status(client, container_id, expected, attempts=50):
    data = None
    for _ in range(attempts):
        response = client.get(f"/ide/container/{container_id}")
        data = response.json()
        if data["status"] == expected:
            return data
        time.sleep(0.02)
    return data


def start_running(client, body=START_BODY):
    response = client.post("/ide/start-container", json=body)
    assert response.status_code == 201
    container_id = response.json()["containerId"]
    data = wait_for_status(client, container_id, "running")
    assert data["status"] == "running"
    return container_id


class TestAuthentication:
    """Tests for the service API key."""

    def test_health_needs_no_key(self, client):
        response = client.get("/health", headers={"x-api-key": ""})

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_missing_key_rejected(self, client):
        response = client.post(
            "/ide/start-container", json=START_BODY, headers={"x-api-key": ""}
        )

        assert response.status_code == 401

    def test_bearer_token_accepted(self, client):
        response = client.get(
            "/ide/containers",
            headers={"x-api-key": "", "Authorization": f"Bearer {TEST_API_KEY}"},
        )

        assert response.status_code == 200

    def test_non_json_body_rejected(self, client):
        response = client.post(
            "/ide/start-container",
            content="bucketRef=bucket-1",
            headers={"content-type": "text/plain"},
        )

        assert response.status_code == 415


class TestStartContainer:
    """Tests for POST /ide/start-container."""

    def test_start_and_reuse(self, client):
        response = client.post("/ide/start-container", json=START_BODY)

        assert response.status_code == 201
        data = response.json()
        container_id = data["containerId"]
        assert data["status"] == "starting"
        assert data["isReused"] is False
        assert data["requiresRestart"] is False
        assert data["urls"]["webServer"] == (
            f"https://ide.example.com/web/{container_id}"
        )

        again = client.post("/ide/start-container", json=START_BODY)

        assert again.status_code == 200
        assert again.json()["containerId"] == container_id
        assert again.json()["isReused"] is True

    def test_local_environment_header(self, client):
        response = client.post(
            "/ide/start-container",
            json=START_BODY,
            headers={"X-IDE-Environment": "local"},
        )

        data = response.json()
        assert data["environmentMode"] == "local"
        assert data["urls"]["terminal"].startswith("http://localhost:8000/terminal/")

    def test_production_header_is_remote(self, client):
        response = client.post(
            "/ide/start-container",
            json=START_BODY,
            headers={"X-IDE-Environment": "production"},
        )

        assert response.json()["environmentMode"] == "remote"

    def test_missing_fields(self, client):
        response = client.post("/ide/start-container", json={"userId": "user-1"})

        assert response.status_code == 422
        assert response.json()["error_type"] == "validation"

    def test_reaches_running(self, client):
        container_id = start_running(client)

        runtime = get_runtime_backend()
        assert runtime.specs[container_id].environment["S3_REGION"] == "us-east-1"


class TestContainerStatus:
    """Tests for GET /ide/container/{id}."""

    def test_invalid_id(self, client):
        response = client.get("/ide/container/Not_Valid")

        assert response.status_code == 400
        data = response.json()
        assert data["error_type"] == "validation"
        assert "error" in data
        assert "request_id" in data

    def test_unknown_id(self, client):
        response = client.get("/ide/container/abcd1234")

        assert response.status_code == 404
        assert response.json()["error_type"] == "resource_not_found"

    def test_crash_reported(self, client):
        container_id = start_running(client)
        get_runtime_backend().set_state(container_id, RuntimeState.MISSING)

        response = client.get(f"/ide/container/{container_id}")

        data = response.json()
        assert data["status"] == "killed"
        assert data["requiresRestart"] is True


class TestStopAndAcknowledge:
    """Tests for DELETE /ide/container/{id} and acknowledgement."""

    def test_stop(self, client):
        container_id = start_running(client)

        response = client.delete(f"/ide/container/{container_id}")

        assert response.status_code == 200
        assert response.json()["status"] == "stopped"
        assert response.json()["shutdownReason"] == "manual"

        run = client.post(f"/ide/{container_id}/run", json={"filename": "main.py"})
        assert run.status_code == 409

    def test_acknowledge_live_container(self, client):
        container_id = start_running(client)

        response = client.post(f"/ide/container/{container_id}/acknowledge")

        assert response.status_code == 409

    def test_acknowledge_killed_container(self, client):
        container_id = start_running(client)
        get_runtime_backend().set_state(container_id, RuntimeState.EXITED)
        client.get(f"/ide/container/{container_id}")

        response = client.post(f"/ide/container/{container_id}/acknowledge")

        assert response.status_code == 204
        assert client.get(f"/ide/container/{container_id}").status_code == 404


class TestInactivityShutdown:
    """Tests for the container's idle-shutdown webhook."""

    def test_webhook_without_api_key(self, client):
        container_id = start_running(client)

        response = client.post(
            f"/ide/{container_id}/inactivity-shutdown",
            json={"reason": "idle for 600s"},
            headers={"x-api-key": ""},
        )

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "killed"
        assert data["shutdownReason"] == "inactivity"
        assert data["message"] == "idle for 600s"
        assert data["requiresRestart"] is True

    def test_webhook_without_body(self, client):
        container_id = start_running(client)

        response = client.post(f"/ide/{container_id}/inactivity-shutdown")

        assert response.status_code == 200
        assert response.json()["status"] == "killed"


class TestRun:
    """Tests for POST /ide/{id}/run."""

    def test_run_forwards_to_container(self, client):
        container_id = start_running(client)
        seen = []

        def handler(request):
            seen.append(request)
            return httpx.Response(
                200, json={"status": "success", "command": "python main.py"}
            )

        gateway = ExecutionGateway(
            get_lifecycle_manager(),
            client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        )
        app.dependency_overrides[get_execution_gateway] = lambda: gateway

        response = client.post(f"/ide/{container_id}/run", json={"filename": "main.py"})

        assert response.status_code == 200
        data = response.json()
        assert data["containerId"] == container_id
        assert data["language"] == "python"
        assert data["command"] == "python main.py"
        assert seen[0].url.path == f"/web/{container_id}/run"

    def test_unsupported_language(self, client):
        container_id = start_running(client)

        response = client.post(
            f"/ide/{container_id}/run",
            json={"filename": "main.rb", "language": "ruby"},
        )

        assert response.status_code == 400


class TestListAndHealth:
    """Tests for listing containers and detailed health."""

    def test_list_with_status_filter(self, client):
        running_id = start_running(client)
        stopped_id = start_running(
            client, {"bucketRef": "bucket-2", "userId": "user-2"}
        )
        client.delete(f"/ide/container/{stopped_id}")

        everything = client.get("/ide/containers").json()
        running = client.get("/ide/containers", params={"status": "running"}).json()

        assert everything["total"] == 2
        assert [c["containerId"] for c in running["containers"]] == [running_id]

    def test_detailed_health(self, client):
        start_running(client)

        response = client.get("/health/detailed")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert data["services"]["state_store"]["status"] == "healthy"
        assert data["services"]["runtime"]["status"] == "healthy"
        assert data["containers"]["by_status"] == {"running": 1}
        assert data["reconciler"] == {"enabled": False}
        assert data["capacity"]["live_containers"] == 1

    def test_security_headers(self, client):
        response = client.get("/health")

        assert response.headers["x-content-type-options"] == "nosniff"
        assert response.headers["x-frame-options"] == "DENY"


class TestErrorContext:
    """Container errors tell the client which container and whether to restart."""

    def test_unknown_container_requires_restart(self, client):
        response = client.get("/ide/container/abcd1234")

        assert response.status_code == 404
        data = response.json()
        assert data["containerId"] == "abcd1234"
        assert data["requiresRestart"] is True

    def test_run_on_stopped_container_requires_restart(self, client):
        container_id = start_running(client)
        client.delete(f"/ide/container/{container_id}")

        response = client.post(f"/ide/{container_id}/run", json={"filename": "main.py"})

        assert response.status_code == 409
        data = response.json()
        assert data["error_type"] == "resource_conflict"
        assert data["containerId"] == container_id
        assert data["requiresRestart"] is True

    def test_live_container_conflict_does_not_require_restart(self, client):
        container_id = start_running(client)

        response = client.post(f"/ide/container/{container_id}/acknowledge")

        assert response.status_code == 409
        assert response.json()["containerId"] == container_id
        assert response.json()["requiresRestart"] is False

    def test_non_container_error_has_no_container_fields(self, client):
        response = client.post("/ide/start-container", json={"userId": "user-1"})

        assert response.status_code == 422
        assert "containerId" not in response.json()
        assert "requiresRestart" not in response.json()

    def test_runtime_outage_keeps_status(self, client):
        container_id = start_running(client)
        runtime = get_runtime_backend()
        runtime.fail_inspect = ServiceUnavailableError("docker", "daemon busy")

        response = client.get(f"/ide/container/{container_id}")

        assert response.status_code == 503
        assert response.json()["error_type"] == "service_unavailable"

        runtime.fail_inspect = None
        assert client.get(f"/ide/container/{container_id}").json()["status"] == (
            "running"
        )


class TestRateLimiting:
    """Tests for the per-key request limit."""

    @pytest.fixture
    def limited_client(self, client, monkeypatch):
        monkeypatch.setattr(settings, "rate_limit_requests", 3)
        monkeypatch.setattr(settings, "rate_limit_window_seconds", 3600)
        get_rate_limiter.cache_clear()
        yield client
        get_rate_limiter.cache_clear()

    def test_requests_over_limit_rejected(self, limited_client):
        responses = [limited_client.get("/ide/containers") for _ in range(4)]

        assert [r.status_code for r in responses] == [200, 200, 200, 429]
        assert responses[0].headers["X-RateLimit-Limit"] == "3"
        assert [r.headers["X-RateLimit-Remaining"] for r in responses[:3]] == [
            "2",
            "1",
            "0",
        ]

        rejected = responses[3]
        data = rejected.json()
        assert data["error_type"] == "rate_limited"
        assert 1 <= int(rejected.headers["Retry-After"]) <= 3600
        assert data["retryAfter"] == int(rejected.headers["Retry-After"])
        assert rejected.headers["X-RateLimit-Remaining"] == "0"

    def test_health_and_webhook_are_not_limited(self, limited_client):
        for _ in range(5):
            assert limited_client.get("/health").status_code == 200
            webhook = limited_client.post(
                "/ide/abcd1234/inactivity-shutdown", headers={"x-api-key": ""}
            )
            assert webhook.status_code == 404
            assert "X-RateLimit-Limit" not in webhook.headers

        assert limited_client.get("/ide/containers").status_code == 200

    def test_disabled(self, client, monkeypatch):
        monkeypatch.setattr(settings, "rate_limit_enabled", False)
        get_rate_limiter.cache_clear()

        response = client.get("/ide/containers")

        assert response.status_code == 200
        assert "X-RateLimit-Limit" not in response.headers
        get_rate_limiter.cache_clear()


class TestCapacity:
    """Tests for refusing new containers on a full host."""

    def test_start_refused_at_container_limit(self, client):
        first_id = start_running(client)
        get_capacity_guard().max_containers = 1

        refused = client.post(
            "/ide/start-container", json={"bucketRef": "bucket-2", "userId": "user-2"}
        )

        assert refused.status_code == 503
        assert refused.json()["error_type"] == "resource_exhausted"
        assert refused.headers["Retry-After"] == "30"

        again = client.post("/ide/start-container", json=START_BODY)
        assert again.status_code == 200
        assert again.json()["containerId"] == first_id
