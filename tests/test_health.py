"""Unit tests for health.py - Probe endpoints."""

import pytest
from fastapi.testclient import TestClient

from health import HealthServer, create_app


class TestProbes:
    def test_healthz(self):
        client = TestClient(create_app(lambda: False))

        response = client.get("/healthz")

        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_readyz_follows_ready_check(self):
        ready = {"value": False}
        client = TestClient(create_app(lambda: ready["value"]))

        response = client.get("/readyz")
        assert response.status_code == 503
        assert response.json()["detail"] == "controller not ready"

        ready["value"] = True
        assert client.get("/readyz").status_code == 200


@pytest.mark.asyncio
class TestHealthServer:
    async def test_stop_before_start(self):
        server = HealthServer(lambda: True, port=0, log_level="WARNING")

        await server.stop()

        assert server.server is None
        assert server.log_level == "warning"
