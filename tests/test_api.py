#!/usr/bin/env python3
"""
Tests for the operator HTTP endpoints
"""

import sys
import pytest
from pathlib import Path
from fastapi.testclient import TestClient

# Add the project root to Python path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from main import app
from models import JobKind


@pytest.fixture
def client(pipeline):
    # Startup events do not run without the context manager; the pipeline is injected directly
    app.state.pipeline = pipeline
    yield TestClient(app)
    app.state.pipeline = None


class TestOperatorEndpoints:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_trigger_conflict_returns_409(self, client, pipeline):
        lease = pipeline.slot.try_acquire(JobKind.FULL)

        for path in ("/scrape/full", "/scrape/incremental", "/scrape/prices"):
            response = client.post(path)
            assert response.status_code == 409
            assert "already running: full" in response.json()["detail"]

        status = client.get("/scraper/status").json()
        assert status["current_job"] == "full"
        pipeline.slot.release(lease)

    def test_status_and_stats(self, client):
        status = client.get("/scraper/status")
        assert status.status_code == 200
        assert set(status.json()["schedules"]) == {"full", "incremental", "price_update", "cleanup", "proxy_health"}

        stats = client.get("/scraper/stats")
        assert stats.status_code == 200
        assert stats.json()["listings"]["total"] == 0

    def test_add_and_list_proxies(self, client):
        response = client.post("/proxies", json={"address": "proxy.test", "port": 3128, "username": "u", "password": "secret"})
        assert response.status_code == 201
        assert "password" not in response.json()

        listed = client.get("/proxies").json()
        assert listed["stats"]["total_proxies"] == 1
        assert listed["proxies"][0]["address"] == "proxy.test"
        assert "password" not in listed["proxies"][0]

    def test_add_proxy_validates_port(self, client):
        response = client.post("/proxies", json={"address": "proxy.test", "port": 70000})
        assert response.status_code == 422

    def test_cleanup_endpoint(self, client):
        response = client.post("/maintenance/cleanup")
        assert response.status_code == 200
        assert response.json()["errors"] == {}

    def test_sessions(self, client):
        assert client.get("/sessions").json() == []
        assert client.get("/sessions/999").status_code == 404

    def test_uninitialized_pipeline(self, client):
        app.state.pipeline = None
        assert client.get("/scraper/status").status_code == 503
