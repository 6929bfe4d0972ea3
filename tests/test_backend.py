"""
Tests for the Backend Service.
"""

import asyncio

import httpx
import pytest
from fastapi.testclient import TestClient

from shipyard.backend import GREETING, create_app
from shipyard.settings import BackendSettings


@pytest.fixture
def client():
    with TestClient(create_app(BackendSettings())) as client:
        yield client


def test_root_returns_fixed_text(client):
    response = client.get("/")
    assert response.status_code == 200
    assert response.text == "Backend is running from the server demo 2 "
    assert response.headers["content-type"].startswith("text/plain")


def test_root_is_stable_across_calls(client):
    for _ in range(25):
        response = client.get("/")
        assert response.status_code == 200
        assert response.text == GREETING


def test_root_under_concurrency():
    app = create_app(BackendSettings())

    async def hammer():
        transport = httpx.ASGITransport(app=app)
        async with httpx.AsyncClient(transport=transport, base_url="http://backend") as client:
            return await asyncio.gather(*(client.get("/") for _ in range(50)))

    responses = asyncio.run(hammer())
    assert {r.status_code for r in responses} == {200}
    assert {r.text for r in responses} == {GREETING}


def test_unknown_path_is_not_found(client):
    assert client.get("/api/health").status_code == 404


def test_port_defaults_to_3000(monkeypatch):
    monkeypatch.delenv("PORT", raising=False)
    assert BackendSettings().PORT == 3000


def test_port_from_environment(monkeypatch):
    monkeypatch.setenv("PORT", "8081")
    assert BackendSettings().PORT == 8081
