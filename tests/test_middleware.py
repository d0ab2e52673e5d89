from __future__ import annotations

import os

from fastapi.testclient import TestClient

from noet.config import Settings
from noet.web import create_app


def test_security_headers(client):
    r = client.get("/api/health")
    assert r.headers["x-content-type-options"] == "nosniff"
    assert r.headers["x-frame-options"] == "SAMEORIGIN"
    assert r.headers["referrer-policy"] == "no-referrer"
    assert "default-src 'self'" in r.headers["content-security-policy"]


def test_cors_allows_any_origin(client):
    r = client.get("/api/health", headers={"Origin": "http://localhost:3001"})
    assert r.headers["access-control-allow-origin"] == "*"


def test_rate_limit(tmp_path):
    client = TestClient(create_app(Settings(notes_path=tmp_path / "notes", rate_limit_max=3)))
    for expected_remaining in ("2", "1", "0"):
        r = client.get("/api/health")
        assert r.status_code == 200
        assert r.headers["ratelimit-remaining"] == expected_remaining

    r = client.get("/api/health")
    assert r.status_code == 429
    assert r.json() == {"error": "Too many requests from this IP, please try again later."}
    assert "retry-after" in r.headers


def test_body_size_limit(tmp_path):
    client = TestClient(create_app(Settings(notes_path=tmp_path / "notes", max_body_bytes=64)))
    r = client.post("/api/user-1/notes", json={"title": "x", "content": "y" * 500})
    assert r.status_code == 413
    assert r.json() == {"error": "Request body too large"}


def test_health_and_config(client, settings):
    health = client.get("/api/health").json()
    assert health["status"] == "ok"
    assert health["environment"] == "development"
    assert health["notesPath"] == str(settings.notes_path)

    config = client.get("/api/config").json()
    assert config["maxFileSize"] == settings.max_upload_bytes
    assert "pdf" in config["allowedFileTypes"]
    assert config["server"]["configuredPort"] == settings.port


def test_storage_validate(client, tmp_path):
    r = client.post("/api/storage/validate", json={"path": str(tmp_path / "missing")})
    assert r.json()["valid"] is False
    r = client.post("/api/storage/validate", json={"path": str(tmp_path)})
    assert r.json()["valid"] is True
    assert client.post("/api/storage/validate", json={}).status_code == 400


def test_storage_path_switch(client, tmp_path):
    target = tmp_path / "other"
    r = client.post("/api/storage/path", json={"path": str(target)})
    assert r.status_code == 200
    assert target.is_dir()
    client.post("/api/user-1/notes", json={"title": "moved"})
    assert any((target / "user-1").iterdir())


def test_unhandled_error_is_500(tmp_path):
    app = create_app(Settings(notes_path=tmp_path / "notes"))

    @app.get("/api/boom")
    def boom():
        raise RuntimeError("kaput")

    r = TestClient(app, raise_server_exceptions=False).get("/api/boom")
    assert r.status_code == 500
    assert r.json() == {"error": "Internal server error"}


def test_chunked_body_over_limit_is_rejected(tmp_path):
    client = TestClient(create_app(Settings(notes_path=tmp_path / "notes", max_body_bytes=64)))
    body = iter([b'{"title": "x", "content": "', b"y" * 500, b'"}'])
    r = client.post("/api/user-1/notes", content=body, headers={"Content-Type": "application/json"})
    assert r.status_code == 413
    assert r.json() == {"error": "Request body too large"}
    assert client.get("/api/user-1/notes").json() == []


def test_chunked_body_under_limit_passes(client):
    body = iter([b'{"title": "streamed"}'])
    r = client.post("/api/user-1/notes", content=body, headers={"Content-Type": "application/json"})
    assert r.status_code == 200
    assert r.json()["title"] == "streamed"


def test_unknown_route_uses_error_shape(client):
    r = client.get("/api/user-1/notes/a/b/c/d")
    assert r.status_code == 404
    assert r.json() == {"error": "Not Found"}


def test_health_reports_memory(client):
    memory = client.get("/api/health").json()["memory"]
    assert memory["pid"] > 0
    if os.name == "posix":
        assert memory["maxRss"] > 0
