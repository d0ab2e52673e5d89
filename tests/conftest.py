from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from noet.config import Settings
from noet.storage import FileStore
from noet.web import create_app

USER = "user-1"


@pytest.fixture
def settings(tmp_path):
    return Settings(notes_path=tmp_path / "notes")


@pytest.fixture
def client(settings):
    return TestClient(create_app(settings))


@pytest.fixture
def store(tmp_path):
    return FileStore(tmp_path / "notes")


@pytest.fixture
def make_note(client):
    def _make(**fields):
        r = client.post(f"/api/{USER}/notes", json=fields)
        assert r.status_code == 200, r.text
        return r.json()

    return _make
