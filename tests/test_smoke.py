from __future__ import annotations

from pathlib import Path
from tempfile import TemporaryDirectory

from fastapi.testclient import TestClient

from noet.config import Settings
from noet.web import create_app


def test_smoke_create_read_list():
    with TemporaryDirectory() as td:
        notes_path = Path(td) / "notes"
        app = create_app(Settings(notes_path=notes_path))
        client = TestClient(app)

        r = client.get("/api/health")
        assert r.status_code == 200
        assert r.json()["status"] == "ok"
        assert r.json()["service"] == "noet-backend"

        r = client.post("/api/user-1/notes", json={"title": "Hello", "content": "# Hi\nThis is a test note."})
        assert r.status_code == 200
        note = r.json()
        assert note["title"] == "Hello"
        assert "<h1>Hi</h1>" in note["html"]

        r = client.get(f"/api/user-1/notes/{note['id']}")
        assert r.status_code == 200
        assert r.json()["content"] == "# Hi\nThis is a test note."

        r = client.get("/api/user-1/notes")
        assert r.status_code == 200
        data = r.json()
        assert len(data) == 1
        assert data[0]["title"] == "Hello"

        assert (notes_path / "user-1" / note["id"] / "metadata.json").is_file()
        assert (notes_path / "user-1" / note["id"] / "note.md").read_text(encoding="utf-8") == "# Hi\nThis is a test note."
