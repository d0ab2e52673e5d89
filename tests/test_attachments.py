from __future__ import annotations

import io
import threading
import time

import pytest
from fastapi.testclient import TestClient

from noet import repo, trash
from noet.attachments import download_headers, safe_filename, save_attachment
from noet.config import Settings
from noet.errors import UploadRejected
from noet.web import create_app

USER = "user-1"


def _upload(client, note_id, name="hello.txt", data=b"hello world", content_type="text/plain"):
    return client.post(
        f"/api/{USER}/notes/{note_id}/attachments",
        files={"file": (name, io.BytesIO(data), content_type)},
    )


def test_upload_download_delete(client, make_note, settings):
    note = make_note(title="with file")

    r = _upload(client, note["id"], name="my notes.txt")
    assert r.status_code == 200
    body = r.json()
    assert body["attachment"]["filename"] == "my_notes.txt"
    assert body["attachment"]["originalName"] == "my notes.txt"
    assert body["attachment"]["size"] == 11
    assert body["attachment"]["type"] == "text/plain"
    assert body["relativePath"] == "./attachments/my_notes.txt"

    stored = client.get(f"/api/{USER}/notes/{note['id']}").json()
    assert [a["filename"] for a in stored["attachments"]] == ["my_notes.txt"]
    assert stored["version"] == 2

    r = client.get(f"/api/{USER}/notes/{note['id']}/attachments/my_notes.txt")
    assert r.status_code == 200
    assert r.content == b"hello world"
    assert r.headers["content-type"].startswith("text/plain")
    assert r.headers["content-disposition"].startswith("inline")
    assert r.headers["x-content-type-options"] == "nosniff"

    r = client.delete(f"/api/{USER}/notes/{note['id']}/attachments/my_notes.txt")
    assert r.status_code == 200
    assert r.json() == {"success": True}
    assert client.get(f"/api/{USER}/notes/{note['id']}/attachments/my_notes.txt").status_code == 404
    assert client.get(f"/api/{USER}/notes/{note['id']}").json()["attachments"] == []
    assert not (settings.notes_path / USER / note["id"] / "attachments" / "my_notes.txt").exists()


def test_reupload_replaces_record(client, make_note):
    note = make_note()
    _upload(client, note["id"], data=b"one")
    _upload(client, note["id"], data=b"second")
    attachments = client.get(f"/api/{USER}/notes/{note['id']}").json()["attachments"]
    assert len(attachments) == 1
    assert attachments[0]["size"] == 6


def test_disallowed_type_is_rejected(client, make_note):
    note = make_note()
    r = _upload(client, note["id"], name="tool.exe", content_type="application/x-msdownload")
    assert r.status_code == 400
    assert "not allowed" in r.json()["error"]
    assert client.get(f"/api/{USER}/notes/{note['id']}").json()["attachments"] == []


def test_oversized_upload_leaves_nothing_behind(tmp_path):
    notes_path = tmp_path / "notes"
    client = TestClient(create_app(Settings(notes_path=notes_path, max_upload_bytes=8)))
    note = client.post(f"/api/{USER}/notes", json={"title": "small"}).json()

    r = _upload(client, note["id"], data=b"x" * 64)
    assert r.status_code == 400
    assert r.json()["error"].startswith("File too large")

    folder = notes_path / USER / note["id"] / "attachments"
    assert not folder.exists() or list(folder.iterdir()) == []
    assert client.get(f"/api/{USER}/notes/{note['id']}").json()["attachments"] == []


def test_upload_to_missing_note(client):
    assert _upload(client, "missing").status_code == 404


def test_download_only_serves_attachments(client, make_note):
    note = make_note()
    assert client.get(f"/api/{USER}/notes/{note['id']}/attachments/metadata.json").status_code == 404


def test_safe_filename():
    assert safe_filename("report (final).pdf") == "report__final_.pdf"
    assert safe_filename("ünïcode.md") == "_n_code.md"
    with pytest.raises(UploadRejected):
        safe_filename("..")
    with pytest.raises(UploadRejected):
        safe_filename("")


def test_download_headers():
    assert download_headers("a.png") == ("image/png", 'inline; filename="a.png"')
    media_type, disposition = download_headers("sheet.xlsx")
    assert disposition == 'attachment; filename="sheet.xlsx"'
    assert media_type != "text/html"


def test_empty_upload_is_rejected(client, make_note, settings):
    note = make_note()
    r = _upload(client, note["id"], name="e.txt", data=b"")
    assert r.status_code == 400
    assert r.json() == {"error": "No file uploaded"}
    assert client.get(f"/api/{USER}/notes/{note['id']}").json()["attachments"] == []
    assert not (settings.notes_path / USER / note["id"] / "attachments" / "e.txt").exists()


def test_purge_waits_for_running_upload(store):
    note = repo.create_note(store, USER, {"title": "doomed"})
    trash.soft_delete(store, USER, note["id"])
    purger = threading.Thread(target=trash.purge, args=(store, USER, note["id"]))

    class SlowStream:
        def __init__(self) -> None:
            self.chunks = [b"first", b"second"]
            self.started = False

        def read(self, size: int = -1) -> bytes:
            if not self.started:
                self.started = True
                purger.start()
                time.sleep(0.05)
            return self.chunks.pop(0) if self.chunks else b""

    record = save_attachment(store, USER, note["id"], "a.txt", "text/plain", SlowStream(), 1024)
    purger.join(timeout=5)

    assert record["size"] == 11
    assert not purger.is_alive()
    assert not store.note_dir(USER, note["id"]).exists()
