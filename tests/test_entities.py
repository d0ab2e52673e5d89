from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import pytest
from fastapi.testclient import TestClient

from noet import repo
from noet.config import Settings
from noet.web import create_app

USER = "user-1"


@pytest.mark.parametrize("kind,color", [("tags", "#10B981"), ("notebooks", "#3B82F6"), ("folders", "#8B5CF6")])
def test_entity_crud(client, kind, color):
    r = client.post(f"/api/{USER}/{kind}", json={"name": "  Work  "})
    assert r.status_code == 200
    entity = r.json()
    assert entity["name"] == "Work"
    assert entity["color"] == color
    assert entity["sortOrder"] == 0
    assert entity["noteCount"] == 0

    second = client.post(f"/api/{USER}/{kind}", json={"name": "Home", "color": "#000000"}).json()
    assert second["sortOrder"] == 1
    assert second["color"] == "#000000"

    r = client.put(f"/api/{USER}/{kind}/{entity['id']}", json={"name": "Job", "sortOrder": 99})
    assert r.status_code == 200
    assert r.json()["name"] == "Job"
    assert r.json()["sortOrder"] == 0

    assert client.get(f"/api/{USER}/{kind}/{entity['id']}").json()["name"] == "Job"
    assert [e["name"] for e in client.get(f"/api/{USER}/{kind}").json()] == ["Job", "Home"]

    r = client.delete(f"/api/{USER}/{kind}/{entity['id']}")
    assert r.status_code == 200
    assert r.json() == {"success": True}
    assert client.get(f"/api/{USER}/{kind}/{entity['id']}").status_code == 404
    assert [e["id"] for e in client.get(f"/api/{USER}/{kind}").json()] == [second["id"]]


def test_name_is_required(client):
    assert client.post(f"/api/{USER}/tags", json={}).status_code == 400
    assert client.post(f"/api/{USER}/tags", json={"name": "   "}).status_code == 400
    tag = client.post(f"/api/{USER}/tags", json={"name": "ok"}).json()
    assert client.put(f"/api/{USER}/tags/{tag['id']}", json={"name": ""}).status_code == 400


def test_unknown_collection_is_404(client):
    assert client.get(f"/api/{USER}/widgets").status_code == 404
    assert client.post(f"/api/{USER}/widgets", json={"name": "x"}).status_code == 404


def test_missing_entity_is_404(client):
    assert client.get(f"/api/{USER}/tags/nope").status_code == 404
    assert client.put(f"/api/{USER}/tags/nope", json={"name": "x"}).status_code == 404
    assert client.delete(f"/api/{USER}/tags/nope").status_code == 404


def test_note_counts_skip_trashed_notes(client, make_note):
    tag = client.post(f"/api/{USER}/tags", json={"name": "urgent"}).json()
    notebook = client.post(f"/api/{USER}/notebooks", json={"name": "NB"}).json()

    make_note(tags=[tag["id"]], notebook=notebook["id"])
    make_note(tags=["urgent"])
    trashed = make_note(tags=[tag["id"]], notebook=notebook["id"])
    client.delete(f"/api/{USER}/notes/{trashed['id']}")

    assert client.get(f"/api/{USER}/tags/{tag['id']}").json()["noteCount"] == 2
    assert client.get(f"/api/{USER}/notebooks").json()[0]["noteCount"] == 1


def test_nested_parent_must_exist(client):
    r = client.post(f"/api/{USER}/folders", json={"name": "child", "parentId": "ghost"})
    assert r.status_code == 400

    parent = client.post(f"/api/{USER}/folders", json={"name": "parent"}).json()
    child = client.post(f"/api/{USER}/folders", json={"name": "child", "parentId": parent["id"]}).json()
    assert child["parentId"] == parent["id"]
    assert child["sortOrder"] == 0


def test_deleting_parent_lifts_children(client):
    root = client.post(f"/api/{USER}/notebooks", json={"name": "root"}).json()
    mid = client.post(f"/api/{USER}/notebooks", json={"name": "mid", "parentId": root["id"]}).json()
    leaf = client.post(f"/api/{USER}/notebooks", json={"name": "leaf", "parentId": mid["id"]}).json()

    client.delete(f"/api/{USER}/notebooks/{mid['id']}")
    lifted = client.get(f"/api/{USER}/notebooks/{leaf['id']}").json()
    assert lifted["parentId"] == root["id"]


def test_ignore_policy_leaves_references(client, make_note):
    notebook = client.post(f"/api/{USER}/notebooks", json={"name": "NB"}).json()
    note = make_note(notebook=notebook["id"])
    assert client.delete(f"/api/{USER}/notebooks/{notebook['id']}").status_code == 200
    assert client.get(f"/api/{USER}/notes/{note['id']}").json()["notebook"] == notebook["id"]


def test_cascade_policy_clears_references(tmp_path):
    client = TestClient(create_app(Settings(notes_path=tmp_path / "notes", delete_policy="cascade")))
    tag = client.post(f"/api/{USER}/tags", json={"name": "urgent"}).json()
    folder = client.post(f"/api/{USER}/folders", json={"name": "F"}).json()
    note = client.post(
        f"/api/{USER}/notes",
        json={"tags": [tag["id"], "keep", {"id": tag["id"], "name": "urgent"}], "folder": folder["id"]},
    ).json()

    client.delete(f"/api/{USER}/tags/{tag['id']}")
    client.delete(f"/api/{USER}/folders/{folder['id']}")

    after = client.get(f"/api/{USER}/notes/{note['id']}").json()
    assert after["tags"] == ["keep"]
    assert after["folder"] is None
    assert after["version"] == 3


def test_block_policy_refuses_referenced_delete(tmp_path):
    client = TestClient(create_app(Settings(notes_path=tmp_path / "notes", delete_policy="block")))
    tag = client.post(f"/api/{USER}/tags", json={"name": "urgent"}).json()
    note = client.post(f"/api/{USER}/notes", json={"tags": ["urgent"]}).json()

    r = client.delete(f"/api/{USER}/tags/{tag['id']}")
    assert r.status_code == 409
    assert client.get(f"/api/{USER}/tags/{tag['id']}").status_code == 200

    client.put(f"/api/{USER}/notes/{note['id']}", json={"tags": []})
    assert client.delete(f"/api/{USER}/tags/{tag['id']}").status_code == 200


def test_entities_survive_restart(tmp_path):
    settings = Settings(notes_path=tmp_path / "notes")
    first = TestClient(create_app(settings))
    tag = first.post(f"/api/{USER}/tags", json={"name": "durable"}).json()

    second = TestClient(create_app(settings))
    assert second.get(f"/api/{USER}/tags/{tag['id']}").json()["name"] == "durable"
    assert (tmp_path / "notes" / USER / "tags.json").is_file()


def test_mistyped_entity_fields_are_rejected(client):
    assert client.post(f"/api/{USER}/tags", json={"name": "a", "color": 5}).status_code == 400
    assert client.post(f"/api/{USER}/tags", json={"name": 5}).status_code == 400
    assert client.post(f"/api/{USER}/notebooks", json={"name": "nb", "description": ["x"]}).status_code == 400
    assert client.get(f"/api/{USER}/tags").json() == []

    tag = client.post(f"/api/{USER}/tags", json={"name": "ok"}).json()
    assert client.put(f"/api/{USER}/tags/{tag['id']}", json={"color": {"r": 1}}).status_code == 400
    assert client.put(f"/api/{USER}/tags/{tag['id']}", json={"name": 3}).status_code == 400

    listed = client.get(f"/api/{USER}/tags")
    assert listed.status_code == 200
    assert listed.json()[0]["color"] == "#10B981"


def test_concurrent_creates_keep_every_entity(store):
    with ThreadPoolExecutor(max_workers=8) as pool:
        created = list(pool.map(lambda i: repo.create_entity(store, USER, "tags", {"name": f"t{i}"}), range(20)))

    stored = repo.list_entities(store, USER, "tags")
    assert {e["id"] for e in stored} == {e["id"] for e in created}
    assert sorted(e["sortOrder"] for e in stored) == list(range(20))
