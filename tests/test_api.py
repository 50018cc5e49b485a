"""Tests for the HTTP API."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
from fastapi.testclient import TestClient

from driveshelf.api import file_routes, sync_routes
from driveshelf.main import app
from driveshelf.sync.engine import SyncEngine

if TYPE_CHECKING:
    from driveshelf.storage.records import RecordStore
    from driveshelf.sync.drive import DriveEntry


@pytest.fixture
def client(store: RecordStore, engine: SyncEngine, monkeypatch: pytest.MonkeyPatch) -> TestClient:
    monkeypatch.setattr(file_routes, "record_store", store)
    monkeypatch.setattr(sync_routes, "sync_engine", engine)
    # No context manager: the lifespan (real database, auto-sync) stays off.
    return TestClient(app)


class TestFileRoutes:
    def test_write_then_read(self, client: TestClient) -> None:
        res = client.put("/api/files/misc/Notes/a.md", json={"content": "hello", "tags": ["t"]})
        assert res.status_code == 200
        assert res.json()["dirty"] is True

        res = client.get("/api/files/misc/Notes/a.md")
        assert res.status_code == 200
        body = res.json()
        assert body["content"] == "hello"
        assert body["tags"] == ["t"]
        assert body["type"] == "file"

    def test_read_missing_is_404(self, client: TestClient) -> None:
        assert client.get("/api/files/nope.md").status_code == 404

    def test_list_by_prefix(self, client: TestClient) -> None:
        client.put("/api/files/misc/a.md", json={"content": "a"})
        client.put("/api/files/history/b.md", json={"content": "b"})

        res = client.get("/api/files", params={"prefix": "misc"})

        assert [f["path"] for f in res.json()] == ["misc/a.md"]

    def test_metadata_on_missing_file_is_404(self, client: TestClient) -> None:
        res = client.patch("/api/files/ghost.md/metadata", json={"tags": ["x"]})
        assert res.status_code == 404

    def test_by_tag(self, client: TestClient) -> None:
        client.put("/api/files/misc/a.md", json={"content": "a"})
        client.patch("/api/files/misc/a.md/metadata", json={"tags": ["urgent"]})

        res = client.get("/api/files/by-tag/urgent")

        assert [f["path"] for f in res.json()] == ["misc/a.md"]

    def test_append(self, client: TestClient) -> None:
        client.put("/api/files/history/log.md", json={"content": "one"})
        client.post("/api/files/history/log.md/append", json={"text": "two"})
        assert client.get("/api/files/history/log.md").json()["content"] == "one\n\ntwo"

    def test_rename_folder(self, client: TestClient) -> None:
        client.put("/api/files/misc/Notes/a.md", json={"content": "a"})

        res = client.post("/api/files/misc/Notes/rename", json={"new_path": "archive/Notes"})

        assert res.status_code == 200
        assert client.get("/api/files/archive/Notes/a.md").status_code == 200
        assert client.get("/api/files/misc/Notes/a.md").status_code == 404

    def test_rename_into_itself_is_400(self, client: TestClient) -> None:
        client.post("/api/folders/a")
        res = client.post("/api/files/a/rename", json={"new_path": "a/b"})
        assert res.status_code == 400

    def test_delete(self, client: TestClient) -> None:
        client.put("/api/files/misc/Notes/a.md", json={"content": "a"})

        res = client.delete("/api/files/misc/Notes")

        assert sorted(res.json()["deleted"]) == ["misc/Notes", "misc/Notes/a.md"]
        assert client.get("/api/files/misc/Notes/a.md").status_code == 404
        assert client.delete("/api/files/never.md").status_code == 404

    def test_delete_accepts_trailing_slash(self, client: TestClient) -> None:
        client.put("/api/files/misc/a.md", json={"content": "a"})

        res = client.delete("/api/files/misc/a.md/")

        assert res.status_code == 200
        assert res.json()["deleted"] == ["misc/a.md"]

    def test_rename_onto_existing_is_400(self, client: TestClient) -> None:
        client.put("/api/files/misc/a.md", json={"content": "a"})
        client.put("/api/files/misc/b.md", json={"content": "b"})

        res = client.post("/api/files/misc/a.md/rename", json={"new_path": "misc/b.md"})

        assert res.status_code == 400
        assert client.get("/api/files/misc/b.md").json()["content"] == "b"

    def test_create_folder(self, client: TestClient) -> None:
        res = client.post("/api/folders/projects/2024")
        assert res.status_code == 200
        assert res.json()["type"] == "folder"


class TestSyncRoutes:
    def test_trigger_sync(self, client: TestClient, root: DriveEntry) -> None:
        client.put("/api/files/misc/a.md", json={"content": "a"})

        res = client.post("/api/sync")

        assert res.status_code == 200
        assert res.json()["started"] is True
        assert res.json()["log"][-1] == "Done"
        assert client.get("/api/files/misc/a.md").json()["dirty"] is False

    def test_status(self, client: TestClient) -> None:
        res = client.get("/api/sync/status")
        assert res.status_code == 200
        assert res.json()["state"] == "idle"
        assert res.json()["initialized"] is True

    def test_reset(self, client: TestClient, store: RecordStore) -> None:
        store.save_file("misc/a.md", "a")
        store.mark_synced("misc/a.md", "r1")

        res = client.post("/api/sync/reset")

        assert res.json() == {"records_marked_dirty": 2}
        assert store.get("misc/a.md").remote_id is None

    def test_uninitialized_engine(self, client: TestClient, store: RecordStore, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(sync_routes, "sync_engine", SyncEngine(store=store))
        assert client.post("/api/sync").status_code == 400
