"""SQLite-specific behavior: persistence, blob offload, schema."""

import json
import sqlite3

import pytest

from hub_mcp.blob_store import FileBlobStore
from hub_mcp.config import HubConfig
from hub_mcp.memory_store import MemoryStore
from hub_mcp.models import ArtifactCreateInput
from hub_mcp.sqlite_store import SCHEMA_VERSION, SQLiteStore
from hub_mcp.store import create_store


def _raw_artifact_row(db_path, artifact_id):
    conn = sqlite3.connect(str(db_path))
    conn.row_factory = sqlite3.Row
    try:
        return conn.execute(
            "SELECT content_text, content_blob_key FROM hub_artifacts WHERE id = ?",
            (artifact_id,),
        ).fetchone()
    finally:
        conn.close()


def _blob_files(blobs):
    return sorted(p.name for p in blobs.root.rglob("*") if p.is_file())


class TestPersistence:
    def test_data_survives_reopen(self, tmp_path):
        db = tmp_path / "hub.db"
        store = SQLiteStore(db)
        store.upsert_memory("k", "v", ["t"])
        run = store.start_run("r")
        store.add_run_step(run.id, "note", "first")
        store.close()

        reopened = SQLiteStore(db)
        try:
            assert reopened.get_memory("k").value == "v"
            steps = reopened.get_run(run.id).steps
            assert [s.message for s in steps] == ["first"]

            # Sequence continues after reopen
            reopened.add_run_step(run.id, "note", "second")
            steps = reopened.get_run(run.id).steps
            assert [s.message for s in steps] == ["first", "second"]
            assert steps[0].ts < steps[1].ts
        finally:
            reopened.close()

    def test_schema_version_recorded(self, tmp_path):
        store = SQLiteStore(tmp_path / "hub.db")
        try:
            row = store.sqlite_conn.execute(
                "SELECT value FROM hub_meta WHERE key = 'schema_version'"
            ).fetchone()
            assert row["value"] == SCHEMA_VERSION
        finally:
            store.close()

    def test_wal_mode(self, tmp_path):
        store = SQLiteStore(tmp_path / "hub.db")
        try:
            mode = store.sqlite_conn.execute("PRAGMA journal_mode;").fetchone()[0]
            assert mode.lower() == "wal"
        finally:
            store.close()

    def test_close_is_idempotent(self, tmp_path):
        store = SQLiteStore(tmp_path / "hub.db")
        store.close()
        store.close()


class TestBlobOffload:
    @pytest.fixture
    def blobs(self, tmp_path):
        return FileBlobStore(tmp_path / "blobs")

    def test_large_artifact_offloaded(self, tmp_path, blobs):
        """Bodies over the threshold live in the blob store, not the row."""
        db = tmp_path / "hub.db"
        store = SQLiteStore(db, blobs=blobs)
        body = "x" * 60_000
        try:
            artifact = store.create_artifact(
                ArtifactCreateInput(type="export", content_type="text/plain", content_text=body)
            )
            assert artifact.content_text == body

            row = _raw_artifact_row(db, artifact.id)
            assert row["content_text"] is None
            assert row["content_blob_key"] == f"artifacts/{artifact.id}.txt"
            assert blobs.get_text(row["content_blob_key"]) == body

            assert store.get_artifact(artifact.id).content_text == body
        finally:
            store.close()

    def test_list_omits_offloaded_body(self, tmp_path, blobs):
        store = SQLiteStore(tmp_path / "hub.db", blobs=blobs)
        try:
            store.create_artifact(ArtifactCreateInput(type="export", content_text="y" * 60_000))
            listed = store.list_artifacts()
            assert listed[0].content_text is None
        finally:
            store.close()

    def test_small_artifact_stays_inline(self, tmp_path, blobs):
        db = tmp_path / "hub.db"
        store = SQLiteStore(db, blobs=blobs)
        try:
            artifact = store.create_artifact(
                ArtifactCreateInput(type="note", content_text="short")
            )
            row = _raw_artifact_row(db, artifact.id)
            assert row["content_text"] == "short"
            assert row["content_blob_key"] is None
        finally:
            store.close()

    def test_inline_without_blob_store(self, tmp_path):
        db = tmp_path / "hub.db"
        store = SQLiteStore(db)
        body = "z" * 60_000
        try:
            artifact = store.create_artifact(ArtifactCreateInput(type="export", content_text=body))
            row = _raw_artifact_row(db, artifact.id)
            assert row["content_text"] == body
            assert row["content_blob_key"] is None
        finally:
            store.close()

    def test_failed_insert_removes_offloaded_body(self, tmp_path, blobs, monkeypatch):
        store = SQLiteStore(tmp_path / "hub.db", blobs=blobs)

        def disk_error(sql, params=()):
            raise sqlite3.OperationalError("disk I/O error")

        monkeypatch.setattr(store, "_write", disk_error)
        try:
            with pytest.raises(sqlite3.OperationalError):
                store.create_artifact(ArtifactCreateInput(type="export", content_text="x" * 60_000))
            assert _blob_files(blobs) == []
        finally:
            store.close()

    def test_lost_dedup_race_removes_offloaded_body(self, tmp_path, blobs, monkeypatch):
        """A concurrent writer storing the same event first leaves no orphan behind."""
        store = SQLiteStore(tmp_path / "hub.db", blobs=blobs)
        try:
            first = store.create_artifact(
                ArtifactCreateInput(type="export", content_text="x" * 60_000, event_id="evt-1")
            )

            real_find = store._find_by_event
            calls = []

            def stale_then_real(table, event_id):
                # The first lookup misses, as if the other writer had not committed yet.
                calls.append(event_id)
                return None if len(calls) == 1 else real_find(table, event_id)

            monkeypatch.setattr(store, "_find_by_event", stale_then_real)

            again = store.create_artifact(
                ArtifactCreateInput(type="export", content_text="y" * 60_000, event_id="evt-1")
            )

            assert again.id == first.id
            assert _blob_files(blobs) == [f"{first.id}.txt", f"{first.id}.txt.meta.json"]
        finally:
            store.close()

    def test_threshold_is_configurable(self, tmp_path, blobs):
        db = tmp_path / "hub.db"
        store = SQLiteStore(db, blobs=blobs, offload_threshold=10)
        try:
            artifact = store.create_artifact(
                ArtifactCreateInput(type="note", content_text="eleven chars")
            )
            assert _raw_artifact_row(db, artifact.id)["content_blob_key"] is not None
        finally:
            store.close()


class TestFileBlobStore:
    def test_round_trip_with_content_type_sidecar(self, tmp_path):
        blobs = FileBlobStore(tmp_path)
        blobs.put_text("artifacts/a.txt", "héllo", "text/plain")

        assert blobs.get_text("artifacts/a.txt") == "héllo"
        meta = json.loads((tmp_path / "artifacts" / "a.txt.meta.json").read_text())
        assert meta == {"content_type": "text/plain"}

    def test_rejects_keys_outside_root(self, tmp_path):
        blobs = FileBlobStore(tmp_path / "root")
        with pytest.raises(ValueError):
            blobs.put_text("../escape.txt", "x", "text/plain")

    def test_delete_removes_body_and_sidecar(self, tmp_path):
        blobs = FileBlobStore(tmp_path)
        blobs.put_text("artifacts/a.txt", "body", "text/plain")

        blobs.delete("artifacts/a.txt")
        blobs.delete("artifacts/a.txt")

        assert _blob_files(blobs) == []


class TestCreateStore:
    def test_memory_backend(self, config):
        assert isinstance(create_store(config), MemoryStore)

    def test_sqlite_backend_with_file_blobs(self, config, tmp_path):
        config.store_backend = "sqlite"
        config.blob_folder = str(tmp_path / "blobs")
        store = create_store(config)
        try:
            assert isinstance(store, SQLiteStore)
            assert isinstance(store.blobs, FileBlobStore)
            assert store.sqlite_path == tmp_path / "hub.db"
        finally:
            store.close()

    def test_sqlite_backend_without_blobs(self, config):
        config.store_backend = "sqlite"
        store = create_store(config)
        try:
            assert store.blobs is None
        finally:
            store.close()

    def test_r2_preferred_when_configured(self, tmp_path, monkeypatch):
        """Full R2 credentials select the object store over a local folder."""
        created = {}

        class FakeR2:
            def __init__(self, **kwargs):
                created.update(kwargs)

        monkeypatch.setattr("hub_mcp.blob_store.R2BlobStore", FakeR2)
        config = HubConfig(
            data_folder=tmp_path,
            store_backend="sqlite",
            sqlite_path=tmp_path / "hub.db",
            blob_folder=str(tmp_path / "blobs"),
            r2_endpoint="https://acct.r2.cloudflarestorage.com",
            r2_access_key_id="id",
            r2_secret_access_key="secret",
            r2_bucket="hub",
        )
        store = create_store(config)
        try:
            assert isinstance(store.blobs, FakeR2)
            assert created["bucket"] == "hub"
        finally:
            store.close()
