"""
Durable store backend.

Keeps entity metadata in SQLite and, when a blob store is configured,
offloads artifact bodies longer than the offload threshold to it. The row
then carries only the blob key; ``get_artifact`` fetches the body back so
callers never see the difference.
"""

from pathlib import Path
from typing import Any, Dict, List, Optional
import json
import logging
import sqlite3
import threading
from datetime import datetime

from .blob_store import BlobStore
from .config import (
    ARTIFACT_LIST_LIMIT,
    ARTIFACT_OFFLOAD_THRESHOLD,
    LINK_LIST_LIMIT,
    MEMORY_SEARCH_LIMIT,
    RUN_LIST_DEFAULT_LIMIT,
)
from .errors import InvalidParamsError, NotFoundError, RunStateError
from .memory_store import memory_matches
from .models import (
    TERMINAL_RUN_STATUSES,
    Artifact,
    ArtifactCreateInput,
    Connection,
    EntityRef,
    Link,
    LinkAddInput,
    LinkListFilter,
    MemoryItem,
    Run,
    RunStep,
    new_id,
    next_step_timestamp,
    utc_now,
)
from .store import CONNECTION_FIELDS, HubStore

SCHEMA_VERSION = "1.0"

SCHEMA = """
    CREATE TABLE IF NOT EXISTS hub_memory (
        id TEXT PRIMARY KEY,
        key TEXT UNIQUE NOT NULL,
        value TEXT NOT NULL,
        tags TEXT NOT NULL DEFAULT '[]',  -- JSON array
        event_id TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_memory_updated ON hub_memory(updated_at);

    CREATE TABLE IF NOT EXISTS hub_artifacts (
        id TEXT PRIMARY KEY,
        type TEXT NOT NULL,
        name TEXT,
        source TEXT,
        content_type TEXT,
        content_text TEXT,
        content_blob_key TEXT,  -- set exactly when the body was offloaded
        metadata TEXT,  -- JSON object
        event_id TEXT,
        created_at TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_artifacts_type ON hub_artifacts(type);
    CREATE UNIQUE INDEX IF NOT EXISTS idx_artifacts_event
        ON hub_artifacts(event_id) WHERE event_id IS NOT NULL;

    CREATE TABLE IF NOT EXISTS hub_links (
        id TEXT PRIMARY KEY,
        from_type TEXT NOT NULL,
        from_id TEXT NOT NULL,
        to_type TEXT NOT NULL,
        to_id TEXT NOT NULL,
        label TEXT,
        url TEXT,
        event_id TEXT,
        created_at TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_links_from ON hub_links(from_type, from_id);
    CREATE INDEX IF NOT EXISTS idx_links_to ON hub_links(to_type, to_id);
    CREATE UNIQUE INDEX IF NOT EXISTS idx_links_event
        ON hub_links(event_id) WHERE event_id IS NOT NULL;

    CREATE TABLE IF NOT EXISTS hub_runs (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        status TEXT NOT NULL,
        event_id TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );

    CREATE INDEX IF NOT EXISTS idx_runs_status ON hub_runs(status);
    CREATE UNIQUE INDEX IF NOT EXISTS idx_runs_event
        ON hub_runs(event_id) WHERE event_id IS NOT NULL;

    CREATE TABLE IF NOT EXISTS hub_run_steps (
        id TEXT PRIMARY KEY,
        run_id TEXT NOT NULL REFERENCES hub_runs(id) ON DELETE CASCADE,
        seq INTEGER NOT NULL,
        ts TEXT NOT NULL,
        kind TEXT NOT NULL,
        message TEXT NOT NULL,
        data TEXT,  -- JSON object
        event_id TEXT
    );

    CREATE UNIQUE INDEX IF NOT EXISTS idx_run_steps_seq ON hub_run_steps(run_id, seq);
    CREATE UNIQUE INDEX IF NOT EXISTS idx_run_steps_event
        ON hub_run_steps(event_id) WHERE event_id IS NOT NULL;

    CREATE TABLE IF NOT EXISTS hub_connections (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        type TEXT NOT NULL,
        endpoint TEXT NOT NULL,
        api_key TEXT,
        enabled INTEGER NOT NULL DEFAULT 1,
        metadata TEXT,  -- JSON object
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    );

    CREATE TABLE IF NOT EXISTS hub_meta (
        key TEXT PRIMARY KEY,
        value TEXT,
        updated_at TEXT
    );
"""


def _loads(raw: Optional[str], default=None):
    return json.loads(raw) if raw else default


def _dumps(value) -> Optional[str]:
    return json.dumps(value) if value is not None else None


def _ts(raw: str) -> datetime:
    return datetime.fromisoformat(raw)


class SQLiteStore(HubStore):
    """
    SQLite-backed store.

    One connection shared across threads, guarded by a lock; every public
    method is its own transaction and rolls back on error.
    """

    def __init__(
        self,
        sqlite_path: Path,
        blobs: Optional[BlobStore] = None,
        offload_threshold: int = ARTIFACT_OFFLOAD_THRESHOLD,
    ):
        self.sqlite_path = Path(sqlite_path)
        self.blobs = blobs
        self.offload_threshold = offload_threshold
        self.logger = logging.getLogger(__name__)
        self._lock = threading.RLock()
        self.sqlite_conn: Optional[sqlite3.Connection] = None

        self.sqlite_path.parent.mkdir(parents=True, exist_ok=True)
        self._init_sqlite()
        self._integrity_check()

    def _init_sqlite(self):
        """Open the database and create the schema."""
        try:
            self.sqlite_conn = sqlite3.connect(
                str(self.sqlite_path), check_same_thread=False, timeout=30.0
            )
            self.sqlite_conn.row_factory = sqlite3.Row
            self.sqlite_conn.create_function(
                "py_lower", 1, lambda s: s.lower() if s is not None else None,
                deterministic=True,
            )

            self.sqlite_conn.execute("PRAGMA journal_mode=WAL;")
            self.sqlite_conn.execute("PRAGMA wal_autocheckpoint=500;")
            # synchronous=FULL: WAL data reaches disk before a commit returns.
            self.sqlite_conn.execute("PRAGMA synchronous=FULL;")
            self.sqlite_conn.execute("PRAGMA foreign_keys=ON;")
            self.sqlite_conn.commit()

            self.sqlite_conn.executescript(SCHEMA)

            now_iso = utc_now().isoformat()
            self.sqlite_conn.execute(
                "INSERT OR REPLACE INTO hub_meta (key, value, updated_at) "
                "VALUES ('schema_version', ?, ?)",
                (SCHEMA_VERSION, now_iso),
            )
            self.sqlite_conn.commit()
            self.logger.info("SQLite store initialized at %s", self.sqlite_path)

        except Exception as e:
            self.logger.error("Failed to initialize SQLite: %s", e)
            raise

    def _integrity_check(self):
        """Run SQLite's page-level integrity check and log row counts."""
        try:
            ic_result = self.sqlite_conn.execute("PRAGMA integrity_check;").fetchone()
            if ic_result and ic_result[0] != "ok":
                # Let the server start so the operator can back up or repair.
                self.logger.error("SQLite integrity_check FAILED: %s", ic_result[0])
            else:
                self.logger.info("SQLite integrity_check passed")

            counts = {
                table: self.sqlite_conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
                for table in ("hub_memory", "hub_artifacts", "hub_links", "hub_runs")
            }
            self.logger.info("Store contents: %s", counts)

        except sqlite3.Error as e:
            self.logger.error("Integrity check failed: %s", e)

    def _write(self, sql: str, params=()):
        """Execute and commit one statement, rolling back on error."""
        try:
            cursor = self.sqlite_conn.execute(sql, params)
            self.sqlite_conn.commit()
            return cursor
        except sqlite3.Error:
            self.sqlite_conn.rollback()
            raise

    def _find_by_event(self, table: str, event_id: Optional[str]) -> Optional[str]:
        if not event_id:
            return None
        row = self.sqlite_conn.execute(
            f"SELECT id FROM {table} WHERE event_id = ?", (event_id,)
        ).fetchone()
        return row["id"] if row else None

    # Row conversion

    @staticmethod
    def _memory_from_row(row) -> MemoryItem:
        return MemoryItem(
            id=row["id"],
            key=row["key"],
            value=row["value"],
            tags=_loads(row["tags"], []),
            created_at=_ts(row["created_at"]),
            updated_at=_ts(row["updated_at"]),
            event_id=row["event_id"],
        )

    @staticmethod
    def _artifact_from_row(row, content_text: Optional[str]) -> Artifact:
        return Artifact(
            id=row["id"],
            type=row["type"],
            created_at=_ts(row["created_at"]),
            name=row["name"],
            source=row["source"],
            content_type=row["content_type"],
            content_text=content_text,
            metadata=_loads(row["metadata"], {}),
            event_id=row["event_id"],
        )

    @staticmethod
    def _link_from_row(row) -> Link:
        return Link(
            id=row["id"],
            from_ref=EntityRef(row["from_type"], row["from_id"]),
            to_ref=EntityRef(row["to_type"], row["to_id"]),
            created_at=_ts(row["created_at"]),
            label=row["label"],
            url=row["url"],
            event_id=row["event_id"],
        )

    @staticmethod
    def _step_from_row(row) -> RunStep:
        return RunStep(
            id=row["id"],
            ts=_ts(row["ts"]),
            kind=row["kind"],
            message=row["message"],
            data=_loads(row["data"]),
            event_id=row["event_id"],
        )

    @staticmethod
    def _run_from_row(row, steps: List[RunStep]) -> Run:
        return Run(
            id=row["id"],
            name=row["name"],
            status=row["status"],
            created_at=_ts(row["created_at"]),
            updated_at=_ts(row["updated_at"]),
            steps=steps,
            event_id=row["event_id"],
        )

    @staticmethod
    def _connection_from_row(row) -> Connection:
        return Connection(
            id=row["id"],
            name=row["name"],
            type=row["type"],
            endpoint=row["endpoint"],
            enabled=bool(row["enabled"]),
            created_at=_ts(row["created_at"]),
            updated_at=_ts(row["updated_at"]),
            api_key=row["api_key"],
            metadata=_loads(row["metadata"], {}),
        )

    # Memory

    def upsert_memory(self, key, value, tags, event_id=None) -> MemoryItem:
        now_iso = utc_now().isoformat()
        with self._lock:
            self._write(
                """
                INSERT INTO hub_memory (id, key, value, tags, event_id, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value = excluded.value,
                    tags = excluded.tags,
                    event_id = excluded.event_id,
                    updated_at = excluded.updated_at
                """,
                (new_id(), key, value, json.dumps(list(tags)), event_id, now_iso, now_iso),
            )
            return self.get_memory(key)

    def get_memory(self, key) -> Optional[MemoryItem]:
        with self._lock:
            row = self.sqlite_conn.execute(
                "SELECT * FROM hub_memory WHERE key = ?", (key,)
            ).fetchone()
        return self._memory_from_row(row) if row else None

    def search_memory(self, query, tags=None) -> List[MemoryItem]:
        q = (query or "").strip().lower()
        with self._lock:
            rows = self.sqlite_conn.execute(
                """
                SELECT * FROM hub_memory
                WHERE ? = ''
                   OR instr(py_lower(key), ?) > 0
                   OR instr(py_lower(value), ?) > 0
                ORDER BY updated_at DESC, rowid DESC
                """,
                (q, q, q),
            ).fetchall()

        results = []
        for row in rows:
            item = self._memory_from_row(row)
            # Tag matching is case-insensitive, so it is applied here.
            if memory_matches(item, q, tags):
                results.append(item)
                if len(results) >= MEMORY_SEARCH_LIMIT:
                    break
        return results

    # Artifacts

    def _discard_blob(self, blob_key: str):
        """Remove a body offloaded for a row that was never written."""
        try:
            self.blobs.delete(blob_key)
        except Exception as e:
            # The insert error propagates; a leftover blob is only logged.
            self.logger.warning("Could not remove orphaned blob %s: %s", blob_key, e)

    def create_artifact(self, input: ArtifactCreateInput) -> Artifact:
        with self._lock:
            existing = self._find_by_event("hub_artifacts", input.event_id)
            if existing:
                return self.get_artifact(existing)

            artifact_id = new_id()
            created_at = utc_now()
            content_text = input.content_text
            blob_key = None

            if (
                self.blobs is not None
                and content_text
                and len(content_text) > self.offload_threshold
            ):
                blob_key = f"artifacts/{artifact_id}.txt"
                self.blobs.put_text(
                    blob_key,
                    content_text,
                    input.content_type or "text/plain; charset=utf-8",
                )
                self.logger.info(
                    "Offloaded artifact %s body (%d chars) to %s",
                    artifact_id,
                    len(content_text),
                    blob_key,
                )
                content_text = None

            try:
                self._write(
                    """
                    INSERT INTO hub_artifacts
                    (id, type, name, source, content_type, content_text,
                     content_blob_key, metadata, event_id, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        artifact_id,
                        input.type,
                        input.name,
                        input.source,
                        input.content_type,
                        content_text,
                        blob_key,
                        _dumps(input.metadata),
                        input.event_id,
                        created_at.isoformat(),
                    ),
                )
            except sqlite3.Error as e:
                if blob_key:
                    self._discard_blob(blob_key)
                if isinstance(e, sqlite3.IntegrityError):
                    # Another process stored the same event first.
                    existing = self._find_by_event("hub_artifacts", input.event_id)
                    if existing:
                        return self.get_artifact(existing)
                raise

        return Artifact(
            id=artifact_id,
            type=input.type,
            created_at=created_at,
            name=input.name,
            source=input.source,
            content_type=input.content_type,
            content_text=input.content_text,
            metadata=dict(input.metadata or {}),
            event_id=input.event_id,
        )

    def get_artifact(self, artifact_id) -> Optional[Artifact]:
        with self._lock:
            row = self.sqlite_conn.execute(
                "SELECT * FROM hub_artifacts WHERE id = ?", (artifact_id,)
            ).fetchone()
        if not row:
            return None

        content_text = row["content_text"]
        if content_text is None and row["content_blob_key"]:
            if self.blobs is None:
                self.logger.warning(
                    "Artifact %s body is offloaded to %s but no blob store is configured",
                    artifact_id,
                    row["content_blob_key"],
                )
            else:
                content_text = self.blobs.get_text(row["content_blob_key"])
        return self._artifact_from_row(row, content_text)

    def list_artifacts(self, type=None) -> List[Artifact]:
        with self._lock:
            rows = self.sqlite_conn.execute(
                """
                SELECT * FROM hub_artifacts
                WHERE (? IS NULL OR type = ?)
                ORDER BY created_at DESC, rowid DESC
                LIMIT ?
                """,
                (type, type, ARTIFACT_LIST_LIMIT),
            ).fetchall()
        # Offloaded bodies are not fetched here; use get_artifact for full content.
        return [self._artifact_from_row(row, row["content_text"]) for row in rows]

    # Links

    def add_link(self, input: LinkAddInput) -> Link:
        with self._lock:
            existing = self._find_by_event("hub_links", input.event_id)
            if existing:
                row = self.sqlite_conn.execute(
                    "SELECT * FROM hub_links WHERE id = ?", (existing,)
                ).fetchone()
                return self._link_from_row(row)

            link = Link(
                id=new_id(),
                from_ref=input.from_ref,
                to_ref=input.to_ref,
                created_at=utc_now(),
                label=input.label,
                url=input.url,
                event_id=input.event_id,
            )
            self._write(
                """
                INSERT INTO hub_links
                (id, from_type, from_id, to_type, to_id, label, url, event_id, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    link.id,
                    link.from_ref.type,
                    link.from_ref.id,
                    link.to_ref.type,
                    link.to_ref.id,
                    link.label,
                    link.url,
                    link.event_id,
                    link.created_at.isoformat(),
                ),
            )
            return link

    def list_links(self, filter=None) -> List[Link]:
        flt = filter or LinkListFilter()
        with self._lock:
            rows = self.sqlite_conn.execute(
                """
                SELECT * FROM hub_links
                WHERE (? IS NULL OR from_type = ?)
                  AND (? IS NULL OR from_id = ?)
                  AND (? IS NULL OR to_type = ?)
                  AND (? IS NULL OR to_id = ?)
                ORDER BY created_at DESC, rowid DESC
                LIMIT ?
                """,
                (
                    flt.from_type or None, flt.from_type or None,
                    flt.from_id or None, flt.from_id or None,
                    flt.to_type or None, flt.to_type or None,
                    flt.to_id or None, flt.to_id or None,
                    LINK_LIST_LIMIT,
                ),
            ).fetchall()
        return [self._link_from_row(row) for row in rows]

    # Runs

    def _get_run_steps(self, run_id: str) -> List[RunStep]:
        rows = self.sqlite_conn.execute(
            "SELECT * FROM hub_run_steps WHERE run_id = ? ORDER BY seq ASC", (run_id,)
        ).fetchall()
        return [self._step_from_row(row) for row in rows]

    def start_run(self, name, event_id=None) -> Run:
        with self._lock:
            existing = self._find_by_event("hub_runs", event_id)
            if existing:
                return self.get_run(existing)
            now = utc_now()
            run = Run(
                id=new_id(),
                name=name,
                status="running",
                created_at=now,
                updated_at=now,
                event_id=event_id,
            )
            self._write(
                "INSERT INTO hub_runs (id, name, status, event_id, created_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (run.id, run.name, run.status, event_id, now.isoformat(), now.isoformat()),
            )
            return run

    def add_run_step(self, run_id, kind, message, data=None, event_id=None) -> RunStep:
        with self._lock:
            if not self.sqlite_conn.execute(
                "SELECT 1 FROM hub_runs WHERE id = ?", (run_id,)
            ).fetchone():
                raise NotFoundError(f"Run not found: {run_id}")

            existing = self._find_by_event("hub_run_steps", event_id)
            if existing:
                row = self.sqlite_conn.execute(
                    "SELECT * FROM hub_run_steps WHERE id = ?", (existing,)
                ).fetchone()
                return self._step_from_row(row)

            last = self.sqlite_conn.execute(
                "SELECT seq, ts FROM hub_run_steps WHERE run_id = ? "
                "ORDER BY seq DESC LIMIT 1",
                (run_id,),
            ).fetchone()
            seq = last["seq"] + 1 if last else 1
            step = RunStep(
                id=new_id(),
                ts=next_step_timestamp(_ts(last["ts"]) if last else None),
                kind=kind,
                message=message,
                data=data,
                event_id=event_id,
            )
            try:
                self.sqlite_conn.execute(
                    "INSERT INTO hub_run_steps (id, run_id, seq, ts, kind, message, data, event_id) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        step.id,
                        run_id,
                        seq,
                        step.ts.isoformat(),
                        kind,
                        message,
                        _dumps(data),
                        event_id,
                    ),
                )
                self.sqlite_conn.execute(
                    "UPDATE hub_runs SET updated_at = ? WHERE id = ?",
                    (max(utc_now(), step.ts).isoformat(), run_id),
                )
                self.sqlite_conn.commit()
            except sqlite3.Error as e:
                self.logger.error("Failed to append step to run %s: %s", run_id, e)
                self.sqlite_conn.rollback()
                raise
            return step

    def complete_run(self, run_id, status) -> Run:
        if status not in TERMINAL_RUN_STATUSES:
            raise InvalidParamsError([("status", "must be 'completed' or 'failed'")])
        with self._lock:
            row = self.sqlite_conn.execute(
                "SELECT status FROM hub_runs WHERE id = ?", (run_id,)
            ).fetchone()
            if not row:
                raise NotFoundError(f"Run not found: {run_id}")
            if row["status"] in TERMINAL_RUN_STATUSES:
                raise RunStateError(f"Run {run_id} is already {row['status']}")
            self._write(
                "UPDATE hub_runs SET status = ?, updated_at = ? "
                "WHERE id = ? AND status = 'running'",
                (status, utc_now().isoformat(), run_id),
            )
            return self.get_run(run_id)

    def get_run(self, run_id) -> Optional[Run]:
        with self._lock:
            row = self.sqlite_conn.execute(
                "SELECT * FROM hub_runs WHERE id = ?", (run_id,)
            ).fetchone()
            if not row:
                return None
            return self._run_from_row(row, self._get_run_steps(run_id))

    def list_runs(self, limit=RUN_LIST_DEFAULT_LIMIT) -> List[Run]:
        with self._lock:
            rows = self.sqlite_conn.execute(
                "SELECT * FROM hub_runs ORDER BY created_at DESC, rowid DESC LIMIT ?", (limit,)
            ).fetchall()
        # Steps are not fetched for list results.
        return [self._run_from_row(row, []) for row in rows]

    # Connections

    def add_connection(
        self, name, type, endpoint, api_key=None, enabled=True, metadata=None
    ) -> Connection:
        now = utc_now()
        conn = Connection(
            id=new_id(),
            name=name,
            type=type,
            endpoint=endpoint,
            enabled=enabled,
            created_at=now,
            updated_at=now,
            api_key=api_key,
            metadata=dict(metadata or {}),
        )
        with self._lock:
            self._write(
                """
                INSERT INTO hub_connections
                (id, name, type, endpoint, api_key, enabled, metadata, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    conn.id,
                    name,
                    type,
                    endpoint,
                    api_key,
                    int(enabled),
                    _dumps(conn.metadata),
                    now.isoformat(),
                    now.isoformat(),
                ),
            )
        return conn

    def list_connections(self) -> List[Connection]:
        with self._lock:
            rows = self.sqlite_conn.execute(
                "SELECT * FROM hub_connections ORDER BY created_at DESC, rowid DESC"
            ).fetchall()
        return [self._connection_from_row(row) for row in rows]

    def update_connection(self, connection_id, **updates: Any) -> Connection:
        set_clause = []
        params: List[Any] = []
        for name in CONNECTION_FIELDS:
            value = updates.get(name)
            if value is None:
                continue
            if name == "metadata":
                value = _dumps(value)
            elif name == "enabled":
                value = int(value)
            set_clause.append(f"{name} = ?")
            params.append(value)

        set_clause.append("updated_at = ?")
        params.append(utc_now().isoformat())
        params.append(connection_id)

        with self._lock:
            cursor = self._write(
                f"UPDATE hub_connections SET {', '.join(set_clause)} WHERE id = ?",
                params,
            )
            if cursor.rowcount == 0:
                raise NotFoundError(f"Connection not found: {connection_id}")
            row = self.sqlite_conn.execute(
                "SELECT * FROM hub_connections WHERE id = ?", (connection_id,)
            ).fetchone()
        return self._connection_from_row(row)

    def delete_connection(self, connection_id) -> bool:
        with self._lock:
            cursor = self._write(
                "DELETE FROM hub_connections WHERE id = ?", (connection_id,)
            )
        return cursor.rowcount > 0

    def close(self):
        """Checkpoint the WAL and close the connection."""
        with self._lock:
            if self.sqlite_conn is None:
                return
            try:
                self.sqlite_conn.commit()
                # TRUNCATE resets the WAL so no data is left only in the WAL file.
                self.sqlite_conn.execute("PRAGMA wal_checkpoint(TRUNCATE);")
            except sqlite3.Error as e:
                self.logger.warning("WAL checkpoint on close failed: %s", e)
            finally:
                self.sqlite_conn.close()
                self.sqlite_conn = None
            self.logger.info("SQLite store closed")
