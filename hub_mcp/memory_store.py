"""
Ephemeral store backend.

Entities live in per-kind arenas keyed by generated id, with secondary
indexes (memory by key, records by event id, steps by run) maintained
alongside. All reads and writes hold one re-entrant lock; callers receive
copies so stored records can only change through the store.
"""

from copy import deepcopy
from typing import Any, Dict, List, Optional, Tuple
import threading

from .config import (
    ARTIFACT_LIST_LIMIT,
    LINK_LIST_LIMIT,
    MEMORY_SEARCH_LIMIT,
    RUN_LIST_DEFAULT_LIMIT,
)
from .errors import InvalidParamsError, NotFoundError, RunStateError
from .models import (
    TERMINAL_RUN_STATUSES,
    Artifact,
    ArtifactCreateInput,
    Connection,
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


def _normalize_tags(tags: Optional[List[str]]) -> List[str]:
    return [t.strip().lower() for t in (tags or []) if t and t.strip()]


def memory_matches(item: MemoryItem, query: str, tags: Optional[List[str]]) -> bool:
    """Case-insensitive substring on key/value AND any-tag match."""
    q = (query or "").strip().lower()
    if q and q not in item.key.lower() and q not in item.value.lower():
        return False
    wanted = set(_normalize_tags(tags))
    if wanted and not wanted.intersection(_normalize_tags(item.tags)):
        return False
    return True


class MemoryStore(HubStore):
    def __init__(self):
        self._lock = threading.RLock()
        self._memory: Dict[str, MemoryItem] = {}
        self._memory_by_key: Dict[str, str] = {}
        self._artifacts: Dict[str, Artifact] = {}
        self._links: Dict[str, Link] = {}
        self._runs: Dict[str, Run] = {}
        self._steps: Dict[str, RunStep] = {}
        self._steps_by_run: Dict[str, List[str]] = {}
        self._events: Dict[Tuple[str, str], str] = {}
        self._connections: Dict[str, Connection] = {}

    def _seen(self, kind: str, event_id: Optional[str]) -> Optional[str]:
        if not event_id:
            return None
        return self._events.get((kind, event_id))

    def _remember_event(self, kind: str, event_id: Optional[str], record_id: str):
        if event_id:
            self._events[(kind, event_id)] = record_id

    # Memory

    def upsert_memory(self, key, value, tags, event_id=None) -> MemoryItem:
        with self._lock:
            now = utc_now()
            existing_id = self._memory_by_key.get(key)
            if existing_id is not None:
                item = self._memory[existing_id]
                item.value = value
                item.tags = list(tags)
                item.updated_at = now
                item.event_id = event_id
            else:
                item = MemoryItem(
                    id=new_id(),
                    key=key,
                    value=value,
                    tags=list(tags),
                    created_at=now,
                    updated_at=now,
                    event_id=event_id,
                )
                self._memory[item.id] = item
                self._memory_by_key[key] = item.id
            return deepcopy(item)

    def get_memory(self, key) -> Optional[MemoryItem]:
        with self._lock:
            item_id = self._memory_by_key.get(key)
            return deepcopy(self._memory[item_id]) if item_id else None

    def search_memory(self, query, tags=None) -> List[MemoryItem]:
        with self._lock:
            newest_last = list(self._memory.values())
            hits = [m for m in reversed(newest_last) if memory_matches(m, query, tags)]
            hits.sort(key=lambda m: m.updated_at, reverse=True)
            return deepcopy(hits[:MEMORY_SEARCH_LIMIT])

    # Artifacts

    def create_artifact(self, input: ArtifactCreateInput) -> Artifact:
        with self._lock:
            existing = self._seen("artifact", input.event_id)
            if existing:
                return deepcopy(self._artifacts[existing])
            artifact = Artifact(
                id=new_id(),
                type=input.type,
                created_at=utc_now(),
                name=input.name,
                source=input.source,
                content_type=input.content_type,
                content_text=input.content_text,
                metadata=deepcopy(input.metadata or {}),
                event_id=input.event_id,
            )
            self._artifacts[artifact.id] = artifact
            self._remember_event("artifact", input.event_id, artifact.id)
            return deepcopy(artifact)

    def get_artifact(self, artifact_id) -> Optional[Artifact]:
        with self._lock:
            artifact = self._artifacts.get(artifact_id)
            return deepcopy(artifact) if artifact else None

    def list_artifacts(self, type=None) -> List[Artifact]:
        with self._lock:
            newest_last = list(self._artifacts.values())
            items = [a for a in reversed(newest_last) if not type or a.type == type]
            items.sort(key=lambda a: a.created_at, reverse=True)
            return deepcopy(items[:ARTIFACT_LIST_LIMIT])

    # Links

    def add_link(self, input: LinkAddInput) -> Link:
        with self._lock:
            existing = self._seen("link", input.event_id)
            if existing:
                return deepcopy(self._links[existing])
            link = Link(
                id=new_id(),
                from_ref=input.from_ref,
                to_ref=input.to_ref,
                created_at=utc_now(),
                label=input.label,
                url=input.url,
                event_id=input.event_id,
            )
            self._links[link.id] = link
            self._remember_event("link", input.event_id, link.id)
            return deepcopy(link)

    def list_links(self, filter=None) -> List[Link]:
        with self._lock:
            flt = filter or LinkListFilter()
            newest_last = list(self._links.values())
            items = [link for link in reversed(newest_last) if flt.matches(link)]
            items.sort(key=lambda link: link.created_at, reverse=True)
            return deepcopy(items[:LINK_LIST_LIMIT])

    # Runs

    def _run_with_steps(self, run: Run) -> Run:
        out = deepcopy(run)
        out.steps = [deepcopy(self._steps[s]) for s in self._steps_by_run[run.id]]
        return out

    def start_run(self, name, event_id=None) -> Run:
        with self._lock:
            existing = self._seen("run", event_id)
            if existing:
                return self._run_with_steps(self._runs[existing])
            now = utc_now()
            run = Run(
                id=new_id(),
                name=name,
                status="running",
                created_at=now,
                updated_at=now,
                event_id=event_id,
            )
            self._runs[run.id] = run
            self._steps_by_run[run.id] = []
            self._remember_event("run", event_id, run.id)
            return deepcopy(run)

    def add_run_step(self, run_id, kind, message, data=None, event_id=None) -> RunStep:
        with self._lock:
            run = self._runs.get(run_id)
            if run is None:
                raise NotFoundError(f"Run not found: {run_id}")
            existing = self._seen("run_step", event_id)
            if existing:
                return deepcopy(self._steps[existing])
            step_ids = self._steps_by_run[run_id]
            previous = self._steps[step_ids[-1]].ts if step_ids else None
            step = RunStep(
                id=new_id(),
                ts=next_step_timestamp(previous),
                kind=kind,
                message=message,
                data=deepcopy(data),
                event_id=event_id,
            )
            self._steps[step.id] = step
            step_ids.append(step.id)
            run.updated_at = max(utc_now(), step.ts)
            self._remember_event("run_step", event_id, step.id)
            return deepcopy(step)

    def complete_run(self, run_id, status) -> Run:
        if status not in TERMINAL_RUN_STATUSES:
            raise InvalidParamsError([("status", "must be 'completed' or 'failed'")])
        with self._lock:
            run = self._runs.get(run_id)
            if run is None:
                raise NotFoundError(f"Run not found: {run_id}")
            if run.is_terminal:
                raise RunStateError(f"Run {run_id} is already {run.status}")
            run.status = status
            run.updated_at = utc_now()
            return self._run_with_steps(run)

    def get_run(self, run_id) -> Optional[Run]:
        with self._lock:
            run = self._runs.get(run_id)
            return self._run_with_steps(run) if run else None

    def list_runs(self, limit=RUN_LIST_DEFAULT_LIMIT) -> List[Run]:
        with self._lock:
            runs = sorted(
                reversed(list(self._runs.values())),
                key=lambda r: r.created_at,
                reverse=True,
            )
            return deepcopy(runs[:limit])

    # Connections

    def add_connection(
        self, name, type, endpoint, api_key=None, enabled=True, metadata=None
    ) -> Connection:
        with self._lock:
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
                metadata=deepcopy(metadata or {}),
            )
            self._connections[conn.id] = conn
            return deepcopy(conn)

    def list_connections(self) -> List[Connection]:
        with self._lock:
            conns = sorted(
                reversed(list(self._connections.values())),
                key=lambda c: c.created_at,
                reverse=True,
            )
            return deepcopy(conns)

    def update_connection(self, connection_id, **updates: Any) -> Connection:
        with self._lock:
            conn = self._connections.get(connection_id)
            if conn is None:
                raise NotFoundError(f"Connection not found: {connection_id}")
            for name, value in updates.items():
                if name in CONNECTION_FIELDS and value is not None:
                    setattr(conn, name, deepcopy(value))
            conn.updated_at = utc_now()
            return deepcopy(conn)

    def delete_connection(self, connection_id) -> bool:
        with self._lock:
            return self._connections.pop(connection_id, None) is not None
