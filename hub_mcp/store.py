"""
Store contract shared by the in-memory and SQLite backends.

Both backends must behave identically for every method below; large
artifact offload is an internal detail of the SQLite backend.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional
import logging

from .config import HubConfig, RUN_LIST_DEFAULT_LIMIT
from .models import (
    Artifact,
    ArtifactCreateInput,
    Connection,
    Link,
    LinkAddInput,
    LinkListFilter,
    MemoryItem,
    Run,
    RunStep,
)

logger = logging.getLogger(__name__)


class HubStore(ABC):
    # Memory
    @abstractmethod
    def upsert_memory(
        self, key: str, value: str, tags: List[str], event_id: Optional[str] = None
    ) -> MemoryItem: ...

    @abstractmethod
    def get_memory(self, key: str) -> Optional[MemoryItem]: ...

    @abstractmethod
    def search_memory(
        self, query: str, tags: Optional[List[str]] = None
    ) -> List[MemoryItem]: ...

    # Artifacts
    @abstractmethod
    def create_artifact(self, input: ArtifactCreateInput) -> Artifact: ...

    @abstractmethod
    def get_artifact(self, artifact_id: str) -> Optional[Artifact]: ...

    @abstractmethod
    def list_artifacts(self, type: Optional[str] = None) -> List[Artifact]: ...

    # Links
    @abstractmethod
    def add_link(self, input: LinkAddInput) -> Link: ...

    @abstractmethod
    def list_links(self, filter: Optional[LinkListFilter] = None) -> List[Link]: ...

    # Runs
    @abstractmethod
    def start_run(self, name: str, event_id: Optional[str] = None) -> Run: ...

    @abstractmethod
    def add_run_step(
        self,
        run_id: str,
        kind: str,
        message: str,
        data: Optional[Dict[str, Any]] = None,
        event_id: Optional[str] = None,
    ) -> RunStep: ...

    @abstractmethod
    def complete_run(self, run_id: str, status: str) -> Run: ...

    @abstractmethod
    def get_run(self, run_id: str) -> Optional[Run]: ...

    @abstractmethod
    def list_runs(self, limit: int = RUN_LIST_DEFAULT_LIMIT) -> List[Run]: ...

    # Connections
    @abstractmethod
    def add_connection(
        self,
        name: str,
        type: str,
        endpoint: str,
        api_key: Optional[str] = None,
        enabled: bool = True,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Connection: ...

    @abstractmethod
    def list_connections(self) -> List[Connection]: ...

    @abstractmethod
    def update_connection(self, connection_id: str, **updates: Any) -> Connection: ...

    @abstractmethod
    def delete_connection(self, connection_id: str) -> bool: ...

    def close(self):
        """Release backend resources. No-op unless overridden."""


CONNECTION_FIELDS = ("name", "type", "endpoint", "api_key", "enabled", "metadata")


def create_store(config: HubConfig) -> HubStore:
    """Build the store selected by ``config.store_backend``."""
    if config.store_backend == "memory":
        from .memory_store import MemoryStore

        logger.warning(
            "Using in-memory store (set HUB_STORE=sqlite for persistence)"
        )
        return MemoryStore()

    from .blob_store import create_blob_store
    from .sqlite_store import SQLiteStore

    blobs = create_blob_store(config)
    return SQLiteStore(
        config.sqlite_path,
        blobs=blobs,
        offload_threshold=config.offload_threshold,
    )
