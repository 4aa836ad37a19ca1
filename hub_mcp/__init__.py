"""
MCP hub package.

A multi-tenant tool gateway: shared memory, artifacts, links and run logs
for AI agents, plus resilient connectors to external services.
"""

from .config import DATA_FOLDER, SERVER_NAME, SERVER_VERSION, HubConfig
from .models import Artifact, Link, MemoryItem, Result, Run, RunStep
from .errors import (
    HubError,
    NotFoundError,
    InvalidParamsError,
    RunStateError,
    ConnectorUnavailableError,
    ResourceExhaustedError,
    ToolTimeoutError,
    HandlerFailureError,
)
from .event_id import derive_event_id
from .resilience import CircuitBreaker, Bulkhead, ResilienceRegistry, with_timeout
from .store import HubStore, create_store
from .memory_store import MemoryStore
from .sqlite_store import SQLiteStore
from .tools import ToolContext, ToolRegistry, ToolSpec, build_registry
from .dispatcher import Dispatcher
from .mcp_tools import register_tools, register_routes, jsonify_result

__version__ = SERVER_VERSION

__all__ = [
    "DATA_FOLDER",
    "SERVER_NAME",
    "SERVER_VERSION",
    "HubConfig",
    "Artifact",
    "Link",
    "MemoryItem",
    "Result",
    "Run",
    "RunStep",
    "HubError",
    "NotFoundError",
    "InvalidParamsError",
    "RunStateError",
    "ConnectorUnavailableError",
    "ResourceExhaustedError",
    "ToolTimeoutError",
    "HandlerFailureError",
    "derive_event_id",
    "CircuitBreaker",
    "Bulkhead",
    "ResilienceRegistry",
    "with_timeout",
    "HubStore",
    "create_store",
    "MemoryStore",
    "SQLiteStore",
    "ToolContext",
    "ToolRegistry",
    "ToolSpec",
    "build_registry",
    "Dispatcher",
    "register_tools",
    "register_routes",
    "jsonify_result",
]
