"""
Tool catalog.

Each entry pairs a tool name with its pydantic input model and a handler.
Handlers take the validated arguments plus a ToolContext and return a
Result; they may be plain functions or coroutines.
"""

from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Iterator, List, Optional, Type, Union
import logging

import httpx
from pydantic import BaseModel

from .config import CORE_CONNECTOR, HubConfig
from .event_id import event_id_from
from .models import ArtifactCreateInput, EntityRef, LinkAddInput, LinkListFilter, Result
from .schemas import (
    ArtifactCreateArgs,
    ArtifactGetArgs,
    ArtifactListArgs,
    LinkAddArgs,
    LinkListArgs,
    MemoryGetArgs,
    MemoryPutArgs,
    MemorySearchArgs,
    RunCompleteArgs,
    RunGetArgs,
    RunListArgs,
    RunStartArgs,
    RunStepArgs,
)
from .store import HubStore

logger = logging.getLogger(__name__)

Handler = Callable[[Any, "ToolContext"], Union[Result, Awaitable[Result]]]


@dataclass
class ToolContext:
    """What a handler may touch: the store, the config and an HTTP client."""

    store: HubStore
    config: HubConfig
    http: Optional[httpx.Client] = None

    @contextmanager
    def http_client(self) -> Iterator[httpx.Client]:
        """The shared client if one was injected, else a short-lived one."""
        if self.http is not None:
            yield self.http
            return
        with httpx.Client(timeout=self.config.http_timeout) as client:
            yield client


@dataclass
class ToolSpec:
    """
    One catalog entry.

    ``connector`` pins the resilience group; when None it is derived
    from the tool name.
    """

    name: str
    description: str
    input_model: Type[BaseModel]
    handler: Handler
    connector: Optional[str] = None

    @property
    def input_schema(self) -> Dict[str, Any]:
        return self.input_model.model_json_schema()

    def describe(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "description": self.description,
            "input_schema": self.input_schema,
        }


class ToolRegistry:
    """Append-only catalog of tools, in registration order."""

    def __init__(self):
        self._tools: Dict[str, ToolSpec] = {}

    def register(self, spec: ToolSpec) -> ToolSpec:
        if spec.name in self._tools:
            raise ValueError(f"Tool already registered: {spec.name}")
        self._tools[spec.name] = spec
        return spec

    def get(self, name: str) -> Optional[ToolSpec]:
        return self._tools.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __iter__(self):
        return iter(self._tools.values())

    def __len__(self) -> int:
        return len(self._tools)

    def list_tools(self, store: Optional[HubStore] = None) -> List[Dict[str, Any]]:
        """
        Describe every registered tool.

        Enabled SSE connections are an extension point: they are reported
        in the log but their tools are not proxied.
        """
        tools = [spec.describe() for spec in self._tools.values()]
        if store is not None:
            try:
                for conn in store.list_connections():
                    if conn.enabled and conn.type == "SSE MCP Server":
                        logger.info(
                            "Connection '%s' (%s) may advertise more tools",
                            conn.name,
                            conn.endpoint,
                        )
            except Exception as e:
                logger.error("Error fetching connection tools: %s", e)
        return tools


# Core data-model handlers


def memory_put(args: MemoryPutArgs, ctx: ToolContext) -> Result:
    item = ctx.store.upsert_memory(
        args.key,
        args.value,
        args.tags or [],
        event_id=event_id_from(args.source, args.source_event_id),
    )
    return Result(success=True, data=[item.to_dict()])


def memory_get(args: MemoryGetArgs, ctx: ToolContext) -> Result:
    item = ctx.store.get_memory(args.key)
    return Result(success=True, data=[item.to_dict()] if item else [])


def memory_search(args: MemorySearchArgs, ctx: ToolContext) -> Result:
    items = ctx.store.search_memory(args.query, args.tags)
    return Result(success=True, data=[item.to_dict() for item in items])


def artifact_create(args: ArtifactCreateArgs, ctx: ToolContext) -> Result:
    artifact = ctx.store.create_artifact(
        ArtifactCreateInput(
            type=args.type,
            name=args.name,
            source=args.source,
            content_type=args.content_type,
            content_text=args.content_text,
            metadata=args.metadata,
            event_id=event_id_from(args.source, args.source_event_id),
        )
    )
    return Result(success=True, data=[artifact.to_dict()])


def artifact_get(args: ArtifactGetArgs, ctx: ToolContext) -> Result:
    artifact = ctx.store.get_artifact(args.id)
    return Result(success=True, data=[artifact.to_dict()] if artifact else [])


def artifact_list(args: ArtifactListArgs, ctx: ToolContext) -> Result:
    artifacts = ctx.store.list_artifacts(args.type)
    return Result(success=True, data=[a.to_dict() for a in artifacts])


def link_add(args: LinkAddArgs, ctx: ToolContext) -> Result:
    link = ctx.store.add_link(
        LinkAddInput(
            from_ref=EntityRef(args.from_ref.type, args.from_ref.id),
            to_ref=EntityRef(args.to_ref.type, args.to_ref.id),
            label=args.label,
            url=args.url,
            event_id=event_id_from(args.source, args.source_event_id),
        )
    )
    return Result(success=True, data=[link.to_dict()])


def link_list(args: LinkListArgs, ctx: ToolContext) -> Result:
    links = ctx.store.list_links(
        LinkListFilter(
            from_type=args.from_type,
            from_id=args.from_id,
            to_type=args.to_type,
            to_id=args.to_id,
        )
    )
    return Result(success=True, data=[link.to_dict() for link in links])


def run_start(args: RunStartArgs, ctx: ToolContext) -> Result:
    run = ctx.store.start_run(
        args.name, event_id=event_id_from(args.source, args.source_event_id)
    )
    return Result(success=True, data=[run.to_dict()])


def run_step(args: RunStepArgs, ctx: ToolContext) -> Result:
    step = ctx.store.add_run_step(
        args.run_id,
        args.kind,
        args.message,
        data=args.data,
        event_id=event_id_from(args.source, args.source_event_id),
    )
    return Result(success=True, data=[step.to_dict()])


def run_complete(args: RunCompleteArgs, ctx: ToolContext) -> Result:
    run = ctx.store.complete_run(args.run_id, args.status)
    return Result(success=True, data=[run.to_dict()])


def run_get(args: RunGetArgs, ctx: ToolContext) -> Result:
    run = ctx.store.get_run(args.run_id)
    return Result(success=True, data=[run.to_dict()] if run else [])


def run_list(args: RunListArgs, ctx: ToolContext) -> Result:
    runs = ctx.store.list_runs(args.limit)
    return Result(success=True, data=[run.to_dict() for run in runs])


def _core_tool(name, description, input_model, handler) -> ToolSpec:
    return ToolSpec(name, description, input_model, handler, connector=CORE_CONNECTOR)


CORE_TOOLS = [
    _core_tool(
        "memory_put",
        "Store shared memory (notes/requirements/decisions) centrally in the hub",
        MemoryPutArgs,
        memory_put,
    ),
    _core_tool("memory_get", "Fetch a shared memory item by key", MemoryGetArgs, memory_get),
    _core_tool(
        "memory_search",
        "Search shared memory by query and/or tags",
        MemorySearchArgs,
        memory_search,
    ),
    _core_tool(
        "artifact_create",
        "Create an artifact record (design export, generated doc, code patch, etc.)",
        ArtifactCreateArgs,
        artifact_create,
    ),
    _core_tool("artifact_get", "Get a single artifact by id", ArtifactGetArgs, artifact_get),
    _core_tool(
        "artifact_list",
        "List artifacts, optionally filtered by type",
        ArtifactListArgs,
        artifact_list,
    ),
    _core_tool(
        "link_add",
        "Add a typed link between two entities (Figma file to PR, Jira issue to page, etc.)",
        LinkAddArgs,
        link_add,
    ),
    _core_tool(
        "link_list",
        "List links, optionally filtered by endpoints",
        LinkListArgs,
        link_list,
    ),
    _core_tool(
        "run_start",
        "Start a workflow run (useful for multi-step automation and traceability)",
        RunStartArgs,
        run_start,
    ),
    _core_tool("run_step", "Append a step to a run log", RunStepArgs, run_step),
    _core_tool(
        "run_complete", "Mark a run completed or failed", RunCompleteArgs, run_complete
    ),
    _core_tool("run_get", "Get a run with all of its steps", RunGetArgs, run_get),
    _core_tool("run_list", "List recent runs (steps omitted)", RunListArgs, run_list),
]


def build_registry(include_connectors: bool = True) -> ToolRegistry:
    """Catalog with the core tools and, optionally, the connector tools."""
    registry = ToolRegistry()
    for spec in CORE_TOOLS:
        registry.register(spec)
    if include_connectors:
        from .connectors import CONNECTOR_TOOLS
        from .gamma import GAMMA_TOOLS

        for spec in CONNECTOR_TOOLS + GAMMA_TOOLS:
            registry.register(spec)
    return registry
