"""
MCP surface of the hub.

Registers every catalog tool with the FastMCP instance, each one routed
through the Dispatcher, and adds the management HTTP routes used by the
console (health, status, tools, runs, connections).
"""

from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Optional
import asyncio
import functools
import hmac
import json
import logging
import time

from fastmcp.exceptions import ToolError
from fastmcp.tools.tool import Tool, ToolResult
from mcp.types import TextContent
from pydantic import Field
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from .config import SERVER_NAME, SERVER_VERSION
from .dispatcher import Dispatcher
from .errors import HubError, InvalidParamsError, NotFoundError
from .models import Result
from .schemas import ConnectionCreateArgs, ConnectionUpdateArgs, RunListArgs, validate_args

logger = logging.getLogger(__name__)

RouteHandler = Callable[[Request], Awaitable[Response]]


def _json_safe(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: _json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(v) for v in value]
    return value


def jsonify_result(res: Result) -> dict:
    """
    Convert Result dataclass to JSON-serializable dict.

    Normalizes datetime objects (at any depth) to ISO strings.
    """
    out = {"success": res.success}
    if res.reason is not None:
        out["reason"] = res.reason
    if res.data is not None:
        out["data"] = [_json_safe(dict(item)) for item in res.data]
    return out


def error_payload(err: HubError) -> str:
    return json.dumps(_json_safe(err.to_dict()), default=str)


class DispatchedTool(Tool):
    """A catalog tool whose calls go through ``Dispatcher.dispatch``."""

    dispatcher: Any = Field(default=None, exclude=True)

    async def run(self, arguments: Dict[str, Any]) -> ToolResult:
        try:
            result = await self.dispatcher.dispatch(self.name, arguments)
        except HubError as e:
            raise ToolError(error_payload(e)) from e
        payload = jsonify_result(result)
        return ToolResult(
            content=[TextContent(type="text", text=json.dumps(payload, default=str))],
            structured_content=payload,
        )


def register_tools(mcp, dispatcher: Dispatcher):
    """
    Register all catalog tools with the FastMCP instance.

    Args:
        mcp: FastMCP instance
        dispatcher: Dispatcher owning the catalog, store and resilience state
    """
    for spec in dispatcher.registry:
        mcp.add_tool(
            DispatchedTool(
                name=spec.name,
                description=spec.description,
                parameters=spec.input_schema,
                dispatcher=dispatcher,
            )
        )
    logger.info("Registered %d tools", len(dispatcher.registry))


# Management routes


def request_api_key(request: Request) -> Optional[str]:
    """Key from ``X-MCP-Hub-Key``, then ``Authorization: Bearer``, then ``?key=``."""
    key = request.headers.get("x-mcp-hub-key")
    if not key:
        auth = request.headers.get("authorization", "")
        if auth[:7].lower() == "bearer ":
            key = auth[7:].strip()
    if not key:
        key = request.query_params.get("key")
    return key or None


def _require_api_key(expected: str) -> Callable[[RouteHandler], RouteHandler]:
    def decorator(handler: RouteHandler) -> RouteHandler:
        @functools.wraps(handler)
        async def wrapper(request: Request) -> Response:
            key = request_api_key(request)
            if not key or not hmac.compare_digest(key.encode(), expected.encode()):
                return JSONResponse({"error": "Unauthorized"}, status_code=401)
            return await handler(request)

        return wrapper

    return decorator


def _error_response(err: HubError) -> JSONResponse:
    status = 400
    if isinstance(err, NotFoundError):
        status = 404
    return JSONResponse(_json_safe(err.to_dict()), status_code=status)


async def _json_body(request: Request) -> Any:
    try:
        return await request.json()
    except ValueError:
        raise InvalidParamsError([("body", "must be a JSON object")]) from None


def register_routes(mcp, dispatcher: Dispatcher, api_key: Optional[str]):
    """
    Add the management API as FastMCP custom routes (HTTP transport only).

    ``/healthz`` is always public. The ``/v1`` routes require ``api_key``
    and are not registered at all when it is unset.
    """
    started = time.monotonic()
    store = dispatcher.store

    @mcp.custom_route("/healthz", methods=["GET"])
    async def healthz(request: Request) -> Response:
        return JSONResponse({"ok": True})

    if not api_key:
        logger.warning("MCP_HUB_API_KEY is not set; management API disabled")
        return

    protected = _require_api_key(api_key)

    @mcp.custom_route("/v1/status", methods=["GET"])
    @protected
    async def status(request: Request) -> Response:
        return JSONResponse(
            {
                "status": "up",
                "name": SERVER_NAME,
                "version": SERVER_VERSION,
                "uptime": round(time.monotonic() - started, 3),
                "tools": len(dispatcher.registry),
                "store": type(store).__name__,
                "connectors": dispatcher.resilience.snapshot(),
            }
        )

    @mcp.custom_route("/v1/tools", methods=["GET"])
    @protected
    async def list_tools(request: Request) -> Response:
        tools = await asyncio.to_thread(dispatcher.registry.list_tools, store)
        return JSONResponse(tools)

    @mcp.custom_route("/v1/runs", methods=["GET"])
    @protected
    async def list_runs(request: Request) -> Response:
        try:
            args = validate_args(RunListArgs, dict(request.query_params))
        except HubError as e:
            return _error_response(e)
        runs = await asyncio.to_thread(store.list_runs, args.limit)
        return JSONResponse([run.to_dict() for run in runs])

    @mcp.custom_route("/v1/runs/{run_id}", methods=["GET"])
    @protected
    async def get_run(request: Request) -> Response:
        run_id = request.path_params["run_id"]
        run = await asyncio.to_thread(store.get_run, run_id)
        if run is None:
            return _error_response(NotFoundError(f"Run not found: {run_id}"))
        return JSONResponse(run.to_dict())

    @mcp.custom_route("/v1/connections", methods=["GET"])
    @protected
    async def list_connections(request: Request) -> Response:
        connections = await asyncio.to_thread(store.list_connections)
        return JSONResponse([c.to_dict() for c in connections])

    @mcp.custom_route("/v1/connections", methods=["POST"])
    @protected
    async def add_connection(request: Request) -> Response:
        try:
            args = validate_args(ConnectionCreateArgs, await _json_body(request))
        except HubError as e:
            return _error_response(e)
        conn = await asyncio.to_thread(
            store.add_connection,
            args.name,
            args.type,
            args.endpoint,
            api_key=args.api_key,
            enabled=args.enabled,
            metadata=args.metadata,
        )
        logger.info("Added connection '%s' (%s)", conn.name, conn.type)
        return JSONResponse(conn.to_dict(), status_code=201)

    @mcp.custom_route("/v1/connections/{connection_id}", methods=["PATCH"])
    @protected
    async def update_connection(request: Request) -> Response:
        try:
            args = validate_args(ConnectionUpdateArgs, await _json_body(request))
            conn = await asyncio.to_thread(
                store.update_connection,
                request.path_params["connection_id"],
                **args.model_dump(exclude_none=True),
            )
        except HubError as e:
            return _error_response(e)
        return JSONResponse(conn.to_dict())

    @mcp.custom_route("/v1/connections/{connection_id}", methods=["DELETE"])
    @protected
    async def delete_connection(request: Request) -> Response:
        connection_id = request.path_params["connection_id"]
        if not await asyncio.to_thread(store.delete_connection, connection_id):
            return _error_response(NotFoundError(f"Connection not found: {connection_id}"))
        logger.info("Deleted connection %s", connection_id)
        return Response(status_code=204)
