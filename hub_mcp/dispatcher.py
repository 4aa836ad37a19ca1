"""
Resilience-aware tool dispatch.

``Dispatcher.dispatch`` is the single entry point for tool calls: it looks
the tool up, validates its arguments, and runs the handler inside the
connector's circuit breaker, bulkhead and deadline.
"""

from typing import Any, Optional
import asyncio
import inspect
import logging
import time

import httpx

from .config import CORE_CONNECTOR, DISPATCH_TIMEOUT_SECONDS, HubConfig
from .errors import (
    ConnectorUnavailableError,
    HandlerFailureError,
    HubError,
    NotFoundError,
    ResourceExhaustedError,
)
from .models import Result
from .resilience import Bulkhead, ResilienceRegistry, with_timeout
from .schemas import validate_args
from .store import HubStore
from .tools import ToolContext, ToolRegistry, ToolSpec

logger = logging.getLogger(__name__)


def resolve_connector(spec: ToolSpec) -> str:
    """
    Connector id used to group a tool's resilience state.

    An explicit ``spec.connector`` wins; otherwise the name's prefix up to
    the first underscore (``github_put_file`` -> ``github``), or ``core``
    for names without one.
    """
    if spec.connector:
        return spec.connector
    prefix, sep, _ = spec.name.partition("_")
    return prefix if sep and prefix else CORE_CONNECTOR


class Dispatcher:
    def __init__(
        self,
        registry: ToolRegistry,
        resilience: ResilienceRegistry,
        store: HubStore,
        config: HubConfig,
        timeout: float = DISPATCH_TIMEOUT_SECONDS,
        http: Optional[httpx.Client] = None,
    ):
        self.registry = registry
        self.resilience = resilience
        self.timeout = timeout
        self.context = ToolContext(store=store, config=config, http=http)

    @property
    def store(self) -> HubStore:
        return self.context.store

    def _start(
        self, spec: ToolSpec, args: Any, connector: str, bulkhead: Bulkhead
    ) -> asyncio.Future:
        """
        Launch the handler and return a future for its Result.

        The caller has already taken a bulkhead slot. It is released when the
        handler really finishes, so a thread still running past the deadline
        keeps holding it.
        """
        try:
            if inspect.iscoroutinefunction(spec.handler):
                future = asyncio.ensure_future(spec.handler(args, self.context))
                future.add_done_callback(lambda _: bulkhead.release())
                return future
            # Blocking handlers (store I/O, httpx) run on the connector's own pool.
            executor = self.resilience.get_executor(connector)
            work = executor.submit(spec.handler, args, self.context)
        except BaseException:
            bulkhead.release()
            raise
        work.add_done_callback(lambda _: bulkhead.release())
        return asyncio.wrap_future(work)

    async def dispatch(self, tool_name: str, raw_args: Any = None) -> Result:
        """
        Run one tool call.

        Raises:
            NotFoundError: unknown tool, or an entity the handler looked up.
            InvalidParamsError: arguments failed validation.
            RunStateError: the handler was asked to change a finished run.
            ConnectorUnavailableError: the connector's breaker is open.
            ResourceExhaustedError: the connector's bulkhead is full.
            ToolTimeoutError: the handler missed the deadline.
            HandlerFailureError: the handler raised or returned a failure.
        """
        started = time.perf_counter()

        spec = self.registry.get(tool_name)
        if spec is None:
            logger.warning("Unknown tool requested: %s", tool_name)
            raise NotFoundError.unknown_tool(tool_name)

        args = validate_args(spec.input_model, raw_args)

        connector = resolve_connector(spec)
        breaker = self.resilience.get_breaker(connector)
        bulkhead = self.resilience.get_bulkhead(connector)

        admitted, is_probe = breaker.try_acquire()
        if not admitted:
            logger.warning("Rejected %s: connector '%s' is open", tool_name, connector)
            raise ConnectorUnavailableError(connector)

        try:
            bulkhead.acquire()
        except ResourceExhaustedError:
            if is_probe:
                breaker.abandon_probe()
            logger.warning("Rejected %s: bulkhead '%s' is full", tool_name, connector)
            raise

        deadline_message = f"Tool '{tool_name}' timed out after {self.timeout:g}s"
        try:
            result = await with_timeout(
                self._start(spec, args, connector, bulkhead), self.timeout, deadline_message
            )
        except asyncio.CancelledError:
            if is_probe:
                breaker.abandon_probe()
            raise
        except HubError as e:
            breaker.record_failure()
            self._log_outcome(tool_name, connector, e.code, started)
            raise
        except Exception as e:
            breaker.record_failure()
            logger.error("Tool %s raised: %s", tool_name, e, exc_info=True)
            self._log_outcome(tool_name, connector, HandlerFailureError.code, started)
            raise HandlerFailureError(f"Tool '{tool_name}' failed: {e}") from e

        if not result.success:
            breaker.record_failure()
            self._log_outcome(tool_name, connector, HandlerFailureError.code, started)
            raise HandlerFailureError(
                result.reason or f"Tool '{tool_name}' reported failure",
                data=result.data,
            )

        breaker.record_success()
        self._log_outcome(tool_name, connector, "ok", started)
        return result

    @staticmethod
    def _log_outcome(tool_name: str, connector: str, outcome: str, started: float):
        elapsed_ms = (time.perf_counter() - started) * 1000
        level = logging.INFO if outcome == "ok" else logging.WARNING
        logger.log(
            level,
            "Dispatched %s via %s: %s (%.1f ms)",
            tool_name,
            connector,
            outcome,
            elapsed_ms,
        )
