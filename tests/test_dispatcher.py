"""Tests for resilience-aware dispatch."""

import asyncio
import threading
import time

import pytest

from hub_mcp.config import CORE_CONNECTOR
from hub_mcp.dispatcher import Dispatcher, resolve_connector
from hub_mcp.errors import (
    ConnectorUnavailableError,
    HandlerFailureError,
    InvalidParamsError,
    NotFoundError,
    ResourceExhaustedError,
    RunStateError,
    ToolTimeoutError,
)
from hub_mcp.memory_store import MemoryStore
from hub_mcp.models import Result
from hub_mcp.resilience import CLOSED, HALF_OPEN, OPEN, ResilienceRegistry
from hub_mcp.schemas import ToolArgs
from hub_mcp.tools import ToolRegistry, ToolSpec, build_registry


class EchoArgs(ToolArgs):
    value: str = "hi"


class Calls:
    """Counts handler invocations and returns a configurable outcome."""

    def __init__(self, outcome=None):
        self.count = 0
        self.outcome = outcome or Result(success=True, data=[{"ok": True}])

    def __call__(self, args, ctx):
        self.count += 1
        if isinstance(self.outcome, Exception):
            raise self.outcome
        return self.outcome


async def settle():
    """Let freshly created tasks run up to their first real suspension."""
    for _ in range(5):
        await asyncio.sleep(0)


def make_dispatcher(config, clock, *specs, timeout=1.0, **resilience):
    registry = ToolRegistry()
    for spec in specs:
        registry.register(spec)
    return Dispatcher(
        registry,
        ResilienceRegistry(clock=clock, **resilience),
        MemoryStore(),
        config,
        timeout=timeout,
    )


class TestResolveConnector:
    def test_prefix_before_first_underscore(self):
        spec = ToolSpec("github_put_file", "", EchoArgs, Calls())
        assert resolve_connector(spec) == "github"

    def test_name_without_underscore_is_core(self):
        assert resolve_connector(ToolSpec("ping", "", EchoArgs, Calls())) == CORE_CONNECTOR

    def test_explicit_connector_wins(self):
        spec = ToolSpec("memory_put", "", EchoArgs, Calls(), connector="core")
        assert resolve_connector(spec) == "core"

    def test_catalog_connectors(self):
        registry = build_registry()
        assert resolve_connector(registry.get("run_step")) == CORE_CONNECTOR
        assert resolve_connector(registry.get("figma_import")) == "figma"
        assert resolve_connector(registry.get("confluence_upsert_page")) == "confluence"
        assert resolve_connector(registry.get("gamma_get_themes")) == "gamma"


class TestDispatchSuccess:
    @pytest.mark.asyncio
    async def test_returns_handler_result(self, config, clock):
        handler = Calls()
        dispatcher = make_dispatcher(config, clock, ToolSpec("echo_call", "", EchoArgs, handler))

        result = await dispatcher.dispatch("echo_call", {"value": "x"})

        assert result.success
        assert handler.count == 1
        assert dispatcher.resilience.get_breaker("echo").state == CLOSED

    @pytest.mark.asyncio
    async def test_async_handlers_supported(self, config, clock):
        async def handler(args, ctx):
            await asyncio.sleep(0)
            return Result(success=True, data=[{"value": args.value}])

        dispatcher = make_dispatcher(config, clock, ToolSpec("echo_async", "", EchoArgs, handler))
        result = await dispatcher.dispatch("echo_async", {"value": "async"})
        assert result.data == [{"value": "async"}]

    @pytest.mark.asyncio
    async def test_handler_receives_validated_model(self, config, clock):
        seen = {}

        def handler(args, ctx):
            seen["args"] = args
            seen["store"] = ctx.store
            return Result(success=True)

        dispatcher = make_dispatcher(config, clock, ToolSpec("echo_model", "", EchoArgs, handler))
        await dispatcher.dispatch("echo_model", None)

        assert isinstance(seen["args"], EchoArgs)
        assert seen["args"].value == "hi"
        assert seen["store"] is dispatcher.store


class TestDispatchRejections:
    @pytest.mark.asyncio
    async def test_unknown_tool(self, config, clock):
        """Unknown tools fail before any resilience bookkeeping."""
        dispatcher = make_dispatcher(config, clock)

        with pytest.raises(NotFoundError) as exc:
            await dispatcher.dispatch("nope_tool", {})

        assert exc.value.code == "method_not_found"
        assert dispatcher.resilience.snapshot() == {}

    @pytest.mark.asyncio
    async def test_invalid_params_leave_breaker_untouched(self, config, clock):
        class StrictArgs(ToolArgs):
            count: int

        handler = Calls()
        dispatcher = make_dispatcher(config, clock, ToolSpec("strict_call", "", StrictArgs, handler))

        for _ in range(10):
            with pytest.raises(InvalidParamsError) as exc:
                await dispatcher.dispatch("strict_call", {"count": "many"})

        assert exc.value.issues[0][0] == "count"
        assert handler.count == 0
        assert dispatcher.resilience.snapshot() == {}

    @pytest.mark.asyncio
    async def test_open_breaker_rejects_without_calling_handler(self, config, clock):
        handler = Calls(Result(success=False, reason="upstream 500"))
        dispatcher = make_dispatcher(
            config, clock, ToolSpec("flaky_call", "", EchoArgs, handler), failure_threshold=5
        )

        for _ in range(5):
            with pytest.raises(HandlerFailureError):
                await dispatcher.dispatch("flaky_call", {})
        assert dispatcher.resilience.get_breaker("flaky").state == OPEN

        with pytest.raises(ConnectorUnavailableError) as exc:
            await dispatcher.dispatch("flaky_call", {})

        assert exc.value.connector_id == "flaky"
        assert handler.count == 5

    @pytest.mark.asyncio
    async def test_breakers_isolated_per_connector(self, config, clock):
        failing = Calls(Result(success=False, reason="down"))
        healthy = Calls()
        dispatcher = make_dispatcher(
            config,
            clock,
            ToolSpec("bad_call", "", EchoArgs, failing),
            ToolSpec("good_call", "", EchoArgs, healthy),
            failure_threshold=1,
        )

        with pytest.raises(HandlerFailureError):
            await dispatcher.dispatch("bad_call", {})
        with pytest.raises(ConnectorUnavailableError):
            await dispatcher.dispatch("bad_call", {})

        assert (await dispatcher.dispatch("good_call", {})).success

    @pytest.mark.asyncio
    async def test_bulkhead_full(self, config, clock):
        release = asyncio.Event()

        async def slow(args, ctx):
            await release.wait()
            return Result(success=True)

        dispatcher = make_dispatcher(
            config, clock, ToolSpec("slow_call", "", EchoArgs, slow), max_concurrent=1
        )

        first = asyncio.create_task(dispatcher.dispatch("slow_call", {}))
        await asyncio.sleep(0)
        with pytest.raises(ResourceExhaustedError):
            await dispatcher.dispatch("slow_call", {})

        release.set()
        assert (await first).success
        breaker = dispatcher.resilience.get_breaker("slow")
        assert breaker.failure_count == 0


class TestDispatchFailures:
    @pytest.mark.asyncio
    async def test_failure_result_raises_with_data(self, config, clock):
        outcome = Result(success=False, reason="Slack error: channel_not_found", data=[{"status": 200}])
        dispatcher = make_dispatcher(config, clock, ToolSpec("slack_post", "", EchoArgs, Calls(outcome)))

        with pytest.raises(HandlerFailureError) as exc:
            await dispatcher.dispatch("slack_post", {})

        assert exc.value.message == "Slack error: channel_not_found"
        assert exc.value.to_dict()["data"] == [{"status": 200}]
        assert dispatcher.resilience.get_breaker("slack").failure_count == 1

    @pytest.mark.asyncio
    async def test_handler_exception_wrapped(self, config, clock):
        dispatcher = make_dispatcher(
            config, clock, ToolSpec("boom_call", "", EchoArgs, Calls(RuntimeError("kaput")))
        )

        with pytest.raises(HandlerFailureError, match="kaput") as exc:
            await dispatcher.dispatch("boom_call", {})

        assert isinstance(exc.value.__cause__, RuntimeError)
        assert dispatcher.resilience.get_breaker("boom").failure_count == 1

    @pytest.mark.asyncio
    async def test_async_timeout_counts_as_failure(self, config, clock):
        async def hang(args, ctx):
            await asyncio.sleep(10)

        dispatcher = make_dispatcher(
            config, clock, ToolSpec("hang_call", "", EchoArgs, hang), timeout=0.05
        )

        with pytest.raises(ToolTimeoutError):
            await dispatcher.dispatch("hang_call", {})

        assert dispatcher.resilience.get_breaker("hang").failure_count == 1
        assert dispatcher.resilience.get_bulkhead("hang").active_count == 0

    @pytest.mark.asyncio
    async def test_sync_timeout(self, config, clock):
        def block(args, ctx):
            time.sleep(0.3)
            return Result(success=True)

        dispatcher = make_dispatcher(
            config, clock, ToolSpec("block_call", "", EchoArgs, block), timeout=0.05
        )

        with pytest.raises(ToolTimeoutError, match="block_call"):
            await dispatcher.dispatch("block_call", {})

    @pytest.mark.asyncio
    async def test_errors_raised_by_handler_count_as_failures(self, config, clock):
        """A handler raising a hub error is a genuine failure, like any other."""
        handler = Calls(Result(success=False, reason="upstream 500"))
        dispatcher = make_dispatcher(
            config,
            clock,
            ToolSpec("lookup_flaky", "", EchoArgs, handler),
            ToolSpec("lookup_missing", "", EchoArgs, Calls(NotFoundError("Run not found: x"))),
            failure_threshold=5,
        )

        for _ in range(4):
            with pytest.raises(HandlerFailureError):
                await dispatcher.dispatch("lookup_flaky", {})
        with pytest.raises(NotFoundError):
            await dispatcher.dispatch("lookup_missing", {})

        breaker = dispatcher.resilience.get_breaker("lookup")
        assert breaker.state == OPEN
        assert breaker.failure_count == 5

    @pytest.mark.asyncio
    async def test_run_state_error_propagates_unchanged(self, config, clock):
        dispatcher = make_dispatcher(
            config,
            clock,
            ToolSpec("lookup_done", "", EchoArgs, Calls(RunStateError("already completed"))),
        )

        with pytest.raises(RunStateError, match="already completed"):
            await dispatcher.dispatch("lookup_done", {})
        assert dispatcher.resilience.get_breaker("lookup").failure_count == 1


class TestConnectorIsolation:
    @pytest.mark.asyncio
    async def test_hung_threads_only_exhaust_their_connector(self, config, clock):
        """Threads still running past the deadline keep their slot on their own connector."""
        gate = threading.Event()

        def hang(args, ctx):
            gate.wait(5)
            return Result(success=True)

        registry = build_registry(include_connectors=False)
        registry.register(ToolSpec("slow_call", "", EchoArgs, hang))
        dispatcher = Dispatcher(
            registry,
            ResilienceRegistry(clock=clock, failure_threshold=100, max_concurrent=5),
            MemoryStore(),
            config,
            timeout=0.2,
        )
        slow = dispatcher.resilience.get_bulkhead("slow")

        try:
            burst = [dispatcher.dispatch("slow_call", {}) for _ in range(5)]
            outcomes = await asyncio.gather(*burst, return_exceptions=True)
            assert all(isinstance(o, ToolTimeoutError) for o in outcomes)
            assert slow.active_count == 5

            with pytest.raises(ResourceExhaustedError):
                await dispatcher.dispatch("slow_call", {})

            for _ in range(10):
                result = await dispatcher.dispatch("memory_get", {"key": "absent"})
                assert result.success
            core = dispatcher.resilience.get_breaker(CORE_CONNECTOR)
            assert core.state == CLOSED
            assert core.failure_count == 0
        finally:
            gate.set()
            dispatcher.resilience.shutdown(wait=True)

        assert slow.active_count == 0

    @pytest.mark.asyncio
    async def test_sync_handlers_run_on_connector_pool(self, config, clock):
        seen = []

        def record_thread(args, ctx):
            seen.append(threading.current_thread().name)
            return Result(success=True)

        dispatcher = make_dispatcher(
            config,
            clock,
            ToolSpec("alpha_call", "", EchoArgs, record_thread),
            ToolSpec("beta_call", "", EchoArgs, record_thread),
        )
        try:
            await dispatcher.dispatch("alpha_call", {})
            await dispatcher.dispatch("beta_call", {})
        finally:
            dispatcher.resilience.shutdown(wait=True)

        assert seen[0].startswith("hub-alpha")
        assert seen[1].startswith("hub-beta")


class TestHalfOpenRecovery:
    @pytest.mark.asyncio
    async def test_probe_success_closes_breaker(self, config, clock):
        handler = Calls(Result(success=False, reason="down"))
        dispatcher = make_dispatcher(
            config,
            clock,
            ToolSpec("probe_call", "", EchoArgs, handler),
            failure_threshold=1,
            reset_timeout=300,
        )

        with pytest.raises(HandlerFailureError):
            await dispatcher.dispatch("probe_call", {})

        clock.advance(300)
        handler.outcome = Result(success=True)
        assert (await dispatcher.dispatch("probe_call", {})).success
        assert dispatcher.resilience.get_breaker("probe").state == CLOSED

    @pytest.mark.asyncio
    async def test_probe_failure_reopens(self, config, clock):
        handler = Calls(Result(success=False, reason="down"))
        dispatcher = make_dispatcher(
            config,
            clock,
            ToolSpec("probe_call", "", EchoArgs, handler),
            failure_threshold=1,
            reset_timeout=300,
        )

        with pytest.raises(HandlerFailureError):
            await dispatcher.dispatch("probe_call", {})
        clock.advance(300)
        with pytest.raises(HandlerFailureError):
            await dispatcher.dispatch("probe_call", {})

        assert dispatcher.resilience.get_breaker("probe").state == OPEN
        with pytest.raises(ConnectorUnavailableError):
            await dispatcher.dispatch("probe_call", {})
        assert handler.count == 2

    @pytest.mark.asyncio
    async def test_rejected_probe_does_not_wedge_half_open(self, config, clock):
        release = asyncio.Event()
        state = {"fail": True}

        async def handler(args, ctx):
            if state["fail"]:
                return Result(success=False, reason="down")
            await release.wait()
            return Result(success=True)

        dispatcher = make_dispatcher(
            config,
            clock,
            ToolSpec("wedge_call", "", EchoArgs, handler),
            failure_threshold=1,
            reset_timeout=300,
            max_concurrent=1,
        )
        with pytest.raises(HandlerFailureError):
            await dispatcher.dispatch("wedge_call", {})

        # Occupy the bulkhead directly so the probe is rejected.
        bulkhead = dispatcher.resilience.get_bulkhead("wedge")
        occupant = asyncio.create_task(bulkhead.execute(release.wait))
        await asyncio.sleep(0)

        clock.advance(300)
        with pytest.raises(ResourceExhaustedError):
            await dispatcher.dispatch("wedge_call", {})
        assert dispatcher.resilience.get_breaker("wedge").state == OPEN

        release.set()
        await occupant
        state["fail"] = False
        assert (await dispatcher.dispatch("wedge_call", {})).success
        assert dispatcher.resilience.get_breaker("wedge").state == CLOSED

    @pytest.mark.asyncio
    async def test_cancelled_older_call_leaves_probe_in_charge(self, config, clock):
        """Cancelling a call admitted before the trip does not free a second probe."""
        calls = []
        gates = {"old": asyncio.Event(), "probe": asyncio.Event()}

        async def handler(args, ctx):
            calls.append(args.value)
            if args.value == "fail":
                return Result(success=False, reason="down")
            if args.value in gates:
                await gates[args.value].wait()
            return Result(success=True)

        dispatcher = make_dispatcher(
            config,
            clock,
            ToolSpec("gated_call", "", EchoArgs, handler),
            failure_threshold=1,
            reset_timeout=300,
        )
        breaker = dispatcher.resilience.get_breaker("gated")

        old = asyncio.create_task(dispatcher.dispatch("gated_call", {"value": "old"}))
        await settle()
        with pytest.raises(HandlerFailureError):
            await dispatcher.dispatch("gated_call", {"value": "fail"})

        clock.advance(301)
        probe = asyncio.create_task(dispatcher.dispatch("gated_call", {"value": "probe"}))
        await settle()
        assert breaker.state == HALF_OPEN

        old.cancel()
        with pytest.raises(asyncio.CancelledError):
            await old
        assert breaker.state == HALF_OPEN

        with pytest.raises(ConnectorUnavailableError):
            await dispatcher.dispatch("gated_call", {"value": "second"})

        gates["probe"].set()
        assert (await probe).success
        assert breaker.state == CLOSED
        assert calls == ["old", "fail", "probe"]

    @pytest.mark.asyncio
    async def test_cancelled_probe_allows_a_new_probe(self, config, clock):
        gate = asyncio.Event()
        state = {"mode": "fail"}

        async def handler(args, ctx):
            if state["mode"] == "fail":
                return Result(success=False, reason="down")
            if state["mode"] == "hang":
                await gate.wait()
            return Result(success=True)

        dispatcher = make_dispatcher(
            config,
            clock,
            ToolSpec("gated_call", "", EchoArgs, handler),
            failure_threshold=1,
            reset_timeout=300,
        )
        breaker = dispatcher.resilience.get_breaker("gated")
        with pytest.raises(HandlerFailureError):
            await dispatcher.dispatch("gated_call", {})

        clock.advance(300)
        state["mode"] = "hang"
        probe = asyncio.create_task(dispatcher.dispatch("gated_call", {}))
        await settle()
        probe.cancel()
        with pytest.raises(asyncio.CancelledError):
            await probe
        assert breaker.state == OPEN

        state["mode"] = "ok"
        assert (await dispatcher.dispatch("gated_call", {})).success
        assert breaker.state == CLOSED


class TestCoreToolsThroughDispatcher:
    @pytest.mark.asyncio
    async def test_run_workflow(self, config, clock):
        dispatcher = Dispatcher(
            build_registry(include_connectors=False),
            ResilienceRegistry(clock=clock),
            MemoryStore(),
            config,
        )

        started = await dispatcher.dispatch("run_start", {"name": "deploy"})
        run_id = started.data[0]["id"]
        await dispatcher.dispatch(
            "run_step", {"run_id": run_id, "kind": "note", "message": "building"}
        )
        await dispatcher.dispatch("run_complete", {"run_id": run_id, "status": "completed"})

        with pytest.raises(RunStateError):
            await dispatcher.dispatch("run_complete", {"run_id": run_id, "status": "failed"})

        fetched = await dispatcher.dispatch("run_get", {"run_id": run_id})
        assert fetched.data[0]["status"] == "completed"
        assert [s["message"] for s in fetched.data[0]["steps"]] == ["building"]
        assert dispatcher.resilience.get_breaker(CORE_CONNECTOR).state == CLOSED

    @pytest.mark.asyncio
    async def test_step_on_unknown_run(self, config, clock):
        dispatcher = Dispatcher(
            build_registry(include_connectors=False),
            ResilienceRegistry(clock=clock),
            MemoryStore(),
            config,
        )
        with pytest.raises(NotFoundError) as exc:
            await dispatcher.dispatch(
                "run_step", {"run_id": "missing", "kind": "note", "message": "x"}
            )
        assert exc.value.code == "not_found"
