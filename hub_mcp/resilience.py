"""
Per-connector failure isolation.

Each connector gets its own CircuitBreaker and Bulkhead so that one failing
integration is cut off without affecting the others. State is process-local:
when the hub runs as several replicas, isolation holds per replica only.
"""

import asyncio
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Awaitable, Callable, Dict, Optional, Tuple, TypeVar

from .config import (
    BREAKER_FAILURE_THRESHOLD,
    BREAKER_RESET_SECONDS,
    BULKHEAD_MAX_CONCURRENT,
)
from .errors import ResourceExhaustedError, ToolTimeoutError

T = TypeVar("T")

logger = logging.getLogger(__name__)

CLOSED = "CLOSED"
OPEN = "OPEN"
HALF_OPEN = "HALF_OPEN"


class CircuitBreaker:
    """
    Trip/reset state machine for one connector.

    CLOSED -> OPEN after ``failure_threshold`` consecutive failures.
    OPEN -> HALF_OPEN once ``reset_timeout`` seconds have passed since the
    last failure; ``is_open()`` then admits exactly one probe call.
    A success closes the breaker; a failure while HALF_OPEN reopens it and
    restarts the clock.
    """

    def __init__(
        self,
        name: str = "",
        failure_threshold: int = BREAKER_FAILURE_THRESHOLD,
        reset_timeout: float = BREAKER_RESET_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.name = name
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self._clock = clock
        self._lock = threading.Lock()
        self._state = CLOSED
        self._failures = 0
        self._last_failure: Optional[float] = None

    @property
    def state(self) -> str:
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failures

    def try_acquire(self) -> Tuple[bool, bool]:
        """
        Admission check returning ``(admitted, is_probe)``.

        ``is_probe`` is True only for the single call admitted by the
        OPEN -> HALF_OPEN transition; that caller alone may abandon the probe.
        """
        with self._lock:
            if self._state == CLOSED:
                return True, False
            if self._state == HALF_OPEN:
                # A probe is already in flight.
                return False, False
            elapsed = self._clock() - (self._last_failure or 0.0)
            if elapsed >= self.reset_timeout:
                self._state = HALF_OPEN
                logger.info("Circuit breaker '%s' half-open, admitting probe", self.name)
                return True, True
            return False, False

    def is_open(self) -> bool:
        """Admission check; the only side effect is OPEN -> HALF_OPEN."""
        admitted, _ = self.try_acquire()
        return not admitted

    def record_success(self):
        with self._lock:
            if self._state != CLOSED:
                logger.info("Circuit breaker '%s' closed", self.name)
            self._failures = 0
            self._state = CLOSED

    def record_failure(self):
        with self._lock:
            self._failures += 1
            self._last_failure = self._clock()
            if self._state == HALF_OPEN:
                self._state = OPEN
                logger.warning("Circuit breaker '%s' probe failed, reopened", self.name)
            elif self._state == CLOSED and self._failures >= self.failure_threshold:
                self._state = OPEN
                logger.warning(
                    "Circuit breaker '%s' opened after %d consecutive failures",
                    self.name,
                    self._failures,
                )

    def abandon_probe(self):
        """
        Return a HALF_OPEN breaker to OPEN when its probe never ran.

        Only the caller that ``try_acquire`` marked as the probe may call this.
        """
        with self._lock:
            if self._state == HALF_OPEN:
                self._state = OPEN

    def snapshot(self) -> dict:
        with self._lock:
            return {"state": self._state, "failures": self._failures}


class Bulkhead:
    """
    Admission-controlled concurrency cap for one connector.

    Calls beyond ``max_concurrent`` are rejected immediately with
    ResourceExhaustedError rather than queued.
    """

    def __init__(self, name: str = "", max_concurrent: int = BULKHEAD_MAX_CONCURRENT):
        self.name = name
        self.max_concurrent = max_concurrent
        self._lock = threading.Lock()
        self._active = 0

    @property
    def active_count(self) -> int:
        return self._active

    def acquire(self):
        """Take a slot or raise ResourceExhaustedError; pair with ``release``."""
        with self._lock:
            if self._active >= self.max_concurrent:
                raise ResourceExhaustedError(
                    f"Resource limit reached for connector '{self.name}' (bulkhead full)"
                )
            self._active += 1

    def release(self):
        # Called from worker threads as well as the event loop.
        with self._lock:
            self._active -= 1

    async def execute(self, fn: Callable[[], Awaitable[T]]) -> T:
        self.acquire()
        try:
            return await fn()
        finally:
            self.release()


async def with_timeout(
    awaitable: Awaitable[T],
    timeout: float,
    message: str = "Operation timed out",
) -> T:
    """
    Race ``awaitable`` against a deadline.

    Coroutines are cancelled on expiry. Work already running in a thread
    keeps going in the background and its result is discarded; cancellation
    is best effort.
    """
    try:
        return await asyncio.wait_for(awaitable, timeout)
    except asyncio.TimeoutError:
        raise ToolTimeoutError(message) from None


class ResilienceRegistry:
    """
    Lazily created breaker, bulkhead and worker pool per connector id.

    Each connector's blocking handlers run on its own pool sized to the
    bulkhead, so threads left running past a deadline only exhaust that
    connector.
    """

    def __init__(
        self,
        failure_threshold: int = BREAKER_FAILURE_THRESHOLD,
        reset_timeout: float = BREAKER_RESET_SECONDS,
        max_concurrent: int = BULKHEAD_MAX_CONCURRENT,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self.max_concurrent = max_concurrent
        self._clock = clock
        self._lock = threading.Lock()
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._bulkheads: Dict[str, Bulkhead] = {}
        self._executors: Dict[str, ThreadPoolExecutor] = {}

    def get_breaker(self, connector_id: str) -> CircuitBreaker:
        with self._lock:
            breaker = self._breakers.get(connector_id)
            if breaker is None:
                breaker = CircuitBreaker(
                    connector_id,
                    failure_threshold=self.failure_threshold,
                    reset_timeout=self.reset_timeout,
                    clock=self._clock,
                )
                self._breakers[connector_id] = breaker
            return breaker

    def get_bulkhead(self, connector_id: str) -> Bulkhead:
        with self._lock:
            bulkhead = self._bulkheads.get(connector_id)
            if bulkhead is None:
                bulkhead = Bulkhead(connector_id, max_concurrent=self.max_concurrent)
                self._bulkheads[connector_id] = bulkhead
            return bulkhead

    def get_executor(self, connector_id: str) -> ThreadPoolExecutor:
        with self._lock:
            executor = self._executors.get(connector_id)
            if executor is None:
                executor = ThreadPoolExecutor(
                    max_workers=self.max_concurrent,
                    thread_name_prefix=f"hub-{connector_id}",
                )
                self._executors[connector_id] = executor
            return executor

    def shutdown(self, wait: bool = False):
        """Stop every connector pool; running handlers are not interrupted."""
        with self._lock:
            executors = list(self._executors.values())
            self._executors.clear()
        for executor in executors:
            executor.shutdown(wait=wait, cancel_futures=True)

    def snapshot(self) -> Dict[str, dict]:
        """Breaker state and bulkhead usage per known connector."""
        with self._lock:
            names = sorted(set(self._breakers) | set(self._bulkheads))
            breakers = dict(self._breakers)
            bulkheads = dict(self._bulkheads)
        out = {}
        for name in names:
            entry = breakers[name].snapshot() if name in breakers else {}
            if name in bulkheads:
                entry["active"] = bulkheads[name].active_count
            out[name] = entry
        return out
