"""Invalidation queue and coalescing flush scheduler.

Writes mark subscribed computations dirty. The first mark in a batch asks
the flush port for a tick; further marks before that tick ride along. At
the tick, the queue is drained in insertion order and each dirty
computation is resolved and re-run.

The flush port is injected. It receives a zero-argument callback returning
an awaitable, and must invoke it later, at whatever the host considers the
next coalescing point (next paint, end of the current task, an explicit
test tick).
"""

from __future__ import annotations

import asyncio
import enum
import logging
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from resumx.deferred import DeferredRef

if TYPE_CHECKING:
    from resumx.runtime import Runtime

logger = logging.getLogger("resumx.scheduler")

FlushCallback = Callable[[], Awaitable[None]]
FlushPort = Callable[[FlushCallback], None]
ErrorHandler = Callable[["Computation", BaseException], None]


class Status(str, enum.Enum):
    CLEAN = "clean"
    DIRTY = "dirty"
    RUNNING = "running"
    ERROR = "error"


class Computation:
    """A re-invocable unit of work: a deferred reference plus its captures.

    Re-invoked as ``fn(*captures)``. ``owner`` is the id of the store whose
    disposal disposes this computation too.
    """

    __slots__ = ("id", "ref", "captures", "owner", "status", "output", "error", "runs")

    def __init__(
        self,
        id: str,
        ref: DeferredRef,
        captures: tuple = (),
        owner: str | None = None,
    ) -> None:
        self.id = id
        self.ref = ref
        self.captures = tuple(captures)
        self.owner = owner
        self.status = Status.CLEAN
        self.output: Any = None
        self.error: BaseException | None = None
        self.runs = 0

    def __repr__(self) -> str:
        return f"Computation({self.id!r}, {self.ref.chunk}:{self.ref.symbol}, {self.status.value})"


# ─── Flush ports ─────────────────────────────────────────────────────────────

_background: set[asyncio.Task] = set()


def next_tick(callback: FlushCallback) -> None:
    """Run the flush once the current synchronous task yields.

    Requires a running asyncio loop.
    """
    loop = asyncio.get_running_loop()

    def _spawn() -> None:
        task = loop.create_task(callback())
        _background.add(task)
        task.add_done_callback(_background.discard)

    loop.call_soon(_spawn)


class ManualTicker:
    """Caller-driven flush port. Nothing flushes until ``await tick()``.

    Usage:
        ticker = ManualTicker()
        rt = Runtime(port=ticker)
        store["count"] = 1
        await ticker.tick()
    """

    def __init__(self) -> None:
        self._pending: list[FlushCallback] = []
        self.requests = 0

    def __call__(self, callback: FlushCallback) -> None:
        self._pending.append(callback)
        self.requests += 1

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def tick(self) -> int:
        """Run every callback requested so far. Returns how many ran."""
        callbacks, self._pending = self._pending, []
        for callback in callbacks:
            await callback()
        return len(callbacks)


_default_port: FlushPort = next_tick


def set_flush_port(port: FlushPort) -> None:
    """Set the flush port used by runtimes constructed without one.

    Call once at startup:
        resumx.set_flush_port(resumx.textual.after_refresh(app))
    """
    global _default_port
    _default_port = port


def default_flush_port() -> FlushPort:
    return _default_port


# ─── Scheduler ───────────────────────────────────────────────────────────────


class Scheduler:
    """Dirty-set plus single coalesced flush for one runtime."""

    def __init__(
        self,
        runtime: Runtime,
        port: FlushPort | None = None,
        on_error: ErrorHandler | None = None,
    ) -> None:
        self._runtime = runtime
        self._port = port or _default_port
        self._on_error = on_error
        self._queue: dict[str, None] = {}
        self._scheduled = False

    @property
    def pending_count(self) -> int:
        """Number of computations waiting for a flush. Useful for testing."""
        return len(self._queue)

    @property
    def is_scheduled(self) -> bool:
        return self._scheduled

    def pending(self) -> list[str]:
        return list(self._queue)

    def mark_dirty(self, computation_id: str) -> bool:
        """Queue a computation. No-op if unknown, already dirty, or running.

        Returns True if the computation was newly queued.
        """
        computation = self._runtime.get_computation(computation_id)
        if computation is None:
            return False
        if computation.status in (Status.DIRTY, Status.RUNNING):
            return False
        computation.status = Status.DIRTY
        self._queue[computation_id] = None
        return True

    def discard(self, computation_id: str) -> None:
        self._queue.pop(computation_id, None)

    def schedule_flush(self) -> None:
        """Ask the port for one flush. Repeated calls before it runs coalesce.

        If the port raises, nothing is scheduled and the error propagates;
        the queue keeps its entries for the next successful request.
        """
        if self._scheduled:
            return
        self._scheduled = True
        try:
            self._port(self._tick)
        except BaseException:
            self._scheduled = False
            raise

    async def _tick(self) -> None:
        self._scheduled = False
        await self.flush()

    async def flush(self) -> int:
        """Re-run every computation queued before this call.

        Computations dirtied while the flush runs wait for the next one.
        A failing computation is reported and left in error; its siblings
        still run. If the flush is interrupted (cancelled mid-resolve), the
        unprocessed part of the batch goes back to the front of the queue.
        Returns the number of computations that completed.
        """
        if not self._queue:
            return 0
        batch = list(self._queue)
        self._queue.clear()
        logger.debug("Flushing %d computation(s)", len(batch))

        completed = 0
        done = 0
        try:
            for computation_id in batch:
                if await self._run(computation_id):
                    completed += 1
                done += 1
        finally:
            if done < len(batch):
                self._requeue(batch[done:])
        return completed

    async def _run(self, computation_id: str) -> bool:
        computation = self._runtime.get_computation(computation_id)
        if computation is None or computation.status is not Status.DIRTY:
            logger.debug("Skipping %s: no longer pending", computation_id)
            return False
        computation.status = Status.RUNNING
        self._runtime.graph.clear(computation_id)
        try:
            ref = computation.ref
            fn = ref.value if ref.resolved else await self._runtime.loader.resolve(ref)
            if self._runtime.get_computation(computation_id) is not computation:
                logger.debug("Skipping %s: disposed while resolving", computation_id)
                computation.status = Status.CLEAN
                return False
            self._runtime._execute(computation, fn)
        except Exception as exc:
            computation.status = Status.ERROR
            computation.error = exc
            self._report(computation, exc)
            return False
        return True

    def _requeue(self, computation_ids: list[str]) -> None:
        restored: dict[str, None] = {}
        for computation_id in computation_ids:
            computation = self._runtime.get_computation(computation_id)
            if computation is None or computation.status not in (Status.DIRTY, Status.RUNNING):
                continue
            computation.status = Status.DIRTY
            restored[computation_id] = None
        if restored:
            logger.warning("Flush interrupted; %d computation(s) re-queued", len(restored))
            restored.update(self._queue)
            self._queue = restored

    def _report(self, computation: Computation, exc: Exception) -> None:
        if self._on_error is None:
            logger.error("Computation %s failed", computation.id, exc_info=exc)
            return
        try:
            self._on_error(computation, exc)
        except Exception:
            logger.exception("Error handler raised while reporting %s", computation.id)

    def __repr__(self) -> str:
        state = "scheduled" if self._scheduled else "idle"
        return f"Scheduler({len(self._queue)} pending, {state})"
