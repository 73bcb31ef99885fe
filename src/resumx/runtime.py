"""Runtime: owns stores, computations, the subscription graph and the flush.

Stores and computations are plain records keyed by id. Handles and
Computation objects are how callers refer to them; the ids are what gets
serialized. Keeping data keyed by id is what lets a snapshot be turned
back into a working runtime without re-running anything.
"""

from __future__ import annotations

import itertools
import logging
import weakref
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any, Callable, Iterable, Iterator, Union

from resumx._tracking import tracking
from resumx.deferred import ChunkLoader, DeferredRef, Importer
from resumx.errors import ResolutionError, ResumxError
from resumx.graph import SubscriptionGraph
from resumx.scheduler import Computation, ErrorHandler, FlushPort, Scheduler, Status
from resumx.store import StoreProxy

if TYPE_CHECKING:
    from resumx.snapshot import GraphSnapshot

logger = logging.getLogger("resumx.runtime")

RenderHandler = Callable[[Computation, Any], None]
RefLike = Union[DeferredRef, str, Callable[..., Any]]


class Runtime:
    """One reactive world: stores, computations and their subscriptions.

    Args:
        manifest: symbol -> chunk location table for ``loader.ref()``.
        importer: chunk fetcher handed to the default ChunkLoader.
        loader: a ready ChunkLoader; overrides manifest and importer.
        port: flush port; defaults to the process default (``next_tick``).
        on_render: called with (computation, output) after each successful run.
        on_error: called with (computation, exception) for flush failures.

    Usage:
        rt = Runtime(port=ManualTicker())
        counter = rt.store({"count": 0})
        view = await rt.mount(render_counter, counter, owner=counter)
        counter["count"] = 1   # view is now dirty
        await rt.flush()       # view re-ran
    """

    def __init__(
        self,
        *,
        manifest: Mapping[str, str] | None = None,
        importer: Importer | None = None,
        loader: ChunkLoader | None = None,
        port: FlushPort | None = None,
        on_render: RenderHandler | None = None,
        on_error: ErrorHandler | None = None,
    ) -> None:
        self.graph = SubscriptionGraph()
        self.loader = loader or ChunkLoader(manifest, importer)
        self.scheduler = Scheduler(self, port, on_error)
        self._on_render = on_render
        self._values: dict[str, dict[str, Any]] = {}
        self._handles: weakref.WeakValueDictionary[str, StoreProxy] = weakref.WeakValueDictionary()
        self._finalizers: dict[str, weakref.finalize] = {}
        self._computations: dict[str, Computation] = {}
        self._owned: dict[str, dict[str, None]] = {}
        self._store_ids = itertools.count()
        self._computation_ids = itertools.count()

    # --- Stores ---

    def store(self, initial: Mapping[str, Any] | None = None, *, id: str | None = None) -> StoreProxy:
        """Create a container and return its handle."""
        store_id = self._allocate(id, self._values, "s", self._store_ids)
        return self._adopt_store(store_id, initial)

    def _adopt_store(self, store_id: str, initial: Mapping[str, Any] | None = None) -> StoreProxy:
        self._values[store_id] = dict(initial) if initial else {}
        handle = StoreProxy(self, store_id)
        self._handles[store_id] = handle
        self._finalizers[store_id] = weakref.finalize(handle, self._release_store, store_id)
        return handle

    def get_store(self, store_id: str) -> StoreProxy | None:
        return self._handles.get(store_id)

    def stores(self) -> Iterator[StoreProxy]:
        for store_id in list(self._values):
            handle = self._handles.get(store_id)
            if handle is not None:
                yield handle

    def dispose_store(self, store: StoreProxy | str) -> None:
        """Drop a container, every edge on it, and every computation it owns."""
        store_id = store if isinstance(store, str) else store.id
        finalizer = self._finalizers.pop(store_id, None)
        if finalizer is not None:
            finalizer.detach()
        self._release_store(store_id)

    def _release_store(self, store_id: str) -> None:
        if self._values.pop(store_id, None) is None:
            return
        self._finalizers.pop(store_id, None)
        self._handles.pop(store_id, None)
        self.graph.discard_store(store_id)
        for computation_id in list(self._owned.pop(store_id, ())):
            computation = self._computations.get(computation_id)
            if computation is not None:
                self.dispose(computation)
        logger.debug("Released store %s", store_id)

    # --- Computations ---

    def get_computation(self, computation_id: str) -> Computation | None:
        return self._computations.get(computation_id)

    @property
    def computations(self) -> list[Computation]:
        return list(self._computations.values())

    def _as_ref(self, ref: RefLike) -> DeferredRef:
        if isinstance(ref, DeferredRef):
            return ref
        if isinstance(ref, str):
            return self.loader.ref(ref)
        if callable(ref):
            return DeferredRef.of(ref)
        raise TypeError(f"expected DeferredRef, symbol name or function, got {type(ref).__name__}")

    def _register(self, computation: Computation) -> None:
        if computation.owner is not None:
            if computation.owner not in self._values:
                raise ResumxError(f"owner store {computation.owner!r} does not exist")
            self._owned.setdefault(computation.owner, {})[computation.id] = None
        self._computations[computation.id] = computation

    async def mount(
        self,
        ref: RefLike,
        *captures: Any,
        owner: StoreProxy | str | None = None,
        id: str | None = None,
    ) -> Computation:
        """Create a computation and run it for the first time.

        ref may be a DeferredRef, a symbol name from the manifest, or a live
        function. The computation is re-invoked later as ``fn(*captures)``.
        Resolution and execution errors propagate to the caller, leaving the
        computation registered in error state.
        """
        deferred = self._as_ref(ref)
        owner_id = owner.id if isinstance(owner, StoreProxy) else owner
        computation_id = self._allocate(id, self._computations, "c", self._computation_ids)
        computation = Computation(computation_id, deferred, captures, owner_id)
        self._register(computation)
        computation.status = Status.RUNNING
        try:
            fn = deferred.value if deferred.resolved else await self.loader.resolve(deferred)
        except Exception as exc:
            computation.status = Status.ERROR
            computation.error = exc
            raise
        if self._computations.get(computation_id) is not computation:
            # disposed while its code was loading
            computation.status = Status.CLEAN
            return computation
        self._execute(computation, fn)
        return computation

    def run_now(self, computation: Computation) -> Any:
        """Execute synchronously, e.g. a child render inside a parent's.

        The reference must already be resolved.
        """
        if computation.status is Status.RUNNING:
            raise ResumxError(f"{computation!r} is already running")
        if not computation.ref.resolved:
            raise ResolutionError(f"{computation.ref!r} must be resolved before run_now")
        self.scheduler.discard(computation.id)
        computation.status = Status.RUNNING
        self.graph.clear(computation.id)
        return self._execute(computation, computation.ref.value)

    def _execute(self, computation: Computation, fn: Callable[..., Any]) -> Any:
        try:
            with tracking(self, computation.id):
                output = fn(*computation.captures)
        except Exception as exc:
            computation.status = Status.ERROR
            computation.error = exc
            raise
        computation.status = Status.CLEAN
        computation.error = None
        computation.output = output
        computation.runs += 1
        if self._on_render is not None:
            self._on_render(computation, output)
        return output

    def dispose(self, computation: Computation | str) -> None:
        """Stop tracking a computation. Queued ids for it become no-ops."""
        computation_id = computation if isinstance(computation, str) else computation.id
        removed = self._computations.pop(computation_id, None)
        if removed is None:
            return
        self.graph.clear(computation_id)
        self.scheduler.discard(computation_id)
        if removed.owner is not None:
            owned = self._owned.get(removed.owner)
            if owned is not None:
                owned.pop(computation_id, None)

    # --- Invalidation ---

    def _invalidate(self, store_id: str, keys: Iterable[str]) -> None:
        for key in keys:
            for computation_id in self.graph.ordered_subscribers_of(store_id, key):
                self.scheduler.mark_dirty(computation_id)
        # also retries a request an earlier port call failed to make
        if self.scheduler.pending_count:
            self.scheduler.schedule_flush()

    def subscribers_of(self, store: StoreProxy | str, key: str) -> set[str]:
        store_id = store if isinstance(store, str) else store.id
        return self.graph.subscribers_of(store_id, key)

    async def flush(self) -> int:
        """Flush now instead of waiting for the port's tick."""
        return await self.scheduler.flush()

    # --- Snapshot ---

    def serialize(self) -> GraphSnapshot:
        from resumx.snapshot import serialize

        return serialize(self)

    # --- Internals ---

    @staticmethod
    def _allocate(requested: str | None, taken: Mapping[str, Any], prefix: str, counter: Iterator[int]) -> str:
        if requested is not None:
            if requested in taken:
                raise ResumxError(f"id {requested!r} is already in use")
            return requested
        while True:
            candidate = f"{prefix}{next(counter)}"
            if candidate not in taken:
                return candidate

    def __repr__(self) -> str:
        return (
            f"Runtime({len(self._values)} stores, {len(self._computations)} computations, "
            f"{len(self.graph)} subscriptions)"
        )
