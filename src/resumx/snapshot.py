"""Graph snapshots: serialize a runtime, resume it elsewhere.

The wire form has three lists: store descriptors (id -> property snapshot),
subscription edges (store, key, computation) and computation descriptors
(id -> chunk, symbol, captures). Closures never appear in it; computations
travel as deferred references.

Resume rebuilds stores, computations and edges verbatim. It loads no chunk
and runs no computation, so its cost is linear in the snapshot size however
expensive the original renders were. Entries that point at ids the snapshot
cannot supply are skipped and reported; the rest of the graph still comes
back.

Values inside stores and captures are encoded with two tags:
``{"$store": id}`` for store handles and ``{"$ref": [chunk, symbol]}`` for
deferred references. Tuples come back as lists.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from resumx.deferred import DeferredRef
from resumx.errors import SnapshotError, StaleReferenceError
from resumx.runtime import Runtime
from resumx.scheduler import Computation, Status
from resumx.store import StoreProxy

logger = logging.getLogger("resumx.snapshot")

STORE_TAG = "$store"
REF_TAG = "$ref"

FORMAT_VERSION = 1


# ─── Wire models ─────────────────────────────────────────────────────────────


class StoreDescriptor(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    state: dict[str, Any] = Field(default_factory=dict)


class SubscriptionEdge(BaseModel):
    model_config = ConfigDict(frozen=True)

    store: str
    key: str
    computation: str


class ComputationDescriptor(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    chunk: str
    symbol: str
    captures: list[Any] = Field(default_factory=list)
    owner: str | None = None
    status: Status = Status.CLEAN


class GraphSnapshot(BaseModel):
    """Transportable form of a runtime's stores, computations and edges."""

    version: int = FORMAT_VERSION
    stores: list[StoreDescriptor] = Field(default_factory=list)
    subscriptions: list[SubscriptionEdge] = Field(default_factory=list)
    computations: list[ComputationDescriptor] = Field(default_factory=list)

    def to_json(self, **kwargs: Any) -> str:
        return self.model_dump_json(**kwargs)

    @classmethod
    def from_json(cls, payload: str | bytes) -> GraphSnapshot:
        try:
            return cls.model_validate_json(payload)
        except ValidationError as exc:
            raise SnapshotError(f"malformed snapshot: {exc}") from exc

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> GraphSnapshot:
        try:
            return cls.model_validate(payload)
        except ValidationError as exc:
            raise SnapshotError(f"malformed snapshot: {exc}") from exc


# ─── Value codec ─────────────────────────────────────────────────────────────


def encode(value: Any) -> Any:
    """Turn a store value or capture into JSON-compatible data."""
    if isinstance(value, StoreProxy):
        return {STORE_TAG: value.id}
    if isinstance(value, DeferredRef):
        return {REF_TAG: [value.chunk, value.symbol]}
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, (list, tuple)):
        return [encode(item) for item in value]
    if isinstance(value, dict):
        encoded = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise SnapshotError(f"cannot encode non-string key {key!r}")
            encoded[key] = encode(item)
        return encoded
    raise SnapshotError(f"cannot encode {type(value).__name__} for transport")


def decode(value: Any, stores: Mapping[str, StoreProxy], refs: dict[tuple[str, str], DeferredRef]) -> Any:
    """Inverse of encode. Raises StaleReferenceError for unknown store ids."""
    if isinstance(value, dict):
        if len(value) == 1 and STORE_TAG in value:
            store_id = value[STORE_TAG]
            handle = stores.get(store_id)
            if handle is None:
                raise StaleReferenceError(f"store {store_id!r} is not in the snapshot")
            return handle
        if len(value) == 1 and REF_TAG in value:
            chunk, symbol = value[REF_TAG]
            return _intern(refs, chunk, symbol)
        return {key: decode(item, stores, refs) for key, item in value.items()}
    if isinstance(value, list):
        return [decode(item, stores, refs) for item in value]
    return value


def _intern(refs: dict[tuple[str, str], DeferredRef], chunk: str, symbol: str) -> DeferredRef:
    ref = refs.get((chunk, symbol))
    if ref is None:
        ref = refs[(chunk, symbol)] = DeferredRef(chunk, symbol)
    return ref


# ─── Serialize ───────────────────────────────────────────────────────────────


def serialize(runtime: Runtime) -> GraphSnapshot:
    """Export every live store, computation and subscription edge."""
    stores = []
    for store_id, values in list(runtime._values.items()):
        try:
            state = encode(values)
        except SnapshotError as exc:
            raise SnapshotError(f"store {store_id!r}: {exc}") from exc
        stores.append(StoreDescriptor(id=store_id, state=state))

    computations = []
    for computation in runtime.computations:
        try:
            captures = encode(list(computation.captures))
        except SnapshotError as exc:
            raise SnapshotError(f"computation {computation.id!r}: {exc}") from exc
        computations.append(
            ComputationDescriptor(
                id=computation.id,
                chunk=computation.ref.chunk,
                symbol=computation.ref.symbol,
                captures=captures,
                owner=computation.owner,
                status=computation.status,
            )
        )

    subscriptions = [
        SubscriptionEdge(store=edge.store_id, key=edge.key, computation=edge.computation_id)
        for edge in list(runtime.graph.edges())
    ]
    return GraphSnapshot(stores=stores, subscriptions=subscriptions, computations=computations)


# ─── Resume ──────────────────────────────────────────────────────────────────


@dataclass
class StaleReference:
    """One snapshot entry resume had to skip."""

    kind: str  # "store", "computation" or "subscription"
    entry: str
    error: StaleReferenceError


@dataclass
class ResumeReport:
    """Outcome of resume().

    ``stores`` holds every restored handle. Keep the report (or the handles)
    alive: stores nothing else references are released when their handle is
    collected.
    """

    runtime: Runtime
    stores: dict[str, StoreProxy] = field(default_factory=dict)
    failures: list[StaleReference] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures


def _stale(report: ResumeReport, kind: str, entry: str, error: StaleReferenceError) -> None:
    logger.warning("Skipping stale %s %s: %s", kind, entry, error)
    report.failures.append(StaleReference(kind, entry, error))


def resume(
    snapshot: GraphSnapshot | str | bytes | Mapping[str, Any],
    containers: Mapping[str, Mapping[str, Any]] | None = None,
    **config: Any,
) -> ResumeReport:
    """Rebuild a runtime from a snapshot without running any computation.

    Args:
        snapshot: a GraphSnapshot, its JSON text, or its dict form.
        containers: restored container contents by store id. They take
            precedence over the property snapshots inside the payload, and
            may add stores the payload lacks.
        **config: keyword arguments for the new Runtime (loader, port, ...).
    """
    if isinstance(snapshot, (str, bytes)):
        snapshot = GraphSnapshot.from_json(snapshot)
    elif not isinstance(snapshot, GraphSnapshot):
        snapshot = GraphSnapshot.from_dict(snapshot)

    runtime = Runtime(**config)
    report = ResumeReport(runtime)
    refs: dict[tuple[str, str], DeferredRef] = {}

    raw: dict[str, Mapping[str, Any]] = {store.id: store.state for store in snapshot.stores}
    if containers:
        raw.update(containers)
    for store_id in raw:
        report.stores[store_id] = runtime._adopt_store(store_id)
    for store_id, state in raw.items():
        values = runtime._values[store_id]
        for key, value in state.items():
            try:
                values[key] = decode(value, report.stores, refs)
            except StaleReferenceError as exc:
                _stale(report, "store", f"{store_id}.{key}", exc)

    requeue = []
    for descriptor in snapshot.computations:
        if descriptor.id in runtime._computations:
            _stale(report, "computation", descriptor.id, StaleReferenceError("duplicate computation id"))
            continue
        if descriptor.owner is not None and descriptor.owner not in report.stores:
            _stale(
                report,
                "computation",
                descriptor.id,
                StaleReferenceError(f"owner store {descriptor.owner!r} is not in the snapshot"),
            )
            continue
        try:
            captures = decode(descriptor.captures, report.stores, refs)
        except StaleReferenceError as exc:
            _stale(report, "computation", descriptor.id, exc)
            continue
        computation = Computation(
            descriptor.id,
            _intern(refs, descriptor.chunk, descriptor.symbol),
            tuple(captures),
            descriptor.owner,
        )
        if descriptor.status in (Status.DIRTY, Status.RUNNING):
            requeue.append(descriptor.id)
        elif descriptor.status is Status.ERROR:
            computation.status = Status.ERROR
        runtime._register(computation)

    for edge in snapshot.subscriptions:
        entry = f"({edge.store}, {edge.key}) -> {edge.computation}"
        if edge.store not in report.stores:
            _stale(report, "subscription", entry, StaleReferenceError(f"store {edge.store!r} is not in the snapshot"))
        elif edge.computation not in runtime._computations:
            _stale(
                report,
                "subscription",
                entry,
                StaleReferenceError(f"computation {edge.computation!r} is not in the snapshot"),
            )
        else:
            runtime.graph.record(edge.store, edge.key, edge.computation)

    if requeue:
        for computation_id in requeue:
            runtime.scheduler.mark_dirty(computation_id)
        try:
            runtime.scheduler.schedule_flush()
        except RuntimeError as exc:
            # e.g. next_tick outside a running loop; the queue is kept
            logger.warning(
                "Could not schedule a flush for %d re-queued computation(s): %s", len(requeue), exc
            )

    logger.info(
        "Resumed %d stores, %d computations, %d subscriptions (%d stale)",
        len(report.stores),
        len(runtime._computations),
        len(runtime.graph),
        len(report.failures),
    )
    return report
