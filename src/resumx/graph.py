"""Subscription graph: which computations read which (store, key) pairs.

Indexed both ways so a write can find its subscribers and a re-execution
can drop everything a computation recorded last time, each without a scan.

Insertion-ordered dicts stand in for sets so that iteration order is
deterministic. Callers must not rely on that order for correctness.
"""

from __future__ import annotations

from typing import Iterator, NamedTuple


class Edge(NamedTuple):
    store_id: str
    key: str
    computation_id: str


class SubscriptionGraph:
    """Bidirectional (store, key) <-> computation index."""

    __slots__ = ("_subscribers", "_reads")

    def __init__(self) -> None:
        # store_id -> key -> {computation_id: None}
        self._subscribers: dict[str, dict[str, dict[str, None]]] = {}
        # computation_id -> {(store_id, key): None}
        self._reads: dict[str, dict[tuple[str, str], None]] = {}

    def record(self, store_id: str, key: str, computation_id: str) -> None:
        """Add the edge (store_id, key) -> computation_id. Idempotent."""
        self._subscribers.setdefault(store_id, {}).setdefault(key, {})[computation_id] = None
        self._reads.setdefault(computation_id, {})[(store_id, key)] = None

    def clear(self, computation_id: str) -> None:
        """Remove every edge originating from computation_id."""
        reads = self._reads.pop(computation_id, None)
        if not reads:
            return
        for store_id, key in reads:
            keys = self._subscribers.get(store_id)
            if keys is None:
                continue
            subscribers = keys.get(key)
            if subscribers is None:
                continue
            subscribers.pop(computation_id, None)
            if not subscribers:
                del keys[key]
            if not keys:
                del self._subscribers[store_id]

    def subscribers_of(self, store_id: str, key: str) -> set[str]:
        """Computations currently depending on (store_id, key)."""
        keys = self._subscribers.get(store_id)
        if keys is None:
            return set()
        return set(keys.get(key, ()))

    def ordered_subscribers_of(self, store_id: str, key: str) -> list[str]:
        """Like subscribers_of, in recording order."""
        keys = self._subscribers.get(store_id)
        if keys is None:
            return []
        return list(keys.get(key, ()))

    def dependencies_of(self, computation_id: str) -> set[tuple[str, str]]:
        """Every (store_id, key) the computation read on its last execution."""
        return set(self._reads.get(computation_id, ()))

    def discard_store(self, store_id: str) -> None:
        """Drop every edge on store_id, e.g. when the store is released."""
        keys = self._subscribers.pop(store_id, None)
        if not keys:
            return
        for key, subscribers in keys.items():
            for computation_id in subscribers:
                reads = self._reads.get(computation_id)
                if reads is None:
                    continue
                reads.pop((store_id, key), None)
                if not reads:
                    del self._reads[computation_id]

    def edges(self) -> Iterator[Edge]:
        """Every edge, grouped by store then key."""
        for store_id, keys in self._subscribers.items():
            for key, subscribers in keys.items():
                for computation_id in subscribers:
                    yield Edge(store_id, key, computation_id)

    def __len__(self) -> int:
        return sum(len(reads) for reads in self._reads.values())

    def __repr__(self) -> str:
        return f"SubscriptionGraph({len(self)} edges)"
