"""Store handles, the proxy layer over reactive containers.

A store is a plain dict owned by the runtime; the StoreProxy is the only way
to touch it. Reads made while a computation of the same runtime is executing
subscribe that computation to (store, key). Writes always invalidate the
key's subscribers, even when the new value equals the old one.

All state lives in the runtime; handles are thin, holding an id.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import TYPE_CHECKING, Any, Iterable

from resumx._tracking import active_frame
from resumx.errors import ResumxError

if TYPE_CHECKING:
    from resumx.runtime import Runtime

_MISSING = object()


class StoreProxy:
    """Read-tracking, write-signalling handle over one container."""

    __slots__ = ("_id", "_runtime", "__weakref__")

    def __init__(self, runtime: Runtime, store_id: str) -> None:
        self._id = store_id
        self._runtime = runtime

    @property
    def id(self) -> str:
        return self._id

    @property
    def runtime(self) -> Runtime:
        return self._runtime

    @property
    def _data(self) -> dict[str, Any]:
        data = self._runtime._values.get(self._id)
        if data is None:
            raise ResumxError(f"store {self._id!r} has been disposed")
        return data

    def _track(self, key: str) -> None:
        """Subscribe the innermost executing computation to key."""
        frame = active_frame()
        if frame is not None and frame.runtime is self._runtime:
            self._runtime.graph.record(self._id, key, frame.computation_id)

    def _notify(self, keys: Iterable[str]) -> None:
        self._runtime._invalidate(self._id, keys)

    # --- Read operations (track) ---

    def __getitem__(self, key: str) -> Any:
        data = self._data
        self._track(key)
        return data[key]

    def get(self, key: str, default: Any = None) -> Any:
        data = self._data
        self._track(key)
        return data.get(key, default)

    def __contains__(self, key: str) -> bool:
        data = self._data
        self._track(key)
        return key in data

    # --- Untracked reads ---

    def peek(self, key: str, default: Any = None) -> Any:
        """Read without subscribing, even inside a computation."""
        return self._data.get(key, default)

    def snapshot(self) -> dict[str, Any]:
        """Shallow copy of the container, without subscribing."""
        return dict(self._data)

    # --- Write operations (notify) ---

    def __setitem__(self, key: str, value: Any) -> None:
        self._data[key] = value
        self._notify((key,))

    def set(self, key: str, value: Any) -> None:
        self[key] = value

    def __delitem__(self, key: str) -> None:
        del self._data[key]
        self._notify((key,))

    def pop(self, key: str, default: Any = _MISSING) -> Any:
        data = self._data
        if key not in data:
            if default is _MISSING:
                raise KeyError(key)
            return default
        value = data.pop(key)
        self._notify((key,))
        return value

    def update(self, other: Mapping[str, Any] | None = None, **kwargs: Any) -> None:
        """Write several keys; their subscribers share one flush request."""
        values = dict(other) if other else {}
        values.update(kwargs)
        if not values:
            return
        self._data.update(values)
        self._notify(values)

    def __repr__(self) -> str:
        data = self._runtime._values.get(self._id)
        if data is None:
            return f"StoreProxy({self._id!r}, disposed)"
        return f"StoreProxy({self._id!r}, {data!r})"
