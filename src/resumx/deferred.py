"""Deferred references and the chunk loader.

A DeferredRef names a symbol inside a loadable chunk without holding the
symbol itself. It is the only form in which code crosses a process
boundary: closures are not transportable, (chunk, symbol) pairs are.

The ChunkLoader turns references into live values. Loads are memoized per
chunk location: however many references point into a chunk, and however
many resolves race for it, the importer runs once. Every waiter then does
its own symbol lookup, so a missing symbol fails only its own resolve.

A chunk whose top-level evaluation raises is poisoned for good. Every
pending and future resolve against it raises ChunkLoadError. Nothing is
retried here; retry policy belongs to the host.
"""

from __future__ import annotations

import asyncio
import importlib
import inspect
import logging
from collections.abc import Mapping
from typing import Any, Awaitable, Callable, Union

from resumx.errors import ChunkLoadError, ResolutionError, SymbolNotFoundError

logger = logging.getLogger("resumx.deferred")

Importer = Callable[[str], Union[Any, Awaitable[Any]]]

_UNRESOLVED = object()


class DeferredRef:
    """Immutable (chunk, symbol) pair plus a cache of the resolved value."""

    __slots__ = ("_chunk", "_symbol", "_value")

    def __init__(self, chunk: str, symbol: str) -> None:
        self._chunk = chunk
        self._symbol = symbol
        self._value = _UNRESOLVED

    @classmethod
    def of(cls, fn: Callable) -> DeferredRef:
        """Reference a live function by its module and qualified name.

        The cache is pre-seeded with fn, so the first run needs no load,
        while the reference itself stays transportable. fn must be
        importable by that name in the resuming process.
        """
        ref = cls(fn.__module__, fn.__qualname__)
        ref._value = fn
        return ref

    @property
    def chunk(self) -> str:
        return self._chunk

    @property
    def symbol(self) -> str:
        return self._symbol

    @property
    def resolved(self) -> bool:
        return self._value is not _UNRESOLVED

    @property
    def value(self) -> Any:
        """The cached live value. Raises ResolutionError if not yet resolved."""
        if self._value is _UNRESOLVED:
            raise ResolutionError(f"{self!r} has not been resolved")
        return self._value

    def _settle(self, value: Any) -> None:
        self._value = value

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, DeferredRef):
            return NotImplemented
        return self._chunk == other._chunk and self._symbol == other._symbol

    def __hash__(self) -> int:
        return hash((self._chunk, self._symbol))

    def __repr__(self) -> str:
        state = "resolved" if self.resolved else "unresolved"
        return f"DeferredRef({self._chunk!r}, {self._symbol!r}, {state})"


def import_chunk(chunk: str) -> Any:
    """Default importer: the chunk location is a dotted module path."""
    return importlib.import_module(chunk)


def _lookup(namespace: Any, symbol: str, chunk: str) -> Any:
    if isinstance(namespace, Mapping):
        try:
            return namespace[symbol]
        except KeyError:
            raise SymbolNotFoundError(symbol, chunk) from None
    target = namespace
    for part in symbol.split("."):
        try:
            target = getattr(target, part)
        except AttributeError:
            raise SymbolNotFoundError(symbol, chunk) from None
    return target


class ChunkLoader:
    """Memoizing resolver for deferred references.

    Args:
        manifest: symbol -> chunk location table produced by the build's
            chunking step. Consumed as-is, never validated.
        importer: fetches a chunk and returns its namespace (a module, any
            attribute-bearing object, or a mapping). May be sync or async.
    """

    def __init__(
        self,
        manifest: Mapping[str, str] | None = None,
        importer: Importer | None = None,
    ) -> None:
        self._manifest = dict(manifest) if manifest else {}
        self._importer = importer or import_chunk
        self._chunks: dict[str, asyncio.Future] = {}
        self._tasks: set[asyncio.Task] = set()

    def ref(self, symbol: str) -> DeferredRef:
        """Build a reference for symbol using the chunk manifest."""
        chunk = self._manifest.get(symbol)
        if chunk is None:
            raise SymbolNotFoundError(symbol)
        return DeferredRef(chunk, symbol)

    def _settled(self, chunk: str) -> asyncio.Future | None:
        future = self._chunks.get(chunk)
        if future is None or not future.done() or future.cancelled():
            return None
        return future

    def is_loaded(self, chunk: str) -> bool:
        future = self._settled(chunk)
        return future is not None and future.exception() is None

    def is_failed(self, chunk: str) -> bool:
        future = self._settled(chunk)
        return future is not None and future.exception() is not None

    async def resolve(self, ref: DeferredRef) -> Any:
        """Return the live value behind ref, loading its chunk at most once.

        An already-resolved ref returns without suspending.
        """
        if ref.resolved:
            return ref.value
        namespace = await asyncio.shield(self._load_future(ref.chunk))
        value = _lookup(namespace, ref.symbol, ref.chunk)
        ref._settle(value)
        return value

    def prefetch(self, *chunks: str) -> None:
        """Start loading chunks without waiting for them. Needs a running loop."""
        for chunk in chunks:
            self._load_future(chunk)

    def _load_future(self, chunk: str) -> asyncio.Future:
        future = self._chunks.get(chunk)
        if future is None:
            loop = asyncio.get_running_loop()
            future = loop.create_future()
            self._chunks[chunk] = future
            task = loop.create_task(self._load(chunk, future))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        return future

    async def _load(self, chunk: str, future: asyncio.Future) -> None:
        logger.debug("Loading chunk %r", chunk)
        try:
            namespace = self._importer(chunk)
            if inspect.isawaitable(namespace):
                namespace = await namespace
        except Exception as exc:
            logger.warning("Chunk %r failed to load: %s", chunk, exc)
            error = ChunkLoadError(chunk)
            error.__cause__ = exc
            future.set_exception(error)
            # Prefetched chunks may never be awaited; awaiters still raise.
            future.exception()
        else:
            future.set_result(namespace)

    def __repr__(self) -> str:
        loaded = sum(1 for chunk in self._chunks if self.is_loaded(chunk))
        return f"ChunkLoader({loaded}/{len(self._chunks)} chunks loaded)"
