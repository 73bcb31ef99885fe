"""resumx error hierarchy.

All resumx-specific errors inherit from ResumxError for easy catching.
Exceptions raised by computations themselves are never wrapped.
"""


class ResumxError(Exception):
    """Base error for all resumx operations."""


class ResolutionError(ResumxError):
    """A deferred reference could not be turned into a live value."""


class ChunkLoadError(ResolutionError):
    """A chunk failed during its own top-level evaluation.

    Sticky: every pending and future resolve against the chunk raises this.
    """

    def __init__(self, chunk: str) -> None:
        super().__init__(f"chunk {chunk!r} failed to load")
        self.chunk = chunk


class SymbolNotFoundError(ResolutionError):
    """The symbol is absent from the manifest or from a loaded chunk."""

    def __init__(self, symbol: str, chunk: str | None = None) -> None:
        where = f"chunk {chunk!r}" if chunk is not None else "the chunk manifest"
        super().__init__(f"symbol {symbol!r} not found in {where}")
        self.symbol = symbol
        self.chunk = chunk


class SnapshotError(ResumxError):
    """A value cannot be encoded for transport, or a payload is malformed."""


class StaleReferenceError(ResumxError):
    """A snapshot entry points at a store or computation that does not exist."""
