"""resumx: resumable fine-grained reactivity with lazily loaded computations."""

from importlib.metadata import version as _version

__version__ = _version("resumx")

from resumx._tracking import untracked
from resumx.deferred import ChunkLoader, DeferredRef, import_chunk
from resumx.errors import (
    ChunkLoadError,
    ResolutionError,
    ResumxError,
    SnapshotError,
    StaleReferenceError,
    SymbolNotFoundError,
)
from resumx.graph import SubscriptionGraph
from resumx.scheduler import Computation, ManualTicker, Scheduler, Status, next_tick, set_flush_port
from resumx.store import StoreProxy
from resumx.runtime import Runtime
from resumx.snapshot import GraphSnapshot, ResumeReport, StaleReference, resume, serialize
# textual NOT auto-imported — opt-in only

__all__ = [
    "ChunkLoader",
    "DeferredRef",
    "import_chunk",
    "ChunkLoadError",
    "ResolutionError",
    "ResumxError",
    "SnapshotError",
    "StaleReferenceError",
    "SymbolNotFoundError",
    "SubscriptionGraph",
    "Computation",
    "ManualTicker",
    "Scheduler",
    "Status",
    "next_tick",
    "set_flush_port",
    "StoreProxy",
    "Runtime",
    "GraphSnapshot",
    "ResumeReport",
    "StaleReference",
    "resume",
    "serialize",
    "untracked",
]
