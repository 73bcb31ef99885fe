"""Ambient computation tracking.

A contextvar holds a stack of frames, one per computation currently
executing. Store reads consult the innermost frame to decide which
computation the read belongs to. Frames are pushed for the synchronous
extent of one execution and popped on the way out, so nested executions
attribute reads to the innermost one and restore the outer one afterwards.

An ``untracked()`` frame is a hole in the stack: reads inside it are peeks.
"""

from __future__ import annotations

import contextvars
from contextlib import contextmanager
from typing import TYPE_CHECKING, Iterator, NamedTuple

if TYPE_CHECKING:
    from resumx.runtime import Runtime


class Frame(NamedTuple):
    runtime: Runtime
    computation_id: str


_stack: contextvars.ContextVar[tuple[Frame | None, ...]] = contextvars.ContextVar(
    "resumx_computation_stack", default=()
)


def active_frame() -> Frame | None:
    """The innermost executing computation, or None outside any."""
    stack = _stack.get()
    return stack[-1] if stack else None


def depth() -> int:
    """Number of frames on the stack. Useful for testing."""
    return len(_stack.get())


@contextmanager
def tracking(runtime: Runtime, computation_id: str) -> Iterator[Frame]:
    """Push a frame for the duration of one computation's execution."""
    frame = Frame(runtime, computation_id)
    token = _stack.set(_stack.get() + (frame,))
    try:
        yield frame
    finally:
        _stack.reset(token)


@contextmanager
def untracked() -> Iterator[None]:
    """Reads inside this block create no subscriptions.

    Usage:
        with untracked():
            total = store["count"]  # peek, even inside a render
    """
    token = _stack.set(_stack.get() + (None,))
    try:
        yield
    finally:
        _stack.reset(token)
