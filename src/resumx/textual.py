"""Textual bridge for resumx. Opt-in, requires textual.

Supplies the two host seams a Textual app fills: a flush port tied to the
next screen refresh, and an on_render callback that paints outputs into
widgets only while the widget tree is queryable.

// [LAW:locality-or-seam] All Textual imports stay here; the engine core never sees them.
// [LAW:no-shared-mutable-globals] _paused is owned by pause()/is_safe() only;
//   an app's id is present exactly while at least one pause block is open.
"""

from contextlib import contextmanager

from textual.css.query import NoMatches

from resumx.scheduler import Status

# id(app) -> open pause depth; nested pauses only resume painting at the outermost exit.
_paused: dict[int, int] = {}


@contextmanager
def pause(app, runtime=None, paint=None):
    """Hold painting while widgets are replaced.

    Flushes still run during the pause; their outputs wait on
    ``computation.output``. When runtime and paint are given, leaving the
    outermost pause repaints every clean computation.
    """
    key = id(app)
    _paused[key] = _paused.get(key, 0) + 1
    try:
        yield
    finally:
        depth = _paused.pop(key) - 1
        if depth:
            _paused[key] = depth
    if not depth and runtime is not None and paint is not None:
        repaint(app, runtime, paint)


def is_safe(app) -> bool:
    """Is the widget tree in a queryable state?"""
    return app.is_running and id(app) not in _paused


def after_refresh(app):
    """Flush port that runs the flush after the app's next refresh.

    Usage:
        rt = Runtime(port=after_refresh(app), on_render=render_bridge(app, paint))
    """

    def port(callback):
        app.call_after_refresh(callback)

    return port


def render_bridge(app, paint):
    """on_render callback that forwards (computation, output) to paint.

    Skips painting while the app is paused or not running; the latest
    output stays on ``computation.output`` for a later repaint. NoMatches
    from widget queries is swallowed, anything else propagates into the
    flush's error channel.
    """

    def on_render(computation, output):
        if not is_safe(app):
            return
        try:
            paint(computation, output)
        except NoMatches:
            pass

    return on_render


def repaint(app, runtime, paint) -> int:
    """Paint every clean computation's latest output. Returns how many."""
    if not is_safe(app):
        return 0
    painted = 0
    for computation in runtime.computations:
        if computation.runs == 0 or computation.status is not Status.CLEAN:
            continue
        try:
            paint(computation, computation.output)
        except NoMatches:
            continue
        painted += 1
    return painted
