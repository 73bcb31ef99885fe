"""Tests for Runtime: mounting, nesting, disposal, renderer notification."""

import asyncio

import pytest

from resumx import ChunkLoader, DeferredRef, ResolutionError, ResumxError, Runtime, Status
from resumx.errors import SymbolNotFoundError
from resumx.scheduler import Computation


def render_count(store):
    return f"count={store['count']}"


def render_branch(store):
    if store["flag"]:
        return store["a"]
    return store["b"]


def render_fails(store):
    store["count"]
    raise RuntimeError("render failed")


class TestMount:
    @pytest.mark.asyncio
    async def test_first_run_records_reads(self, rt):
        s = rt.store({"count": 0})
        view = await rt.mount(render_count, s, owner=s)
        assert view.output == "count=0"
        assert view.status is Status.CLEAN
        assert view.owner == s.id
        assert rt.subscribers_of(s, "count") == {view.id}

    @pytest.mark.asyncio
    async def test_mount_by_symbol_name(self, chunks, ticker):
        chunks.chunks["c1"] = {"render_count": render_count}
        rt = Runtime(loader=ChunkLoader(manifest={"render_count": "c1"}, importer=chunks), port=ticker)
        s = rt.store({"count": 2})
        view = await rt.mount("render_count", s)
        assert view.output == "count=2"
        assert view.ref == DeferredRef("c1", "render_count")

    @pytest.mark.asyncio
    async def test_unknown_symbol_name(self, rt):
        with pytest.raises(SymbolNotFoundError):
            await rt.mount("nope")

    @pytest.mark.asyncio
    async def test_mount_failure_propagates_and_keeps_error(self, rt):
        s = rt.store({"count": 0})
        with pytest.raises(RuntimeError, match="render failed"):
            await rt.mount(render_fails, s, id="bad")
        bad = rt.get_computation("bad")
        assert bad.status is Status.ERROR
        assert rt.subscribers_of(s, "count") == {"bad"}

    @pytest.mark.asyncio
    async def test_mount_resolution_failure(self, rt):
        with pytest.raises(ResolutionError):
            await rt.mount(DeferredRef("missing-chunk", "f"), id="lost")
        assert rt.get_computation("lost").status is Status.ERROR

    @pytest.mark.asyncio
    async def test_unknown_owner(self, rt):
        with pytest.raises(ResumxError, match="owner"):
            await rt.mount(render_count, rt.store({"count": 0}), owner="ghost")

    @pytest.mark.asyncio
    async def test_rejects_non_reference(self, rt):
        with pytest.raises(TypeError):
            await rt.mount(42)


class TestSubscriptionsMatchReads:
    @pytest.mark.asyncio
    async def test_branch_switch_drops_stale_edges(self, rt, ticker):
        s = rt.store({"flag": True, "a": "A", "b": "B"})
        view = await rt.mount(render_branch, s)
        assert rt.graph.dependencies_of(view.id) == {(s.id, "flag"), (s.id, "a")}
        s["flag"] = False
        await ticker.tick()
        assert view.output == "B"
        assert rt.graph.dependencies_of(view.id) == {(s.id, "flag"), (s.id, "b")}
        s["a"] = "changed"
        assert view.status is Status.CLEAN
        assert ticker.pending == 0


class TestRenderNotification:
    @pytest.mark.asyncio
    async def test_on_render_receives_outputs(self, chunks, ticker):
        painted = []
        rt = Runtime(
            loader=ChunkLoader(importer=chunks),
            port=ticker,
            on_render=lambda comp, output: painted.append((comp.id, output)),
        )
        s = rt.store({"count": 0})
        view = await rt.mount(render_count, s)
        s["count"] = 1
        await ticker.tick()
        assert painted == [(view.id, "count=0"), (view.id, "count=1")]


class TestNesting:
    @pytest.mark.asyncio
    async def test_reads_attributed_to_innermost(self, rt):
        parent_store = rt.store({"title": "T"})
        child_store = rt.store({"body": "B"})
        holder = {}

        def child(store):
            return store["body"]

        def parent(store):
            title = store["title"]
            body = rt.run_now(holder["child"])
            return f"{title}:{body}:{store['title']}"

        holder["child"] = await rt.mount(child, child_store, id="child")
        view = await rt.mount(parent, parent_store, id="parent")
        assert view.output == "T:B:T"
        assert rt.subscribers_of(parent_store, "title") == {"parent"}
        assert rt.subscribers_of(child_store, "body") == {"child"}

    @pytest.mark.asyncio
    async def test_run_now_requires_resolved_ref(self, rt):
        comp = Computation("x", DeferredRef("c9", "f"))
        rt._register(comp)
        with pytest.raises(ResolutionError):
            rt.run_now(comp)

    @pytest.mark.asyncio
    async def test_run_now_clears_pending_entry(self, rt, ticker):
        s = rt.store({"count": 0})
        view = await rt.mount(render_count, s)
        s["count"] = 5
        assert rt.run_now(view) == "count=5"
        assert rt.scheduler.pending_count == 0
        await ticker.tick()
        assert view.runs == 2


class TestDisposal:
    @pytest.mark.asyncio
    async def test_dispose_computation(self, rt, ticker):
        s = rt.store({"count": 0})
        view = await rt.mount(render_count, s)
        rt.dispose(view)
        assert rt.get_computation(view.id) is None
        s["count"] = 1
        assert ticker.requests == 0

    @pytest.mark.asyncio
    async def test_dispose_store_disposes_owned(self, rt, ticker):
        s = rt.store({"count": 0})
        other = rt.store({"count": 0})
        owned = await rt.mount(render_count, s, owner=s)
        independent = await rt.mount(render_count, other, owner=other)
        s["count"] = 1
        rt.dispose_store(s)
        assert rt.get_computation(owned.id) is None
        assert rt.get_computation(independent.id) is independent
        assert await rt.flush() == 0
        assert len(rt.graph) == 1
        assert [store.id for store in rt.stores()] == [other.id]

    @pytest.mark.asyncio
    async def test_dispose_while_mount_resolves(self, chunks, ticker):
        chunks.chunks["views"] = {"render_count": render_count}
        rt = Runtime(loader=ChunkLoader(importer=chunks), port=ticker)
        s = rt.store({"count": 0})
        gate = chunks.gate("views")
        task = asyncio.ensure_future(rt.mount(DeferredRef("views", "render_count"), s, id="late"))
        for _ in range(3):
            await asyncio.sleep(0)
        assert rt.get_computation("late").status is Status.RUNNING
        rt.dispose("late")
        gate.set()
        view = await task
        assert view.status is Status.CLEAN
        assert view.runs == 0
        assert rt.subscribers_of(s, "count") == set()

    def test_repr(self, rt):
        s = rt.store()
        assert "1 stores" in repr(rt)
        assert s.id in repr(s)
