"""Tests for StoreProxy: read tracking and write signalling."""

import gc

import pytest

from resumx import ResumxError, Status, untracked
from resumx._tracking import tracking


def read_count(store):
    return store["count"]


def read_with_default(store):
    return store.get("label", "none")


class TestReads:
    def test_read_outside_computation_is_peek(self, rt):
        s = rt.store({"count": 0})
        assert s["count"] == 0
        assert len(rt.graph) == 0

    def test_read_inside_computation_subscribes(self, rt):
        s = rt.store({"count": 0})
        with tracking(rt, "c0"):
            assert s["count"] == 0
        assert rt.subscribers_of(s, "count") == {"c0"}

    def test_read_through_returns_same_object(self, rt):
        items = [1, 2]
        s = rt.store({"items": items})
        with tracking(rt, "c0"):
            assert s["items"] is items

    def test_get_and_contains_subscribe(self, rt):
        s = rt.store({})
        with tracking(rt, "c0"):
            assert s.get("missing", 5) == 5
            assert "other" not in s
        assert rt.subscribers_of(s, "missing") == {"c0"}
        assert rt.subscribers_of(s, "other") == {"c0"}

    def test_missing_key_still_subscribes(self, rt):
        s = rt.store({})
        with tracking(rt, "c0"):
            with pytest.raises(KeyError):
                s["nope"]
        assert rt.subscribers_of(s, "nope") == {"c0"}

    def test_peek_and_untracked_do_not_subscribe(self, rt):
        s = rt.store({"count": 3})
        with tracking(rt, "c0"):
            assert s.peek("count") == 3
            assert s.snapshot() == {"count": 3}
            with untracked():
                assert s["count"] == 3
        assert len(rt.graph) == 0

    def test_reads_from_other_runtime_ignored(self, rt):
        from resumx import Runtime

        other = Runtime()
        s = other.store({"count": 0})
        with tracking(rt, "c0"):
            s["count"]
        assert len(other.graph) == 0
        assert len(rt.graph) == 0


class TestWrites:
    @pytest.mark.asyncio
    async def test_write_marks_subscriber_dirty(self, rt, ticker):
        s = rt.store({"count": 0})
        view = await rt.mount(read_count, s)
        s["count"] = 1
        assert view.status is Status.DIRTY
        assert rt.scheduler.pending_count == 1
        assert ticker.pending == 1

    @pytest.mark.asyncio
    async def test_same_value_write_still_invalidates(self, rt):
        s = rt.store({"count": 0})
        view = await rt.mount(read_count, s)
        s["count"] = 0
        assert view.status is Status.DIRTY

    @pytest.mark.asyncio
    async def test_write_to_unread_key_is_quiet(self, rt, ticker):
        s = rt.store({"count": 0, "other": 0})
        view = await rt.mount(read_count, s)
        s["other"] = 1
        assert view.status is Status.CLEAN
        assert ticker.requests == 0

    @pytest.mark.asyncio
    async def test_update_requests_one_flush(self, rt, ticker):
        s = rt.store({"count": 0, "label": "a"})
        a = await rt.mount(read_count, s)
        b = await rt.mount(read_with_default, s)
        s.update({"count": 1}, label="b")
        assert a.status is Status.DIRTY
        assert b.status is Status.DIRTY
        assert ticker.requests == 1

    @pytest.mark.asyncio
    async def test_delete_and_pop_invalidate(self, rt):
        s = rt.store({"count": 0})
        view = await rt.mount(read_count, s)
        del s["count"]
        assert view.status is Status.DIRTY
        assert s.pop("absent", None) is None
        with pytest.raises(KeyError):
            s.pop("absent")

    def test_set_alias(self, rt):
        s = rt.store({})
        s.set("x", 1)
        assert s.peek("x") == 1


class TestLifecycle:
    def test_ids_are_allocated(self, rt):
        a = rt.store()
        b = rt.store()
        assert (a.id, b.id) == ("s0", "s1")

    def test_explicit_id_collision(self, rt):
        main = rt.store(id="main")
        assert main.id == "main"
        with pytest.raises(ResumxError):
            rt.store(id="main")

    def test_disposed_store_raises(self, rt):
        s = rt.store({"x": 1})
        rt.dispose_store(s)
        with pytest.raises(ResumxError, match="disposed"):
            s["x"]
        assert "disposed" in repr(s)

    def test_unreachable_handle_is_released(self, rt):
        s = rt.store({"x": 1})
        store_id = s.id
        with tracking(rt, "c0"):
            s["x"]
        del s
        gc.collect()
        assert rt.get_store(store_id) is None
        assert rt.subscribers_of(store_id, "x") == set()
        assert store_id not in rt._values
