"""Tests for ideabot.utils.storage: draft store TTL and vote links."""

import asyncio

import pytest

from ideabot.models import Draft
from ideabot.utils.storage import DraftStore, VoteLinkTable, run_sweeper


def make_draft(draft_id: str, created_at: float, phase: str = "awaiting_approval") -> Draft:
    return Draft(id=draft_id, author_id="U1", raw_text="idea", created_at=created_at, phase=phase)


class TestDraftStore:
    def test_get_returns_what_was_put(self, store, clock):
        d = make_draft("a", clock.now)
        store.put(d)
        assert store.get("a") == d

    def test_get_unknown_id_is_none(self, store):
        assert store.get("missing") is None

    def test_delete_removes_and_is_idempotent(self, store, clock):
        store.put(make_draft("a", clock.now))
        store.delete("a")
        assert store.get("a") is None
        store.delete("a")  # no error
        assert len(store) == 0

    def test_put_overwrites_same_id(self, store, clock):
        store.put(make_draft("a", clock.now, phase="awaiting_answers"))
        store.put(make_draft("a", clock.now, phase="awaiting_approval"))
        assert store.get("a").phase == "awaiting_approval"
        assert len(store) == 1

    def test_absent_at_ttl_without_sweep(self, store, clock):
        store.put(make_draft("a", clock.now))
        clock.advance(599)
        assert store.get("a") is not None
        clock.advance(1)
        assert store.get("a") is None

    def test_sweep_removes_expired_regardless_of_phase(self, store, clock):
        store.put(make_draft("old-q", clock.now, phase="awaiting_answers"))
        store.put(make_draft("old-a", clock.now, phase="awaiting_approval"))
        clock.advance(300)
        store.put(make_draft("new", clock.now))
        clock.advance(301)

        removed = store.sweep()

        assert sorted(removed) == ["old-a", "old-q"]
        assert store.get("new") is not None
        assert len(store) == 1

    def test_sweep_with_explicit_now(self, clock):
        s = DraftStore(ttl_seconds=10, clock=clock)
        s.put(make_draft("a", 0.0))
        assert s.sweep(now=5.0) == []
        assert s.sweep(now=10.0) == ["a"]


class TestVoteLinkTable:
    def test_resolve_linked_message(self, links):
        links.link("C1:1.0", 42)
        assert links.resolve("C1:1.0") == 42

    def test_unknown_message_is_none(self, links):
        assert links.resolve("C1:9.9") is None

    def test_link_is_never_updated(self, links):
        links.link("C1:1.0", 42)
        links.link("C1:1.0", 99)
        assert links.resolve("C1:1.0") == 42
        assert len(links) == 1


class TestSweeper:
    async def test_sweeper_evicts_and_stops_on_cancel(self, clock):
        s = DraftStore(ttl_seconds=1, clock=clock)
        s.put(make_draft("a", clock.now))
        clock.advance(5)

        task = asyncio.create_task(run_sweeper(s, 0.01))
        await asyncio.sleep(0.05)
        task.cancel()
        await task

        assert len(s) == 0
        assert task.done()
