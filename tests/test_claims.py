"""Tests for ClaimManager."""

from __future__ import annotations

import threading

from devloop.claims import ClaimManager, default_owner
from devloop.task_store import InMemoryTaskStore, JsonTaskStore, TaskState, WorkCategory


class TestPick:
    """Tests for candidate selection."""

    def test_pick_returns_available_in_priority_order(self, store, claims, make_task):
        store.add(make_task("low", priority="low"))
        store.add(make_task("crit", priority="critical"))
        store.add(make_task("done", priority="critical", state=TaskState.COMPLETED))

        assert [t.id for t in claims.pick()] == ["crit", "low"]

    def test_blank_priority_does_not_break_pick(self, store, claims, make_task):
        store.add(make_task("blank", priority=None))
        store.add(make_task("high", priority="high"))
        store.add(make_task("low", priority="low"))

        assert [t.id for t in claims.pick()] == ["high", "blank", "low"]

    def test_pick_by_category_and_exclusion(self, store, claims, make_task):
        store.add(make_task("c1"))
        store.add(make_task("d1", category=WorkCategory.DOCUMENTATION))

        assert [t.id for t in claims.pick(category=WorkCategory.DOCUMENTATION)] == ["d1"]
        assert [t.id for t in claims.pick(exclude=["c1"])] == ["d1"]


class TestClaim:
    """Tests for claim, release and finalize."""

    def test_claim_records_owner(self, store, claims, make_task):
        store.add(make_task("t1"))

        claimed = claims.claim(store.get("t1"))

        assert claimed.state is TaskState.IN_PROGRESS
        assert claimed.metadata["claimed_by"] == "test-engine"
        assert "claimed_at" in claimed.metadata

    def test_losing_claim_returns_none(self, store, make_task):
        store.add(make_task("t1"))
        snapshot = store.get("t1")
        first = ClaimManager(store, owner="a")
        second = ClaimManager(store, owner="b")

        assert first.claim(snapshot) is not None
        assert second.claim(snapshot) is None
        assert store.get("t1").metadata["claimed_by"] == "a"

    def test_claim_of_deleted_task_returns_none(self, store, claims, make_task):
        store.add(make_task("t1"))
        snapshot = store.get("t1")
        store.delete("t1")

        assert claims.claim(snapshot) is None

    def test_claim_next_skips_conflicts(self, store, make_task):
        store.add(make_task("first", priority="high"))
        store.add(make_task("second", priority="low"))
        other = ClaimManager(store, owner="other")
        other.claim(store.get("first"))

        claimed = ClaimManager(store, owner="me").claim_next()

        assert claimed.id == "second"

    def test_claim_next_none_when_empty(self, claims):
        assert claims.claim_next() is None

    def test_release_retryable_returns_to_available(self, store, claims, make_task):
        store.add(make_task("t1"))
        task = claims.claim(store.get("t1"))

        released = claims.release(task, "rate limited")

        assert released.state is TaskState.AVAILABLE
        assert released.metadata["release_reason"] == "rate limited"
        assert "released_at" in released.metadata

    def test_release_unrecoverable_fails(self, store, claims, make_task):
        store.add(make_task("t1"))
        task = claims.claim(store.get("t1"))

        failed = claims.release(task, "bad request", retryable=False)

        assert failed.state is TaskState.FAILED
        assert failed.metadata["failure_reason"] == "bad request"

    def test_complete_records_outcome(self, store, claims, make_task):
        store.add(make_task("t1"))
        task = claims.claim(store.get("t1"))

        done = claims.complete(task, {"line_delta": 12})

        assert done.state is TaskState.COMPLETED
        assert done.metadata["line_delta"] == 12
        assert "completed_at" in done.metadata

    def test_default_owner_has_pid(self):
        assert ":" in default_owner()


class TestConcurrentClaims:
    """Concurrent claimers racing for one task."""

    def _race(self, store, n):
        snapshot = store.get("t1")
        barrier = threading.Barrier(n)
        results = [None] * n

        def run(i):
            manager = ClaimManager(store, owner=f"engine-{i}")
            barrier.wait()
            results[i] = manager.claim(snapshot)

        threads = [threading.Thread(target=run, args=(i,)) for i in range(n)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        return results

    def test_two_claims_one_conflict(self, make_task):
        store = InMemoryTaskStore([make_task("t1")])

        results = self._race(store, 2)

        winners = [r for r in results if r is not None]
        assert len(winners) == 1
        assert results.count(None) == 1
        assert store.get("t1").state is TaskState.IN_PROGRESS

    def test_n_claims_across_json_store(self, tmp_path, make_task):
        path = tmp_path / "tasks.json"
        JsonTaskStore(path).add(make_task("t1"))

        results = self._race(JsonTaskStore(path), 6)

        winners = [r for r in results if r is not None]
        assert len(winners) == 1
        assert results.count(None) == 5
        assert JsonTaskStore(path).get("t1").metadata["claimed_by"] == winners[0].metadata["claimed_by"]
