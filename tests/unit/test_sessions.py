"""
Unit tests for session tracking.
"""

import threading
from datetime import timedelta

import pytest

from chromatrial.errors import SessionBusy, SessionNotFound, TrialConflict
from chromatrial.experiment.sessions import SessionState, SessionStore

TIMEOUT = timedelta(minutes=30)


@pytest.fixture
def store(clock):
    return SessionStore(trial_count=3, lock_timeout=0.5, clock=clock)


class TestCreateAndLookup:
    """Tests for session creation and lookup."""

    def test_create_initial_state(self, store, clock):
        """New sessions should start at trial 0 in the NEW state."""
        session = store.create()

        assert session.current_trial_index == 0
        assert not session.completed
        assert session.state == SessionState.NEW
        assert session.created_at == clock.now
        assert 0 <= session.seed < 2 ** 128

    def test_tokens_are_unique_and_long(self, store):
        """Tokens should be distinct and carry 256 bits of entropy."""
        tokens = {store.create().token for _ in range(200)}

        assert len(tokens) == 200
        assert all(len(t) >= 43 for t in tokens)

    def test_seeds_are_distinct(self, store):
        """Each session should draw its own seed."""
        seeds = {store.create().seed for _ in range(50)}

        assert len(seeds) == 50

    def test_get_unknown_token(self, store):
        """Unknown tokens should raise SessionNotFound."""
        with pytest.raises(SessionNotFound):
            store.get("nope")

    def test_len_and_contains(self, store):
        """The store should report membership."""
        session = store.create()

        assert len(store) == 1
        assert session.token in store
        assert "other" not in store

    def test_touch_updates_activity(self, store, clock):
        """touch() should refresh last_active_at."""
        session = store.create()
        clock.advance(minutes=5)
        store.touch(session.token)

        assert session.last_active_at == clock.now

    def test_public_view_hides_seed(self, store):
        """to_dict() should not expose the seed or token."""
        data = store.create().to_dict()

        assert "seed" not in data
        assert "token" not in data


class TestAdvance:
    """Tests for the check-and-increment operation."""

    def test_advance_increments(self, store):
        """Matching index should advance by exactly one."""
        session = store.create()

        store.advance(session.token, 0)
        store.advance(session.token, 1)

        assert session.current_trial_index == 2
        assert session.state == SessionState.IN_PROGRESS

    def test_stale_index_conflicts(self, store):
        """A stale or future index should conflict without mutation."""
        session = store.create()
        store.advance(session.token, 0)

        with pytest.raises(TrialConflict) as exc:
            store.advance(session.token, 0)
        assert exc.value.expected_trial_index == 1

        with pytest.raises(TrialConflict):
            store.advance(session.token, 5)

        assert session.current_trial_index == 1

    def test_transaction_rolls_back_on_error(self, store):
        """An exception inside the transaction should leave the index alone."""
        session = store.create()

        with pytest.raises(RuntimeError):
            with store.transaction(session.token, 0):
                raise RuntimeError("log write failed")

        assert session.current_trial_index == 0
        store.advance(session.token, 0)
        assert session.current_trial_index == 1

    def test_completion(self, store):
        """Reaching trial_count should complete the session."""
        session = store.create()
        for i in range(3):
            store.advance(session.token, i)

        assert session.completed
        assert session.state == SessionState.COMPLETED

        with pytest.raises(TrialConflict) as exc:
            store.advance(session.token, 3)
        assert exc.value.completed

    def test_advance_resets_issue_time(self, store, clock):
        """The issue time belongs to one index only."""
        session = store.create()
        session.trial_issued_at = clock.now

        store.advance(session.token, 0)

        assert session.trial_issued_at is None

    def test_concurrent_advance_single_winner(self, store):
        """Only one of many concurrent advances for an index may succeed."""
        session = store.create()
        n_threads = 8
        barrier = threading.Barrier(n_threads)
        results = []
        results_lock = threading.Lock()

        def worker():
            barrier.wait()
            try:
                store.advance(session.token, 0)
                outcome = "ok"
            except TrialConflict:
                outcome = "conflict"
            with results_lock:
                results.append(outcome)

        threads = [threading.Thread(target=worker) for _ in range(n_threads)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count("ok") == 1
        assert results.count("conflict") == n_threads - 1
        assert session.current_trial_index == 1

    def test_busy_session_times_out(self, clock):
        """A held session lock should surface as SessionBusy."""
        store = SessionStore(lock_timeout=0.05, clock=clock)
        session = store.create()

        with session.lock:
            with pytest.raises(SessionBusy):
                store.advance(session.token, 0)

        assert session.current_trial_index == 0

    def test_unrelated_sessions_do_not_block(self, clock):
        """Holding one session's lock should not block another session."""
        store = SessionStore(lock_timeout=0.05, clock=clock)
        busy = store.create()
        free = store.create()

        with busy.lock:
            store.advance(free.token, 0)

        assert free.current_trial_index == 1


class TestEviction:
    """Tests for inactivity eviction."""

    def test_evicts_inactive_sessions(self, store, clock):
        """Sessions idle beyond the timeout should be removed."""
        old = store.create()
        clock.advance(minutes=20)
        fresh = store.create()
        clock.advance(minutes=15)

        evicted = store.evict_expired(clock.now, TIMEOUT)

        assert evicted == 1
        assert old.token not in store
        assert fresh.token in store
        with pytest.raises(SessionNotFound):
            store.get(old.token)

    def test_activity_postpones_eviction(self, store, clock):
        """Touching a session should restart its timeout."""
        session = store.create()
        clock.advance(minutes=25)
        store.touch(session.token)
        clock.advance(minutes=25)

        assert store.evict_expired(clock.now, TIMEOUT) == 0

    def test_evicted_session_cannot_advance(self, store, clock):
        """Operations on an evicted token should raise SessionNotFound."""
        session = store.create()
        clock.advance(hours=1)
        store.evict_expired(clock.now, TIMEOUT)

        with pytest.raises(SessionNotFound):
            store.advance(session.token, 0)
        assert session.evicted

    def test_skips_sessions_in_flight(self, store, clock):
        """A session whose lock is held should not be evicted."""
        session = store.create()
        clock.advance(hours=1)

        with session.lock:
            assert store.evict_expired(clock.now, TIMEOUT) == 0

        assert store.evict_expired(clock.now, TIMEOUT) == 1

    def test_discard(self, store):
        """Explicit discard should remove the session."""
        session = store.create()
        store.discard(session.token)

        assert session.token not in store


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
