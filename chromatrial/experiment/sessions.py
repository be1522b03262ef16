"""
Per-visitor session state and the concurrent session registry.

The registry lock only guards dictionary membership. All reads and
mutations of a session happen under that session's own lock, so unrelated
visitors never wait on each other. Lock order is always session lock
before registry lock.
"""

from __future__ import annotations

import logging
import secrets
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Dict, Iterator, Optional

from chromatrial.data.models import utc_now
from chromatrial.errors import SessionBusy, SessionNotFound, TrialConflict
from chromatrial.utils.helpers import short_token

logger = logging.getLogger(__name__)

TOKEN_BYTES = 32
SEED_BITS = 128


class SessionState(str, Enum):
    NEW = "new"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


@dataclass
class Session:
    """One visitor's progression through the trial sequence."""

    token: str
    seed: int
    created_at: datetime
    last_active_at: datetime
    current_trial_index: int = 0
    completed: bool = False
    questionnaire_answers: Optional[Dict[str, Any]] = None
    # When the current trial index was first shown; reset on advance
    trial_issued_at: Optional[datetime] = None

    lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)
    evicted: bool = field(default=False, repr=False, compare=False)

    @property
    def state(self) -> SessionState:
        if self.completed:
            return SessionState.COMPLETED
        if self.current_trial_index == 0 and self.trial_issued_at is None:
            return SessionState.NEW
        return SessionState.IN_PROGRESS

    def to_dict(self) -> Dict[str, Any]:
        """Public view of the session; the seed is never exposed."""
        return {
            "state": self.state.value,
            "current_trial_index": self.current_trial_index,
            "completed": self.completed,
            "created_at": self.created_at.isoformat(),
            "last_active_at": self.last_active_at.isoformat(),
        }


class SessionStore:
    """
    Concurrent registry mapping session token to Session.

    Parameters
    ----------
    trial_count : Optional[int]
        Sessions are marked completed once this many trials are accepted
    lock_timeout : float
        Seconds to wait for a session lock before raising SessionBusy
    clock : Callable[[], datetime]
        Source of the current time
    """

    def __init__(
        self,
        trial_count: Optional[int] = None,
        lock_timeout: float = 5.0,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.trial_count = trial_count
        self.lock_timeout = lock_timeout
        self.clock = clock
        self._sessions: Dict[str, Session] = {}
        self._registry_lock = threading.Lock()

    def __len__(self) -> int:
        with self._registry_lock:
            return len(self._sessions)

    def __contains__(self, token: str) -> bool:
        with self._registry_lock:
            return token in self._sessions

    def create(self) -> Session:
        """Allocate a fresh session with a random token and seed."""
        now = self.clock()
        with self._registry_lock:
            token = secrets.token_urlsafe(TOKEN_BYTES)
            while token in self._sessions:
                token = secrets.token_urlsafe(TOKEN_BYTES)
            session = Session(
                token=token,
                seed=secrets.randbits(SEED_BITS),
                created_at=now,
                last_active_at=now,
            )
            self._sessions[token] = session

        logger.info(f"Created session {short_token(token)}")
        return session

    def _lookup(self, token: str) -> Session:
        with self._registry_lock:
            session = self._sessions.get(token)
        if session is None:
            raise SessionNotFound(f"Unknown session {short_token(token)}")
        return session

    def get(self, token: str) -> Session:
        """Return the live session for ``token`` or raise SessionNotFound."""
        return self._lookup(token)

    @contextmanager
    def locked(self, token: str) -> Iterator[Session]:
        """Hold the session's lock for the duration of the block."""
        session = self._lookup(token)
        if not session.lock.acquire(timeout=self.lock_timeout):
            raise SessionBusy(f"Session {short_token(token)} is busy")
        try:
            # Evicted while we were waiting for the lock
            if session.evicted:
                raise SessionNotFound(f"Session {short_token(token)} has expired")
            yield session
        finally:
            session.lock.release()

    def touch(self, token: str) -> None:
        with self.locked(token) as session:
            session.last_active_at = self.clock()

    @contextmanager
    def transaction(self, token: str, expected_trial_index: int) -> Iterator[Session]:
        """
        Check-and-advance unit of work for one trial.

        The index check happens on entry under the session lock. The index
        is incremented only if the block completes without raising, so work
        done inside the block (such as writing the results log) and the
        advance succeed or fail together.

        Raises
        ------
        SessionNotFound
            Unknown or evicted token
        TrialConflict
            Session completed or its index differs from ``expected_trial_index``
        SessionBusy
            Lock not acquired within ``lock_timeout``
        """
        with self.locked(token) as session:
            if session.completed:
                raise TrialConflict(
                    "Session already completed",
                    expected_trial_index=None,
                    submitted_trial_index=expected_trial_index,
                    completed=True,
                )
            if session.current_trial_index != expected_trial_index:
                raise TrialConflict(
                    "Trial index does not match session",
                    expected_trial_index=session.current_trial_index,
                    submitted_trial_index=expected_trial_index,
                )

            yield session

            session.current_trial_index += 1
            session.trial_issued_at = None
            session.last_active_at = self.clock()
            if self.trial_count is not None and session.current_trial_index >= self.trial_count:
                session.completed = True
                logger.info(
                    f"Session {short_token(token)} completed after "
                    f"{session.current_trial_index} trials"
                )

    def advance(self, token: str, expected_trial_index: int) -> Session:
        """Atomically check the current index and increment it."""
        with self.transaction(token, expected_trial_index) as session:
            pass
        return session

    def record_questionnaire(self, token: str, answers: Dict[str, Any]) -> Session:
        with self.locked(token) as session:
            session.questionnaire_answers = dict(answers)
            session.last_active_at = self.clock()
        return session

    def discard(self, token: str) -> None:
        """Remove a session immediately."""
        with self.locked(token) as session:
            self._remove(session)

    def _remove(self, session: Session) -> bool:
        with self._registry_lock:
            if self._sessions.get(session.token) is not session:
                return False
            del self._sessions[session.token]
        session.evicted = True
        return True

    def evict_expired(self, now: datetime, timeout: timedelta) -> int:
        """
        Remove sessions inactive for longer than ``timeout``.

        Sessions whose lock is currently held are skipped; they are active
        by definition and will be reconsidered on the next sweep.

        Returns
        -------
        int
            Number of sessions evicted
        """
        with self._registry_lock:
            candidates = [
                s for s in self._sessions.values()
                if now - s.last_active_at > timeout
            ]

        evicted = 0
        for session in candidates:
            if not session.lock.acquire(blocking=False):
                continue
            try:
                if now - session.last_active_at > timeout and self._remove(session):
                    evicted += 1
            finally:
                session.lock.release()

        if evicted:
            logger.info(f"Evicted {evicted} expired sessions")
        return evicted
