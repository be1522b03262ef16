"""
Trial engine: orchestrates sessions, stimulus generation and the results log.

This is the only layer the HTTP boundary talks to. Failures are raised as
``ExperimentError`` subclasses and translated into responses by the caller.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from numbers import Real
from typing import Any, Dict, Mapping, Optional

from chromatrial.data.models import (
    Choice,
    QuestionnaireRecord,
    ResponseRecord,
    SessionRecord,
    Trial,
    utc_now,
)
from chromatrial.data.result_log import ResultLog
from chromatrial.errors import ExperimentError, InvalidResponse, ResultLogError
from chromatrial.experiment.sessions import Session, SessionStore
from chromatrial.experiment.stimuli import (
    StimulusGenerator,
    policy_from_config,
    seed_to_hex,
)
from chromatrial.utils.helpers import short_token

logger = logging.getLogger(__name__)

MAX_QUESTIONNAIRE_FIELDS = 50
MAX_QUESTIONNAIRE_VALUE_LENGTH = 2000


@dataclass(frozen=True)
class Accepted:
    """Outcome of an accepted response."""

    trial_index: int
    next_trial_index: Optional[int]
    completed: bool

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "status": "completed" if self.completed else "accepted",
            "trial_index": self.trial_index,
            "next_trial_index": self.next_trial_index,
            "completed": self.completed,
        }


class TrialEngine:
    """
    Produces trials for sessions and accepts responses exactly once.

    Parameters
    ----------
    store : SessionStore
        Session registry; its ``trial_count`` is set from ``trial_count``
    generator : StimulusGenerator
        Pure pair generator
    result_log : ResultLog
        Durable sink for ResponseRecords
    trial_count : int
        Trials per session
    session_timeout : timedelta
        Inactivity period after which sessions are evicted
    max_latency_ms : float
        Upper bound on a plausible response latency
    questionnaire_log : Optional[ResultLog]
        Sink for questionnaire answers; defaults to ``result_log``
    """

    def __init__(
        self,
        store: SessionStore,
        generator: StimulusGenerator,
        result_log: ResultLog,
        trial_count: int = 40,
        session_timeout: timedelta = timedelta(minutes=30),
        max_latency_ms: float = 600000.0,
        questionnaire_log: Optional[ResultLog] = None,
    ):
        if trial_count < 1:
            raise ValueError(f"trial_count must be at least 1, got {trial_count}")
        self.store = store
        self.store.trial_count = trial_count
        self.generator = generator
        self.result_log = result_log
        self.questionnaire_log = questionnaire_log or result_log
        self.trial_count = trial_count
        self.session_timeout = session_timeout
        self.max_latency_ms = max_latency_ms

    @classmethod
    def from_config(cls, app_config, clock=utc_now) -> "TrialEngine":
        """Build an engine from an ``AppConfig``."""
        exp = app_config.experiment
        results = app_config.results
        generator = StimulusGenerator(
            policy=policy_from_config(exp),
            size_px=exp.stimulus_size_px,
            shape=exp.stimulus_shape,
        )
        store = SessionStore(
            lock_timeout=app_config.session.lock_timeout_seconds,
            clock=clock,
        )
        result_log = ResultLog(
            results.path,
            max_retries=results.max_retries,
            retry_delay=results.retry_delay_seconds,
            lock_timeout=results.lock_timeout_seconds,
        )
        questionnaire_log = ResultLog(
            results.questionnaire_path,
            max_retries=results.max_retries,
            retry_delay=results.retry_delay_seconds,
            lock_timeout=results.lock_timeout_seconds,
        )
        logger.info(f"Sampling policy: {generator.policy.describe()}")
        return cls(
            store=store,
            generator=generator,
            result_log=result_log,
            trial_count=exp.trial_count,
            session_timeout=timedelta(minutes=app_config.session.timeout_minutes),
            max_latency_ms=exp.max_latency_ms,
            questionnaire_log=questionnaire_log,
        )

    # ------------------------------------------------------------------
    # Session lifecycle
    # ------------------------------------------------------------------

    def start_session(self) -> Session:
        """
        Create a session and record its seed in the results log.

        The seed record makes the session's trial sequence reproducible
        offline. If it cannot be written the session is discarded and
        ``ResultLogError`` propagates.
        """
        session = self.store.create()
        record = SessionRecord(
            session_token=session.token,
            seed_hex=seed_to_hex(session.seed),
            policy=self.generator.policy.describe(),
            timestamp=session.created_at,
        )
        try:
            self.result_log.append(record)
        except ResultLogError:
            logger.error(f"Could not record seed for session {short_token(session.token)}")
            self.store.discard(session.token)
            raise
        return session

    def evict_expired(self, now: Optional[datetime] = None) -> int:
        """Evict sessions idle for longer than the configured timeout."""
        return self.store.evict_expired(now or self.store.clock(), self.session_timeout)

    # ------------------------------------------------------------------
    # Trials
    # ------------------------------------------------------------------

    def _build_trial(self, session: Session, trial_index: int, issued_at: datetime) -> Trial:
        left, right = self.generator.generate_pair(session.seed, trial_index)
        return Trial(
            trial_index=trial_index,
            left=left,
            right=right,
            issued_at=issued_at,
            delta=self.generator.delta_for(trial_index),
        )

    def next_trial(self, token: str) -> Optional[Trial]:
        """
        Return the session's current trial, or None once it is completed.

        Repeated calls before a response is accepted return the same trial,
        including its placement and issue time.

        Raises
        ------
        SessionNotFound
            Unknown or evicted token
        """
        with self.store.locked(token) as session:
            now = self.store.clock()
            session.last_active_at = now
            if session.completed:
                return None
            if session.trial_issued_at is None:
                session.trial_issued_at = now
            return self._build_trial(session, session.current_trial_index, session.trial_issued_at)

    def submit_response(
        self,
        token: str,
        trial_index: Any,
        chosen: Any,
        latency_ms: Any,
    ) -> Accepted:
        """
        Validate, record and accept one response.

        The results log write and the session advance form a single unit:
        if the write fails the index is left where it was.

        Raises
        ------
        SessionNotFound
            Unknown or evicted token
        InvalidResponse
            Malformed index, choice or latency
        TrialConflict
            Stale, duplicate, out-of-order or post-completion submission
        ResultLogError
            The record could not be written
        """
        # Unknown tokens fail before input validation
        self.store.get(token)

        trial_index = self._validate_trial_index(trial_index)
        choice = self._validate_choice(chosen)
        latency = self._validate_latency(latency_ms)

        try:
            with self.store.transaction(token, trial_index) as session:
                trial = self._build_trial(session, trial_index, session.trial_issued_at)
                record = ResponseRecord(
                    session_token=session.token,
                    trial_index=trial_index,
                    chosen=choice,
                    left_stimulus=trial.left,
                    right_stimulus=trial.right,
                    response_latency_ms=latency,
                    timestamp=self.store.clock(),
                    issued_at=trial.issued_at,
                    delta=trial.delta,
                )
                self.result_log.append(record)
        except ExperimentError as e:
            logger.warning(
                f"Rejected response for session {short_token(token)} "
                f"trial {trial_index}: {e.__class__.__name__}"
            )
            raise

        next_index = trial_index + 1
        completed = next_index >= self.trial_count
        return Accepted(
            trial_index=trial_index,
            next_trial_index=None if completed else next_index,
            completed=completed,
        )

    def submit_questionnaire(self, token: str, answers: Any) -> QuestionnaireRecord:
        """
        Store questionnaire answers on the session and write them to the log.

        Raises
        ------
        SessionNotFound
            Unknown or evicted token
        InvalidResponse
            Answers are not a flat mapping of short scalar values
        """
        self.store.get(token)
        answers = self._validate_answers(answers)

        with self.store.locked(token) as session:
            record = QuestionnaireRecord(
                session_token=session.token,
                answers=answers,
                trials_completed=session.current_trial_index,
                timestamp=self.store.clock(),
            )
            self.questionnaire_log.append(record)
            session.questionnaire_answers = answers
            session.last_active_at = record.timestamp
        return record

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    @staticmethod
    def _validate_trial_index(value: Any) -> int:
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise InvalidResponse(f"trial_index must be a non-negative integer, got {value!r}")
        return value

    @staticmethod
    def _validate_choice(value: Any) -> Choice:
        try:
            return Choice.parse(value)
        except ValueError:
            raise InvalidResponse(f"chosen must be 'left' or 'right', got {value!r}")

    def _validate_latency(self, value: Any) -> float:
        if isinstance(value, bool) or not isinstance(value, Real):
            raise InvalidResponse(f"latency must be a number, got {value!r}")
        latency = float(value)
        if not math.isfinite(latency) or latency < 0 or latency > self.max_latency_ms:
            raise InvalidResponse(
                f"latency must be between 0 and {self.max_latency_ms} ms, got {value!r}"
            )
        return latency

    @staticmethod
    def _validate_answers(answers: Any) -> Dict[str, Any]:
        if not isinstance(answers, Mapping):
            raise InvalidResponse("answers must be an object")
        if len(answers) > MAX_QUESTIONNAIRE_FIELDS:
            raise InvalidResponse(f"at most {MAX_QUESTIONNAIRE_FIELDS} answers are accepted")

        cleaned = {}
        for key, value in answers.items():
            if not isinstance(key, str) or not key:
                raise InvalidResponse(f"answer keys must be non-empty strings, got {key!r}")
            if value is not None and not isinstance(value, (str, int, float, bool)):
                raise InvalidResponse(f"answer {key!r} must be a scalar value")
            if isinstance(value, str) and len(value) > MAX_QUESTIONNAIRE_VALUE_LENGTH:
                raise InvalidResponse(f"answer {key!r} is too long")
            cleaned[key] = value
        return cleaned
