"""
Error taxonomy for the trial engine.

Every failure the engine can report to the transport layer is an
``ExperimentError`` subclass carrying an HTTP-ish ``status_code`` and a
stable machine-readable ``error_code``. The core never formats UI text.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class ExperimentError(Exception):
    """Base class for all trial engine errors."""

    status_code: int = 500
    error_code: str = "experiment_error"

    def __init__(self, message: str = "", **details: Any):
        super().__init__(message or self.error_code)
        self.message = message or self.error_code
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        payload: Dict[str, Any] = {"error": self.error_code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class SessionNotFound(ExperimentError):
    """Unknown, expired or evicted session token."""

    status_code = 404
    error_code = "session_not_found"


class TrialConflict(ExperimentError):
    """Stale, duplicate, out-of-order or post-completion submission."""

    status_code = 409
    error_code = "trial_conflict"

    def __init__(
        self,
        message: str = "",
        expected_trial_index: Optional[int] = None,
        submitted_trial_index: Optional[int] = None,
        completed: bool = False,
    ):
        super().__init__(
            message,
            expected_trial_index=expected_trial_index,
            submitted_trial_index=submitted_trial_index,
            completed=completed,
        )
        self.expected_trial_index = expected_trial_index
        self.submitted_trial_index = submitted_trial_index
        self.completed = completed


class InvalidResponse(ExperimentError):
    """Malformed submission from the client."""

    status_code = 400
    error_code = "invalid_input"


class SessionBusy(ExperimentError):
    """The session lock could not be acquired in time."""

    status_code = 503
    error_code = "session_busy"


class ResultLogError(ExperimentError):
    """The results log could not be written after all retries."""

    status_code = 500
    error_code = "result_log_error"
