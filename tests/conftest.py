"""
Shared fixtures for the chromatrial test suite.
"""

import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

import pytest

from chromatrial.data.result_log import ResultLog
from chromatrial.experiment.engine import TrialEngine
from chromatrial.experiment.sessions import SessionStore
from chromatrial.experiment.stimuli import StimulusGenerator


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self):
        self.now = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def result_log(tmp_path):
    return ResultLog(tmp_path / "results.jsonl", retry_delay=0)


@pytest.fixture
def questionnaire_log(tmp_path):
    return ResultLog(tmp_path / "questionnaire.jsonl", retry_delay=0)


@pytest.fixture
def engine(clock, result_log, questionnaire_log):
    return TrialEngine(
        store=SessionStore(lock_timeout=1.0, clock=clock),
        generator=StimulusGenerator(),
        result_log=result_log,
        trial_count=5,
        session_timeout=timedelta(minutes=30),
        max_latency_ms=60000,
        questionnaire_log=questionnaire_log,
    )
