"""
chromatrial

A crowd-sourced colour discrimination experiment server. Anonymous visitors
are shown a sequence of forced-choice trials between two generated colour
patches; every accepted choice is appended to a durable results log.

Modules:
    - experiment: Stimulus generation, session tracking and the trial engine
    - data: Record types, the append-only results log and log export
    - utils: Utility functions
"""

__version__ = "1.0.0"

from chromatrial.errors import (
    ExperimentError,
    InvalidResponse,
    ResultLogError,
    SessionBusy,
    SessionNotFound,
    TrialConflict,
)

__all__ = [
    "__version__",
    "ExperimentError",
    "InvalidResponse",
    "ResultLogError",
    "SessionBusy",
    "SessionNotFound",
    "TrialConflict",
]
