"""
Experiment module for chromatrial.

This module provides:
- Colour pair generation under pluggable sampling policies
- Per-visitor session tracking
- The trial engine that accepts each response exactly once
"""

from .stimuli import (
    StimulusGenerator,
    SamplingPolicy,
    ExponentialNarrowingPolicy,
    LinearNarrowingPolicy,
    FixedDeltaPolicy,
    policy_from_config,
    policy_from_description,
    seed_from_hex,
    seed_to_hex,
)
from .sessions import Session, SessionState, SessionStore
from .engine import Accepted, TrialEngine

__all__ = [
    "StimulusGenerator",
    "SamplingPolicy",
    "ExponentialNarrowingPolicy",
    "LinearNarrowingPolicy",
    "FixedDeltaPolicy",
    "policy_from_config",
    "policy_from_description",
    "seed_from_hex",
    "seed_to_hex",
    "Session",
    "SessionState",
    "SessionStore",
    "Accepted",
    "TrialEngine",
]
