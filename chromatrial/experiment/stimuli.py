"""
Stimulus generation for the colour discrimination experiment.

This module provides:
- Pluggable sampling policies mapping a trial index to a target colour distance
- A pure, seeded generator of left/right colour pairs

Generation is a pure function of ``(seed, trial_index)``: the random stream
is derived from those two values plus ``POLICY_VERSION`` and nothing else,
so any trial can be regenerated exactly for validation or audit.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

import numpy as np

from chromatrial.data.models import ColorStimulus

# Bump whenever the draw procedure below changes; recorded trial indices are
# only comparable between sessions generated under the same version.
POLICY_VERSION = 1

# Largest per-channel offset that still leaves room for a base colour
MAX_DELTA = 255.0


class SamplingPolicy(ABC):
    """Maps a trial index to the target RGB distance between the two stimuli."""

    name = "base"

    @abstractmethod
    def delta(self, trial_index: int) -> float:
        """Target Euclidean RGB distance for ``trial_index``."""

    def params(self) -> Dict[str, Any]:
        return {}

    def describe(self) -> Dict[str, Any]:
        """Name and parameters, for logging alongside collected data."""
        return {"policy": self.name, "version": POLICY_VERSION, **self.params()}


class ExponentialNarrowingPolicy(SamplingPolicy):
    """
    Distance halves towards ``floor`` every ``half_life`` trials.

    delta(i) = floor + (start - floor) * 0.5 ** (i / half_life)
    """

    name = "exponential"

    def __init__(self, start: float = 96.0, floor: float = 3.0, half_life: float = 8.0):
        if not 0 < floor <= start:
            raise ValueError(f"Need 0 < floor <= start, got floor={floor}, start={start}")
        if half_life <= 0:
            raise ValueError(f"half_life must be positive, got {half_life}")
        self.start = start
        self.floor = floor
        self.half_life = half_life

    def delta(self, trial_index: int) -> float:
        return self.floor + (self.start - self.floor) * 0.5 ** (trial_index / self.half_life)

    def params(self) -> Dict[str, Any]:
        return {"start": self.start, "floor": self.floor, "half_life": self.half_life}


class LinearNarrowingPolicy(SamplingPolicy):
    """Distance falls linearly from ``start`` to ``floor`` over ``steps`` trials."""

    name = "linear"

    def __init__(self, start: float = 96.0, floor: float = 3.0, steps: int = 40):
        if not 0 < floor <= start:
            raise ValueError(f"Need 0 < floor <= start, got floor={floor}, start={start}")
        if steps < 1:
            raise ValueError(f"steps must be at least 1, got {steps}")
        self.start = start
        self.floor = floor
        self.steps = steps

    def delta(self, trial_index: int) -> float:
        t = min(trial_index / self.steps, 1.0)
        return self.start + (self.floor - self.start) * t

    def params(self) -> Dict[str, Any]:
        return {"start": self.start, "floor": self.floor, "steps": self.steps}


class FixedDeltaPolicy(SamplingPolicy):
    """Constant distance for every trial."""

    name = "fixed"

    def __init__(self, delta: float = 20.0):
        if delta <= 0:
            raise ValueError(f"delta must be positive, got {delta}")
        self._delta = delta

    def delta(self, trial_index: int) -> float:
        return self._delta

    def params(self) -> Dict[str, Any]:
        return {"delta": self._delta}


def policy_from_config(experiment_config) -> SamplingPolicy:
    """Build the sampling policy named in an ``ExperimentConfig``."""
    name = experiment_config.sampling_policy.lower()
    if name == "exponential":
        return ExponentialNarrowingPolicy(
            start=experiment_config.start_delta,
            floor=experiment_config.floor_delta,
            half_life=experiment_config.half_life,
        )
    if name == "linear":
        return LinearNarrowingPolicy(
            start=experiment_config.start_delta,
            floor=experiment_config.floor_delta,
            steps=experiment_config.narrowing_steps,
        )
    if name == "fixed":
        return FixedDeltaPolicy(delta=experiment_config.start_delta)
    raise ValueError(f"Unknown sampling policy: {experiment_config.sampling_policy}")


POLICIES = {
    cls.name: cls
    for cls in (ExponentialNarrowingPolicy, LinearNarrowingPolicy, FixedDeltaPolicy)
}


def policy_from_description(description: Dict[str, Any]) -> SamplingPolicy:
    """Rebuild a policy from the output of ``SamplingPolicy.describe()``."""
    params = dict(description)
    name = params.pop("policy", None)
    version = params.pop("version", POLICY_VERSION)
    if name not in POLICIES:
        raise ValueError(f"Unknown sampling policy: {name}")
    if version != POLICY_VERSION:
        raise ValueError(
            f"Policy version {version} cannot be regenerated by version {POLICY_VERSION}"
        )
    return POLICIES[name](**params)


class StimulusGenerator:
    """
    Generator for forced-choice colour pairs.

    Holds no per-session state; every call is a pure function of its
    arguments and the configured policy.
    """

    def __init__(
        self,
        policy: Optional[SamplingPolicy] = None,
        size_px: int = 200,
        shape: str = "square",
    ):
        """
        Initialize the generator.

        Parameters
        ----------
        policy : Optional[SamplingPolicy]
            Distance schedule; defaults to ExponentialNarrowingPolicy()
        size_px : int
            Edge length of the rendered stimuli
        shape : str
            Rendered shape, recorded with each stimulus
        """
        self.policy = policy or ExponentialNarrowingPolicy()
        self.size_px = size_px
        self.shape = shape

    def delta_for(self, trial_index: int) -> float:
        """Target distance for a trial, clamped to what the RGB cube allows."""
        return min(float(self.policy.delta(trial_index)), MAX_DELTA)

    def generate_pair(self, seed: int, trial_index: int) -> Tuple[ColorStimulus, ColorStimulus]:
        """
        Generate the (left, right) pair for a trial.

        Parameters
        ----------
        seed : int
            Non-negative session seed
        trial_index : int
            Zero-based trial index

        Returns
        -------
        Tuple[ColorStimulus, ColorStimulus]
            Two distinct stimuli in display order
        """
        if seed < 0 or trial_index < 0:
            raise ValueError("seed and trial_index must be non-negative")

        rng = np.random.default_rng([seed, trial_index, POLICY_VERSION])
        delta = self.delta_for(trial_index)

        direction = rng.normal(size=3)
        norm = np.linalg.norm(direction)
        if norm == 0:
            direction = np.array([1.0, 0.0, 0.0])
        else:
            direction = direction / norm
        offset = delta * direction

        # Base colour is drawn only from the region where base + offset
        # stays inside the cube, so the target distance is never distorted.
        low = np.maximum(0.0, -offset)
        high = np.minimum(255.0, 255.0 - offset)
        base = rng.uniform(low, high)
        comparison = base + offset

        a = self._to_rgb(base)
        b = self._to_rgb(comparison)
        if a == b:
            b = self._nudge(a)

        first = ColorStimulus(rgb=a, size_px=self.size_px, shape=self.shape)
        second = ColorStimulus(rgb=b, size_px=self.size_px, shape=self.shape)

        # Placement is drawn from the same stream so it is reproducible
        if rng.random() < 0.5:
            return first, second
        return second, first

    @staticmethod
    def _to_rgb(values: np.ndarray) -> Tuple[int, int, int]:
        clipped = np.clip(np.rint(values), 0, 255)
        return tuple(int(c) for c in clipped)

    @staticmethod
    def _nudge(rgb: Tuple[int, int, int]) -> Tuple[int, int, int]:
        """Smallest change that makes a colour distinct from ``rgb``."""
        r, g, b = rgb
        return (r + 1 if r < 255 else r - 1, g, b)

    def generate_sequence(self, seed: int, n_trials: int) -> List[Dict[str, Any]]:
        """
        Regenerate the first ``n_trials`` pairs for a seed.

        Parameters
        ----------
        seed : int
            Session seed
        n_trials : int
            Number of trials to generate

        Returns
        -------
        List[Dict[str, Any]]
            One entry per trial with the target and realised distance
        """
        sequence = []
        for i in range(n_trials):
            left, right = self.generate_pair(seed, i)
            sequence.append({
                "trial_index": i,
                "delta": self.delta_for(i),
                "distance": round(left.distance_to(right), 3),
                "left": left.to_dict(),
                "right": right.to_dict(),
            })
        return sequence


def seed_to_hex(seed: int) -> str:
    """Hex encoding used for seeds in ``session`` records of the results log."""
    if seed < 0:
        raise ValueError(f"Invalid seed: {seed}")
    return format(seed, "x")


def seed_from_hex(value: str) -> int:
    """Parse a hex-encoded seed as stored in ``session`` records."""
    seed = int(value, 16)
    if seed < 0:
        raise ValueError(f"Invalid seed: {value}")
    return seed
