"""
Data models for the chromatrial trial engine.

This module defines immutable records for:
- ColorStimulus: a single colour patch shown to the visitor
- Trial: one forced-choice presentation of two stimuli
- ResponseRecord: the durable outcome of one accepted trial
- QuestionnaireRecord: post-experiment questionnaire answers
"""

from __future__ import annotations

import io
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from PIL import Image


def utc_now() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromisoformat(value)


def _format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat()


class Choice(str, Enum):
    """Which of the two stimuli the visitor picked."""

    LEFT = "left"
    RIGHT = "right"

    @classmethod
    def parse(cls, value: Any) -> "Choice":
        """
        Coerce a client-supplied value into a Choice.

        Raises
        ------
        ValueError
            If the value is not "left" or "right" (case-insensitive)
        """
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls(value.strip().lower())
            except ValueError:
                pass
        raise ValueError(f"Invalid choice: {value!r}")


@dataclass(frozen=True)
class ColorStimulus:
    """A uniformly coloured patch in 8-bit sRGB."""

    rgb: Tuple[int, int, int]
    size_px: int = 200
    shape: str = "square"
    color_space: str = "sRGB"

    def __post_init__(self):
        if len(self.rgb) != 3 or any(not 0 <= c <= 255 for c in self.rgb):
            raise ValueError(f"RGB components must be in 0..255: {self.rgb!r}")
        if self.size_px < 1:
            raise ValueError(f"size_px must be positive: {self.size_px}")
        object.__setattr__(self, "rgb", tuple(int(c) for c in self.rgb))

    @property
    def hex(self) -> str:
        r, g, b = self.rgb
        return f"#{r:02x}{g:02x}{b:02x}"

    def distance_to(self, other: "ColorStimulus") -> float:
        """Euclidean distance to another stimulus in RGB space."""
        return sum((a - b) ** 2 for a, b in zip(self.rgb, other.rgb)) ** 0.5

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "rgb": list(self.rgb),
            "hex": self.hex,
            "size_px": self.size_px,
            "shape": self.shape,
            "color_space": self.color_space,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ColorStimulus":
        return cls(
            rgb=tuple(data["rgb"]),
            size_px=data.get("size_px", 200),
            shape=data.get("shape", "square"),
            color_space=data.get("color_space", "sRGB"),
        )

    def image_url(self) -> str:
        """Relative URL of the PNG rendering served by the HTTP layer."""
        r, g, b = self.rgb
        return f"/image.png?r={r}&g={g}&b={b}&size={self.size_px}"

    def to_png(self, size_px: Optional[int] = None) -> bytes:
        """Render the stimulus as a solid PNG image."""
        size = size_px or self.size_px
        image = Image.new("RGB", (size, size), self.rgb)
        buf = io.BytesIO()
        image.save(buf, format="PNG")
        return buf.getvalue()


@dataclass(frozen=True)
class Trial:
    """
    One forced-choice presentation.

    Regenerated from ``(seed, trial_index)`` whenever it is needed; only
    ``issued_at`` comes from session state.
    """

    trial_index: int
    left: ColorStimulus
    right: ColorStimulus
    issued_at: datetime
    delta: float

    def stimulus(self, choice: Choice) -> ColorStimulus:
        return self.left if choice is Choice.LEFT else self.right

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "trial_index": self.trial_index,
            "left": {**self.left.to_dict(), "image_url": self.left.image_url()},
            "right": {**self.right.to_dict(), "image_url": self.right.image_url()},
            "issued_at": _format_timestamp(self.issued_at),
        }


@dataclass(frozen=True)
class ResponseRecord:
    """
    Durable outcome of one accepted trial.

    Once appended to the results log a record is never modified.
    """

    KIND = "response"

    session_token: str
    trial_index: int
    chosen: Choice
    left_stimulus: ColorStimulus
    right_stimulus: ColorStimulus
    response_latency_ms: float
    timestamp: datetime = field(default_factory=utc_now)
    issued_at: Optional[datetime] = None
    delta: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "kind": self.KIND,
            "session_token": self.session_token,
            "trial_index": self.trial_index,
            "chosen": self.chosen.value,
            "left_stimulus": self.left_stimulus.to_dict(),
            "right_stimulus": self.right_stimulus.to_dict(),
            "response_latency_ms": self.response_latency_ms,
            "timestamp": _format_timestamp(self.timestamp),
            "issued_at": _format_timestamp(self.issued_at),
            "delta": self.delta,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ResponseRecord":
        return cls(
            session_token=data["session_token"],
            trial_index=int(data["trial_index"]),
            chosen=Choice.parse(data["chosen"]),
            left_stimulus=ColorStimulus.from_dict(data["left_stimulus"]),
            right_stimulus=ColorStimulus.from_dict(data["right_stimulus"]),
            response_latency_ms=float(data["response_latency_ms"]),
            timestamp=_parse_timestamp(data["timestamp"]),
            issued_at=_parse_timestamp(data.get("issued_at")),
            delta=data.get("delta"),
        )


@dataclass(frozen=True)
class QuestionnaireRecord:
    """Answers to the post-experiment questionnaire."""

    KIND = "questionnaire"

    session_token: str
    answers: Dict[str, Any]
    trials_completed: int
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "kind": self.KIND,
            "session_token": self.session_token,
            "answers": dict(self.answers),
            "trials_completed": self.trials_completed,
            "timestamp": _format_timestamp(self.timestamp),
        }


@dataclass(frozen=True)
class SessionRecord:
    """
    Server-side record of a session's seed, written when the session starts.

    The seed is stored as a hex string so a session's trial sequence can be
    regenerated later with ``chromatrial stimuli --session``. It is never
    sent to the client.
    """

    KIND = "session"

    session_token: str
    seed_hex: str
    policy: Dict[str, Any]
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        return {
            "kind": self.KIND,
            "session_token": self.session_token,
            "seed": self.seed_hex,
            "policy": dict(self.policy),
            "timestamp": _format_timestamp(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionRecord":
        return cls(
            session_token=data["session_token"],
            seed_hex=data["seed"],
            policy=dict(data.get("policy") or {}),
            timestamp=_parse_timestamp(data.get("timestamp")),
        )
