"""
Configuration settings for the chromatrial colour discrimination server.

This module contains all configurable parameters for the trial engine,
including the stimulus sampling policy, session lifetime, results log
location and HTTP server settings.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List

from dotenv import load_dotenv

load_dotenv()

# Base paths
PROJECT_ROOT = Path(__file__).parent.parent.absolute()
DATA_DIR = PROJECT_ROOT / "data"
EXPORTS_DIR = DATA_DIR / "exports"
STATIC_DIR = PROJECT_ROOT / "static"


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


@dataclass
class ExperimentConfig:
    """Configuration for the forced-choice colour trials.

    The sampling policy fields are only meaningful for the policy that
    reads them: ``half_life`` for "exponential", ``narrowing_steps`` for
    "linear". Distances are Euclidean distances in 8-bit sRGB space.
    """

    # Trials per session before the session is marked completed
    trial_count: int = field(default_factory=lambda: _env_int("TRIAL_COUNT", 40))

    # Stimulus sampling policy
    sampling_policy: str = field(
        default_factory=lambda: os.getenv("SAMPLING_POLICY", "exponential")
    )
    start_delta: float = field(default_factory=lambda: _env_float("START_DELTA", 96.0))
    floor_delta: float = field(default_factory=lambda: _env_float("FLOOR_DELTA", 3.0))
    half_life: float = field(default_factory=lambda: _env_float("HALF_LIFE", 8.0))
    narrowing_steps: int = field(default_factory=lambda: _env_int("NARROWING_STEPS", 40))

    # Rendering parameters
    stimulus_size_px: int = 200
    stimulus_shape: str = "square"

    # Responses slower than this are treated as malformed
    max_latency_ms: float = field(
        default_factory=lambda: _env_float("MAX_LATENCY_MS", 600000.0)
    )


@dataclass
class SessionConfig:
    """Configuration for in-memory visitor sessions."""

    timeout_minutes: float = field(
        default_factory=lambda: _env_float("SESSION_TIMEOUT_MINUTES", 30.0)
    )
    eviction_interval_seconds: float = field(
        default_factory=lambda: _env_float("EVICTION_INTERVAL_SECONDS", 60.0)
    )
    lock_timeout_seconds: float = 5.0


@dataclass
class ResultLogConfig:
    """Configuration for the append-only results log."""

    path: Path = field(
        default_factory=lambda: Path(os.getenv("RESULTS_LOG_PATH", str(DATA_DIR / "results.jsonl")))
    )
    questionnaire_path: Path = field(
        default_factory=lambda: Path(
            os.getenv("QUESTIONNAIRE_LOG_PATH", str(DATA_DIR / "questionnaire.jsonl"))
        )
    )
    max_retries: int = 3
    retry_delay_seconds: float = 0.05
    lock_timeout_seconds: float = 5.0


def _get_secret_key() -> str:
    """
    Get the secret key from environment with proper security handling.

    In development: generates a random key if not set (with warning)
    In production: REQUIRES the SECRET_KEY to be set explicitly
    """
    import secrets
    import warnings

    secret_key = os.getenv("SECRET_KEY")
    env = os.getenv("FLASK_ENV", "development")

    if secret_key:
        return secret_key

    if env == "production":
        raise ValueError(
            "SECRET_KEY environment variable is required in production. "
            "Generate one with: python -c \"import secrets; print(secrets.token_hex(32))\""
        )

    # Session cookies will not survive a restart with a generated key
    warnings.warn(
        "SECRET_KEY not set. Generating temporary key for development. "
        "Set SECRET_KEY in .env for session cookies to survive restarts.",
        RuntimeWarning
    )
    return secrets.token_hex(32)


def _get_allowed_origins() -> List[str]:
    origins = os.getenv("ALLOWED_ORIGINS", "").split(",")
    return [o.strip() for o in origins if o.strip()]


@dataclass
class AppConfig:
    """Main application configuration."""

    # Environment
    env: str = field(default_factory=lambda: os.getenv("FLASK_ENV", "development"))
    debug: bool = field(default_factory=lambda: os.getenv("FLASK_DEBUG", "false").lower() == "true")

    # Server settings
    host: str = field(default_factory=lambda: os.getenv("HOST", "127.0.0.1"))
    port: int = field(default_factory=lambda: _env_int("PORT", 8081))
    base_url: str = field(default_factory=lambda: os.getenv("BASE_URL", "http://127.0.0.1:8081"))
    static_dir: Path = field(default_factory=lambda: Path(os.getenv("STATIC_DIR", str(STATIC_DIR))))

    # Security
    secret_key: str = field(default_factory=_get_secret_key)
    allowed_origins: List[str] = field(default_factory=_get_allowed_origins)

    # Sub-configurations
    experiment: ExperimentConfig = field(default_factory=ExperimentConfig)
    session: SessionConfig = field(default_factory=SessionConfig)
    results: ResultLogConfig = field(default_factory=ResultLogConfig)


# Global configuration instance
config = AppConfig()


def get_config() -> AppConfig:
    """Get the global configuration instance."""
    return config


def reload_config() -> AppConfig:
    """Reload configuration from environment."""
    global config
    load_dotenv(override=True)
    config = AppConfig()
    return config
