"""
Utility helper functions for chromatrial.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Union

logger = logging.getLogger(__name__)


def ensure_directory(path: Union[str, Path]) -> Path:
    """
    Ensure a directory exists, creating it if necessary.

    Parameters
    ----------
    path : Union[str, Path]
        Directory path

    Returns
    -------
    Path
        The directory path
    """
    path = Path(path)
    path.mkdir(parents=True, exist_ok=True)
    return path


def save_json(
    data: Any,
    path: Union[str, Path],
    indent: int = 2
) -> None:
    """
    Save data to JSON file.

    Parameters
    ----------
    data : Any
        JSON-serialisable data
    path : Union[str, Path]
        Output path
    indent : int
        JSON indentation
    """
    path = Path(path)
    ensure_directory(path.parent)

    with open(path, "w") as f:
        json.dump(data, f, indent=indent, default=str)

    logger.info(f"Saved JSON to {path}")


def get_timestamp() -> str:
    """Timestamp in YYYYMMDD_HHMMSS format, for output file names."""
    return datetime.now().strftime("%Y%m%d_%H%M%S")


def short_token(token: str) -> str:
    """Truncated session token for log messages."""
    return token[:8]
