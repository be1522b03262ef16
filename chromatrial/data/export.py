"""
Export of the results log to tabular formats.

Flattens each ResponseRecord into one row; no statistics are computed.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Union

import pandas as pd

from chromatrial.data.models import ResponseRecord
from chromatrial.data.result_log import ResultLog
from chromatrial.utils.helpers import ensure_directory

logger = logging.getLogger(__name__)

COLUMNS = [
    "session_token",
    "trial_index",
    "chosen",
    "response_latency_ms",
    "timestamp",
    "issued_at",
    "delta",
    "left_r", "left_g", "left_b",
    "right_r", "right_g", "right_b",
    "distance",
]


def load_results_frame(path: Union[str, Path]) -> pd.DataFrame:
    """
    Load response records from a results log.

    Parameters
    ----------
    path : Union[str, Path]
        Results log file

    Returns
    -------
    pd.DataFrame
        One row per response, sorted by session and trial index
    """
    rows = []
    for data in ResultLog(path).iter_records(kind=ResponseRecord.KIND):
        record = ResponseRecord.from_dict(data)
        left, right = record.left_stimulus.rgb, record.right_stimulus.rgb
        rows.append({
            "session_token": record.session_token,
            "trial_index": record.trial_index,
            "chosen": record.chosen.value,
            "response_latency_ms": record.response_latency_ms,
            "timestamp": record.timestamp,
            "issued_at": record.issued_at,
            "delta": record.delta,
            "left_r": left[0], "left_g": left[1], "left_b": left[2],
            "right_r": right[0], "right_g": right[1], "right_b": right[2],
            "distance": record.left_stimulus.distance_to(record.right_stimulus),
        })

    df = pd.DataFrame(rows, columns=COLUMNS)
    if not df.empty:
        df = df.sort_values(["session_token", "trial_index"]).reset_index(drop=True)
    return df


def export_results(
    path: Union[str, Path],
    output: Union[str, Path],
    fmt: str = "csv",
) -> Path:
    """
    Write the flattened results log to CSV or JSON.

    Parameters
    ----------
    path : Union[str, Path]
        Results log file
    output : Union[str, Path]
        Output file
    fmt : str
        "csv" or "json"

    Returns
    -------
    Path
        The written file
    """
    output = Path(output)
    ensure_directory(output.parent)
    df = load_results_frame(path)

    if fmt == "csv":
        df.to_csv(output, index=False)
    elif fmt == "json":
        df.to_json(output, orient="records", date_format="iso", indent=2)
    else:
        raise ValueError(f"Unsupported export format: {fmt}")

    logger.info(f"Exported {len(df)} responses to {output}")
    return output
