"""
Data module for chromatrial.

This module provides:
- Immutable stimulus, trial and response record types
- The append-only results log
- Export of the log to tabular formats
"""

from .models import (
    Choice,
    ColorStimulus,
    QuestionnaireRecord,
    ResponseRecord,
    SessionRecord,
    Trial,
)
from .result_log import ResultLog
from .export import load_results_frame, export_results

__all__ = [
    "Choice",
    "ColorStimulus",
    "QuestionnaireRecord",
    "ResponseRecord",
    "SessionRecord",
    "Trial",
    "ResultLog",
    "load_results_frame",
    "export_results",
]
