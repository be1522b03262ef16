"""
Append-only results log.

Each record is written as a single JSON line with one ``os.write`` call on
an ``O_APPEND`` descriptor and flushed with ``fsync``. Appends from
concurrent sessions are serialised by a process-wide lock, and appends
from other processes by an ``fcntl.flock`` held on the file for the whole
write. If a write fails part-way the partial bytes are truncated away
before retrying, provided nothing was appended after them; otherwise they
are left in place as an unparseable line that readers skip.

The log exposes no update or delete operation.
"""

from __future__ import annotations

import fcntl
import json
import logging
import os
import threading
import time
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Union

from chromatrial.errors import ResultLogError
from chromatrial.utils.helpers import ensure_directory

logger = logging.getLogger(__name__)


class ResultLog:
    """
    Durable, append-only sink of JSON-line records.

    Parameters
    ----------
    path : Union[str, Path]
        Log file location; parent directories are created on first append
    max_retries : int
        Additional attempts after a failed write
    retry_delay : float
        Seconds to wait between attempts (doubled each retry)
    lock_timeout : float
        Seconds to wait for the append lock before failing

    Notes
    -----
    Only the wait for the in-process lock is bounded. Once a write has
    started, a stalled ``os.write`` or ``fsync`` blocks the caller (and the
    session lock it holds) until the kernel returns.
    """

    def __init__(
        self,
        path: Union[str, Path],
        max_retries: int = 3,
        retry_delay: float = 0.05,
        lock_timeout: float = 5.0,
    ):
        self.path = Path(path)
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.lock_timeout = lock_timeout
        self._lock = threading.Lock()

    def append(self, record: Any) -> None:
        """
        Append one record to the log.

        Parameters
        ----------
        record : Any
            Object with a ``to_dict()`` method, or a plain dict

        Raises
        ------
        ResultLogError
            If the lock times out or every write attempt fails
        """
        data = record.to_dict() if hasattr(record, "to_dict") else dict(record)
        line = (json.dumps(data, sort_keys=True, default=str) + "\n").encode("utf-8")

        if not self._lock.acquire(timeout=self.lock_timeout):
            raise ResultLogError(f"Timed out waiting for results log lock on {self.path}")
        try:
            self._append_with_retry(line)
        finally:
            self._lock.release()

    def _append_with_retry(self, line: bytes) -> None:
        delay = self.retry_delay
        last_error: Optional[OSError] = None

        for attempt in range(self.max_retries + 1):
            try:
                self._write_line(line)
                return
            except OSError as e:
                last_error = e
                if attempt < self.max_retries:
                    logger.warning(
                        f"Results log write failed (attempt {attempt + 1}/"
                        f"{self.max_retries + 1}): {e}"
                    )
                    time.sleep(delay)
                    delay *= 2

        logger.error(f"Giving up on results log {self.path}: {last_error}")
        raise ResultLogError(f"Could not write to results log: {last_error}")

    def _write_line(self, line: bytes) -> None:
        ensure_directory(self.path.parent)
        fd = os.open(self.path, os.O_RDWR | os.O_APPEND | os.O_CREAT, 0o644)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX)
            start = os.fstat(fd).st_size
            # A partial line left behind by an earlier failure stays as its
            # own unparseable line instead of swallowing this record.
            if start and os.pread(fd, 1, start - 1) != b"\n":
                line = b"\n" + line
            written = 0
            try:
                written = os.write(fd, line)
                if written != len(line):
                    raise OSError(f"short write: {written} of {len(line)} bytes")
                os.fsync(fd)
            except OSError:
                self._discard_tail(fd, start, written)
                raise
        finally:
            os.close(fd)

    def _discard_tail(self, fd: int, start: int, written: int) -> None:
        """Cut off the bytes of a failed write, if nothing was appended after them."""
        if not written:
            return
        try:
            size = os.fstat(fd).st_size
            if size != start + written:
                logger.error(
                    f"{self.path} changed during a failed write; leaving "
                    f"{written} partial bytes at offset {start}"
                )
                return
            os.ftruncate(fd, start)
        except OSError as e:
            logger.error(f"Could not remove partial record from {self.path}: {e}")

    def iter_records(self, kind: Optional[str] = None) -> Iterator[Dict[str, Any]]:
        """
        Read records back from the log.

        Parameters
        ----------
        kind : Optional[str]
            Only yield records whose "kind" field matches

        Yields
        ------
        Dict[str, Any]
            Decoded records in file order
        """
        if not self.path.exists():
            return

        with open(self.path, "r", encoding="utf-8") as f:
            for lineno, raw in enumerate(f, start=1):
                if not raw.strip():
                    continue
                try:
                    data = json.loads(raw)
                except json.JSONDecodeError:
                    logger.warning(f"Skipping unparseable line {lineno} in {self.path}")
                    continue
                if kind is None or data.get("kind") == kind:
                    yield data

    def count(self, session_token: Optional[str] = None, kind: Optional[str] = None) -> int:
        """Count records, optionally for a single session."""
        return sum(
            1 for r in self.iter_records(kind=kind)
            if session_token is None or r.get("session_token") == session_token
        )
