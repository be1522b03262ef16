"""
Background eviction of idle sessions.
"""

from __future__ import annotations

import logging
import threading

logger = logging.getLogger(__name__)


class SessionJanitor(threading.Thread):
    """
    Daemon thread that periodically evicts expired sessions.

    Parameters
    ----------
    engine : TrialEngine
        Engine whose ``evict_expired`` is called on every sweep
    interval : float
        Seconds between sweeps
    """

    def __init__(self, engine, interval: float = 60.0):
        super().__init__(name="session-janitor", daemon=True)
        self.engine = engine
        self.interval = interval
        self._stopped = threading.Event()

    def run(self) -> None:
        logger.info(f"Session janitor started (interval {self.interval}s)")
        while not self._stopped.wait(self.interval):
            try:
                self.engine.evict_expired()
            except Exception:
                # A failed sweep must not kill the thread; the next one retries
                logger.exception("Session eviction sweep failed")

    def stop(self, timeout: float = 5.0) -> None:
        self._stopped.set()
        if self.is_alive():
            self.join(timeout)
