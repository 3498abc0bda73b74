"""
Session Sweeper

Background thread that bulk-removes expired sessions on a fixed interval.
Lazy deletion in validate() may race with a sweep; both deletes are
idempotent, so the loser simply removes nothing.
"""

import threading
from typing import Optional
import logging

from .logging_config import get_logger
from .sessions import SessionLifecycleManager


class SessionSweeper:
    """Runs SessionLifecycleManager.cleanup_expired() every interval_seconds"""

    def __init__(
        self,
        session_manager: SessionLifecycleManager,
        interval_seconds: Optional[float] = None,
        logger: Optional[logging.Logger] = None
    ):
        self.session_manager = session_manager
        if interval_seconds is None:
            interval_seconds = session_manager.config.session_cleanup_interval_seconds
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.interval_seconds = interval_seconds
        self.logger = logger or get_logger("secure_banking.sweeper")

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self.runs = 0
        self.total_removed = 0

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> int:
        """Run a single sweep and return the number of sessions removed"""
        removed = self.session_manager.cleanup_expired()
        with self._lock:
            self.runs += 1
            self.total_removed += removed
        return removed

    def _run(self) -> None:
        while not self._stop_event.wait(self.interval_seconds):
            try:
                self.run_once()
            except Exception:
                # A failed sweep must not end the loop; the next one retries
                self.logger.exception("Session sweep failed")

    def start(self) -> None:
        """Start the sweeper thread (no-op if already running)"""
        if self.is_running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, name="session-sweeper", daemon=True
        )
        self._thread.start()
        self.logger.info("Session sweeper started (interval %ss)", self.interval_seconds)

    def stop(self, timeout: Optional[float] = None) -> None:
        """Signal the thread to stop and wait for it"""
        self._stop_event.set()
        thread, self._thread = self._thread, None
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
            self.logger.info("Session sweeper stopped")

    def __enter__(self) -> 'SessionSweeper':
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.stop()
