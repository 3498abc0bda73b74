"""
Core System Module

Builds the store handle explicitly, injects it into every component and owns
its lifecycle. Use as a context manager so the store is released on every
exit path:

    with BankingCore(config) as core:
        core.install_signal_handlers()
        token = core.sessions.login(owner_id)
"""

import atexit
import signal
import threading
from datetime import datetime
from typing import Callable, Dict, Optional, Sequence

from .config import SecureBankConfig, get_config
from .errors import StorageError
from .funding import FundingCoordinator
from .ledger import AccountLedger
from .logging_config import get_logger
from .sessions import SessionLifecycleManager
from .storage import StorageInterface, create_storage
from .sweeper import SessionSweeper


class BankingCore:
    """Session manager, ledger and funding coordinator over one store"""

    def __init__(
        self,
        config: Optional[SecureBankConfig] = None,
        storage: Optional[StorageInterface] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.config = config or get_config()
        self._storage = storage
        self._owns_storage = storage is None
        self._clock = clock
        self.logger = get_logger("secure_banking.system")

        self.sessions: Optional[SessionLifecycleManager] = None
        self.ledger: Optional[AccountLedger] = None
        self.funding: Optional[FundingCoordinator] = None
        self.sweeper: Optional[SessionSweeper] = None

        self._opened = False
        self._shutdown_event = threading.Event()
        self._previous_handlers: Dict[int, object] = {}

    @property
    def is_open(self) -> bool:
        return self._opened

    @property
    def storage(self) -> StorageInterface:
        if not self._opened:
            raise StorageError("BankingCore is not open")
        return self._storage

    def open(self) -> 'BankingCore':
        """Acquire the store and build every component (idempotent)"""
        if self._opened:
            return self

        if self._storage is None:
            self._storage = create_storage(
                self.config.database_url, timeout=self.config.database_timeout
            )
        try:
            self.sessions = SessionLifecycleManager(self._storage, self.config, clock=self._clock)
            self.ledger = AccountLedger(self._storage)
            self.funding = FundingCoordinator(
                self._storage, ledger=self.ledger, config=self.config, clock=self._clock
            )
            self.sweeper = SessionSweeper(self.sessions)
        except BaseException:
            self._release_storage()
            raise

        self._opened = True
        self._shutdown_event.clear()
        atexit.register(self.close)
        self.logger.info("Banking core opened (%s)", type(self._storage).__name__)
        return self

    def close(self) -> None:
        """Stop the sweeper and release the store (idempotent)"""
        if not self._opened:
            return
        self._opened = False
        atexit.unregister(self.close)
        try:
            if self.sweeper is not None:
                self.sweeper.stop()
        finally:
            self._release_storage()
            self.restore_signal_handlers()
            self._shutdown_event.set()
            self.logger.info("Banking core closed")

    def _release_storage(self) -> None:
        if self._storage is not None and self._owns_storage:
            self._storage.close()
            self._storage = None

    def start_sweeper(self) -> SessionSweeper:
        """Start periodic expired-session cleanup"""
        if not self._opened:
            raise StorageError("BankingCore is not open")
        self.sweeper.start()
        return self.sweeper

    # Shutdown handling

    def request_shutdown(self) -> None:
        self._shutdown_event.set()

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown_event.is_set()

    def wait_for_shutdown(self, poll_seconds: float = 0.5) -> None:
        """Block until a shutdown is requested or the core is closed"""
        while not self._shutdown_event.wait(poll_seconds):
            pass

    def install_signal_handlers(
        self, signals: Sequence[int] = (signal.SIGINT, signal.SIGTERM)
    ) -> None:
        """
        Turn termination signals into an orderly shutdown.

        The first signal requests shutdown so the owning `with` block can
        unwind and close the store; a second one exits immediately.
        Must be called from the main thread.
        """
        def handler(signum, frame):
            if self._shutdown_event.is_set():
                raise SystemExit(128 + signum)
            self.logger.warning("Signal %s received, shutting down", signum)
            self._shutdown_event.set()

        for signum in signals:
            self._previous_handlers[signum] = signal.signal(signum, handler)

    def restore_signal_handlers(self) -> None:
        if threading.current_thread() is not threading.main_thread():
            return
        for signum, previous in self._previous_handlers.items():
            if previous is not None:
                signal.signal(signum, previous)
        self._previous_handlers.clear()

    def __enter__(self) -> 'BankingCore':
        return self.open()

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
