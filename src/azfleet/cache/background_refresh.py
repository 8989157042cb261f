"""Background Cache Refresh Module - Periodic membership cache rebuilds.

Philosophy:
- One daemon thread per manager, first tick runs immediately
- Event-based wait so stop() interrupts a sleeping loop at once
- Failed ticks are logged, never raised; the next tick is the retry
- stop() is safe to call any number of times; the loop is not restartable

Public API (the "studs"):
    PeriodicRefresh: Background thread calling a refresh callable on an interval
    BackgroundRefreshError: Lifecycle misuse (double start, start after stop)

Usage:
    >>> refresher = PeriodicRefresh(manager.refresh, interval=3600)
    >>> refresher.start()
    >>> ...
    >>> refresher.stop()
"""

import logging
import threading
import time
from collections.abc import Callable

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_INTERVAL = 3600.0  # 1 hour


class BackgroundRefreshError(Exception):
    """Raised when background refresh operations fail."""

    pass


class PeriodicRefresh:
    """Run a refresh callable now and then every ``interval`` seconds.

    Example:
        >>> refresher = PeriodicRefresh(lambda: print("tick"), interval=60)
        >>> refresher.start()
        tick
        >>> refresher.stop()
    """

    def __init__(
        self,
        refresh: Callable[[], object],
        interval: float = DEFAULT_REFRESH_INTERVAL,
        name: str = "azfleet-cache-refresh",
    ):
        """Initialize periodic refresh.

        Args:
            refresh: Callable performing one refresh; exceptions are logged
            interval: Seconds between the end of one tick and the next
            name: Thread name

        Raises:
            BackgroundRefreshError: If interval is not positive
        """
        if interval <= 0:
            raise BackgroundRefreshError(f"Refresh interval must be positive, got {interval}")

        self.refresh = refresh
        self.interval = interval
        self.name = name

        self._stop_event = threading.Event()
        self._state_lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self._stopped = False
        self._tick_done = threading.Condition()

        self.ticks = 0
        self.last_success: float | None = None
        self.last_error: Exception | None = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        """Start the background thread.

        Raises:
            BackgroundRefreshError: If already started or already stopped
        """
        with self._state_lock:
            if self._stopped:
                raise BackgroundRefreshError("Periodic refresh cannot be restarted after stop")
            if self._thread is not None:
                raise BackgroundRefreshError("Periodic refresh already started")

            self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
            self._thread.start()

        logger.debug(f"Periodic refresh started (interval: {self.interval:.0f}s)")

    def stop(self, timeout: float | None = None) -> None:
        """Signal the loop to exit and wait for it. Repeated calls are no-ops."""
        with self._state_lock:
            if self._stopped:
                return
            self._stopped = True
            self._stop_event.set()
            thread = self._thread

        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        logger.debug("Periodic refresh stopped")

    def wait_for_tick(self, count: int = 1, timeout: float = 5.0) -> bool:
        """Block until at least ``count`` ticks have run. Returns False on timeout."""
        with self._tick_done:
            return self._tick_done.wait_for(lambda: self.ticks >= count, timeout)

    def _tick(self) -> None:
        try:
            self.refresh()
            self.last_success = time.time()
            self.last_error = None
        except Exception as e:
            self.last_error = e
            logger.error(f"Error while regenerating scale set cache: {e}")
        finally:
            with self._tick_done:
                self.ticks += 1
                self._tick_done.notify_all()

    def _run(self) -> None:
        while not self._stop_event.is_set():
            self._tick()
            if self._stop_event.wait(self.interval):
                break
