"""Server lifecycle state management."""

import enum
import logging
import threading
import time
from typing import Optional

from serve.domain.correlation_id import CorrelationLoggerAdapter

LIFECYCLE_LOGGER = CorrelationLoggerAdapter(logging.getLogger("serve.lifecycle"), {})


class LifecycleState(enum.Enum):
    """Phases a server instance moves through, in order."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    DRAINING = "draining"


class ServerLifecycle:
    """Manages server lifecycle state and worker thread tracking."""

    def __init__(self) -> None:
        # begin_draining may run inside a signal handler on the main thread.
        self._lock = threading.RLock()
        self._stop_event = threading.Event()
        self._draining_event = threading.Event()
        self._workers: set[threading.Thread] = set()
        self._state = LifecycleState.STOPPED
        self._failure: Optional[BaseException] = None

    @property
    def state(self) -> LifecycleState:
        """Current lifecycle phase."""
        with self._lock:
            return self._state

    @property
    def failure(self) -> Optional[BaseException]:
        """Error that aborted startup, if any."""
        with self._lock:
            return self._failure

    def _transition(self, state: LifecycleState) -> None:
        with self._lock:
            previous = self._state
            self._state = state
        if previous is not state:
            LIFECYCLE_LOGGER.debug(
                "Lifecycle state changed",
                extra={"event": "state_changed", "state": state.value},
            )

    def mark_starting(self) -> None:
        """Record that the listener is being bound."""
        self._transition(LifecycleState.STARTING)

    def mark_running(self) -> None:
        """Record that the listener accepts connections."""
        self._transition(LifecycleState.RUNNING)

    def mark_stopped(self) -> None:
        """Record that the listener is closed."""
        self._transition(LifecycleState.STOPPED)
        self._stop_event.set()

    def fail(self, error: BaseException) -> None:
        """Record a startup failure and release anyone waiting for stop."""
        with self._lock:
            self._failure = error
        self.mark_stopped()

    def should_stop(self) -> bool:
        """Check if the server should stop accepting new connections."""
        return self._stop_event.is_set()

    def is_draining(self) -> bool:
        """Check if the server is in draining mode."""
        return self._draining_event.is_set()

    def wait_for_stop(self, timeout: Optional[float] = None) -> bool:
        """Block until a shutdown has been requested or startup failed."""
        return self._stop_event.wait(timeout)

    def register_worker(self, thread: threading.Thread) -> None:
        """Register a worker thread for tracking."""
        with self._lock:
            self._workers.add(thread)

    def cleanup_worker(self, thread: threading.Thread) -> None:
        """Remove a worker thread from tracking."""
        with self._lock:
            self._workers.discard(thread)

    def has_worker(self, thread: threading.Thread) -> bool:
        """Return True when the worker is currently tracked."""
        with self._lock:
            return thread in self._workers

    def active_worker_count(self) -> int:
        """Return the number of currently tracked worker threads."""
        with self._lock:
            return len(self._workers)

    def begin_draining(self) -> None:
        """Signal the server to begin graceful shutdown."""
        if self._draining_event.is_set():
            return
        self._transition(LifecycleState.DRAINING)
        self._draining_event.set()
        self._stop_event.set()
        LIFECYCLE_LOGGER.info(
            "Beginning graceful shutdown", extra={"event": "draining_started"}
        )

    def wait_for_workers(self, timeout: float) -> bool:
        """Wait for all worker threads to complete within the timeout."""
        deadline = time.monotonic() + timeout
        while True:
            with self._lock:
                self._workers = {w for w in self._workers if w.is_alive()}
                active_workers = list(self._workers)
            if not active_workers:
                return True
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                LIFECYCLE_LOGGER.warning(
                    "Shutdown timeout exceeded",
                    extra={
                        "event": "shutdown_timeout",
                        "remaining_workers": len(active_workers),
                    },
                )
                return False
            for worker in active_workers:
                worker.join(timeout=min(0.1, remaining))
                if time.monotonic() >= deadline:
                    break
