from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class PeriodicJob:
    """Run ``func`` on a daemon thread: once on start, then every ``interval_seconds``.

    ``start()`` is a no-op while the job is already running. ``stop()`` signals the
    thread, waits for it and clears the handle so the job can be started again.
    Exceptions raised by ``func`` are logged and the next tick still runs.
    """

    def __init__(
        self,
        name: str,
        func: Callable[[], Any],
        interval_seconds: float,
        *,
        run_immediately: bool = True,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        self.name = name
        self.func = func
        self.interval_seconds = interval_seconds
        self.run_immediately = run_immediately
        self._lock = threading.Lock()
        self._thread: Optional[threading.Thread] = None
        self._stop_event: Optional[threading.Event] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> Any:
        try:
            return self.func()
        except Exception:
            logger.exception("Background job %s failed", self.name)
            return None

    def _run(self, stop_event: threading.Event) -> None:
        if self.run_immediately and not stop_event.is_set():
            self.run_once()
        while not stop_event.wait(self.interval_seconds):
            self.run_once()

    def start(self) -> bool:
        with self._lock:
            if self._thread is not None:
                return False
            stop_event = threading.Event()
            thread = threading.Thread(
                target=self._run,
                args=(stop_event,),
                name=f"job:{self.name}",
                daemon=True,
            )
            self._stop_event = stop_event
            self._thread = thread
            thread.start()
        logger.info("Background job %s started (every %ss)", self.name, self.interval_seconds)
        return True

    def stop(self, timeout: Optional[float] = 5.0) -> bool:
        with self._lock:
            thread, stop_event = self._thread, self._stop_event
            self._thread = None
            self._stop_event = None
        if thread is None:
            return False
        stop_event.set()
        if thread is not threading.current_thread():
            thread.join(timeout)
            if thread.is_alive():
                logger.warning(
                    "Background job %s still running after %ss; a restart may overlap its last tick",
                    self.name,
                    timeout,
                )
        logger.info("Background job %s stopped", self.name)
        return True
