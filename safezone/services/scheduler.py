import logging
import threading
from typing import Callable, Optional

logger = logging.getLogger(__name__)


class PeriodicWorker:
    """
    Runs a task every `interval_seconds` on a daemon thread until stopped.

    A failing run is logged and the schedule continues. stop() joins the
    thread, so once it returns no further run will start.
    """

    def __init__(self, name: str, interval_seconds: float, task: Callable[[], object]):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be positive")
        self.name = name
        self.interval_seconds = interval_seconds
        self.task = task
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self.runs = 0
        self.failures = 0

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name=f"safezone-{self.name}", daemon=True)
        self._thread.start()
        logger.info(f"Started periodic worker {self.name} (every {self.interval_seconds}s)")

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning(f"Periodic worker {self.name} did not stop within {timeout}s")
            self._thread = None
            logger.info(f"Stopped periodic worker {self.name}")

    def run_once(self) -> None:
        self.runs += 1
        try:
            self.task()
        except Exception as e:
            self.failures += 1
            logger.error(f"Periodic worker {self.name} run failed: {e}", exc_info=True)

    def _loop(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            self.run_once()
