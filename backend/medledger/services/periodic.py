"""
Timer-driven background loops.
"""

import logging
import threading
from typing import Callable, Optional


class PeriodicTask:
    """
    Runs `func` every `interval` seconds on a daemon thread until stopped.

    Exceptions raised by `func` are logged and the loop keeps going; a
    failing tick is retried on the next one.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        func: Callable[[], object],
        run_immediately: bool = False,
    ):
        self.name = name
        self.interval = interval
        self.func = func
        self.run_immediately = run_immediately
        self.logger = logging.getLogger(f"service.PeriodicTask.{name}")
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()
        self.logger.debug(f"Started (every {self.interval}s)")

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        self._thread = None

    def _loop(self) -> None:
        if self.run_immediately:
            self._tick()
        # wait() returns True once stop() is called
        while not self._stop_event.wait(self.interval):
            self._tick()

    def _tick(self) -> None:
        try:
            self.func()
        except Exception as e:
            self.logger.error(f"{self.name} failed: {e}", exc_info=True)
