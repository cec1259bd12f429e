"""Cancellable interval ticker driving automatic calling."""

from __future__ import annotations

import logging
import threading
from typing import Callable

logger = logging.getLogger(__name__)


class IntervalTicker:
    """Run ``callback`` every ``interval`` seconds on a daemon thread.

    The wait is an ``Event.wait`` so ``cancel()`` wakes the thread at once;
    no tick starts after ``cancel()`` returns. A tick already running when
    ``cancel()`` is called from another thread is waited for (bounded by
    ``join_timeout``).
    """

    def __init__(
        self,
        interval: float,
        callback: Callable[[], object],
        *,
        name: str = "bingo-caller",
        join_timeout: float = 5.0,
    ):
        if interval <= 0:
            raise ValueError(f"ticker interval must be positive, got {interval}")
        self.interval = interval
        self._callback = callback
        self._stop = threading.Event()
        self._join_timeout = join_timeout
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)

    @property
    def active(self) -> bool:
        return self._thread.is_alive() and not self._stop.is_set()

    def start(self) -> None:
        self._thread.start()

    def _run(self) -> None:
        while not self._stop.wait(self.interval):
            try:
                self._callback()
            except Exception:
                logger.exception("Caller tick failed; automatic calling stopped")
                self._stop.set()

    def cancel(self) -> None:
        self._stop.set()
        if self._thread.is_alive() and threading.current_thread() is not self._thread:
            self._thread.join(self._join_timeout)
