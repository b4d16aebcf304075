from __future__ import annotations

import threading
import time
from typing import Callable, Optional

from .pipe import CancelToken


class Ticker:
    """Shared admission gate capping calls to ``rate`` per second.

    Callers are admitted one interval apart. Idle time does not bank extra
    admissions, so a quiet period is never followed by a burst.
    """

    def __init__(
        self,
        rate: float,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if rate <= 0:
            raise ValueError(f"Rate must be positive, got {rate}.")
        self.interval = 1.0 / rate
        self._clock = clock
        self._sleep = sleep
        self._lock = threading.Lock()
        self._next_slot: Optional[float] = None

    def wait(self, cancel: Optional[CancelToken] = None) -> bool:
        with self._lock:
            now = self._clock()
            slot = now if self._next_slot is None else max(now, self._next_slot)
            self._next_slot = slot + self.interval
        delay = slot - now
        if delay <= 0:
            return not (cancel and cancel.cancelled)
        if cancel is not None:
            return not cancel.wait(delay)
        self._sleep(delay)
        return True
