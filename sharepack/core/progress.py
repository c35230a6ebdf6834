"""Rate-limited progress reporting.

Raw byte callbacks arrive far more often than any consumer needs. The
reporter forwards an update only when the integer percentage changes or the
update interval has passed since the last forwarded update.
"""

import time
from threading import Lock
from typing import Callable, Dict, Optional, Tuple

from sharepack.core.logger import setup_logger

logger = setup_logger(__name__)

DEFAULT_INTERVAL = 0.2

ProgressSink = Callable[[int, str], None]


class ProgressReporter:
    """Coalesces percentage updates per context before calling ``sink``.

    Percentages are clamped to [0, 100] and never go backwards within a
    context; call ``reset(context)`` when a new attempt starts from zero.
    Safe to share between threads.
    """

    def __init__(
        self,
        sink: ProgressSink,
        min_interval: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        if min_interval is None:
            from sharepack.core.config import config
            min_interval = float(config.get("PROGRESS_UPDATE_INTERVAL", DEFAULT_INTERVAL))
        self._sink = sink
        self._min_interval = min_interval
        self._clock = clock
        self._lock = Lock()
        # context -> (last forwarded time, last forwarded integer percent)
        self._last: Dict[str, Tuple[float, int]] = {}
        self._high_water: Dict[str, float] = {}

    def report(self, percent: float, context: str) -> bool:
        """Record progress for ``context``. Returns True if it was forwarded."""
        percent = max(0.0, min(100.0, float(percent)))
        now = self._clock()

        with self._lock:
            percent = max(percent, self._high_water.get(context, 0.0))
            self._high_water[context] = percent
            pct = int(percent)

            last = self._last.get(context)
            if last is None:
                should_forward = True
            else:
                last_time, last_pct = last
                should_forward = pct != last_pct or now - last_time >= self._min_interval

            if should_forward:
                self._last[context] = (now, pct)
                # Sink calls stay inside the lock so concurrent writers are serialized.
                try:
                    self._sink(pct, context)
                except Exception as e:
                    logger.warning(f"Progress sink failed for {context}: {e}")
        return should_forward

    def reset(self, context: str) -> None:
        """Forget state for ``context`` (new attempt or finished item)."""
        with self._lock:
            self._last.pop(context, None)
            self._high_water.pop(context, None)

    def last_reported(self, context: str) -> Optional[int]:
        with self._lock:
            last = self._last.get(context)
            return last[1] if last else None


class LoggingProgressSink:
    """Headless sink that writes forwarded updates to the log."""

    def __init__(self, label: str = "Progress", step: int = 10):
        self._label = label
        self._step = step
        self._logged: Dict[str, int] = {}
        self._lock = Lock()

    def __call__(self, percent: int, context: str) -> None:
        with self._lock:
            last = self._logged.get(context, -self._step)
            if percent < 100 and percent - last < self._step:
                logger.debug(f"{self._label} {context}: {percent}%")
                return
            self._logged[context] = percent
        logger.info(f"{self._label} {context}: {percent}%")
