"""Skip-one / cancel-all signals for a batch run.

Two independent signals are held per run:

- cancel-all: sticky. Items that had not finished the phase running when it
  was raised are cancelled in that phase and every later one. Items that
  already finished that phase keep going.
- skip-current: aborts only the retry loop of the item currently being
  uploaded. Cleared whenever the next item starts.

Long waits go through ``ItemCancelFlag.wait`` which re-checks both signals
every ``CHECK_INTERVAL`` seconds.
"""

import time
from threading import Event, Lock
from typing import Optional, Set

from sharepack.core.logger import setup_logger
from sharepack.core.models import Phase

logger = setup_logger(__name__)

CHECK_INTERVAL = 0.1

# Phases during which a cancel-all lets already-finished items continue.
_GATED_PHASES = (Phase.TRANSFORM, Phase.ARCHIVE, Phase.UPLOAD)

# Phases whose current item can be skipped.
_SKIPPABLE_PHASES = (Phase.UPLOAD,)


class BatchCancellation:
    """Cancellation controller for one batch run."""

    def __init__(self):
        self._cancel_all = Event()
        self._skip = Event()
        self._lock = Lock()
        self._current_item: Optional[str] = None
        self._phase: Optional[Phase] = None
        self._finished_in_phase: Set[str] = set()
        self._survivors: Set[str] = set()

    # -- operator actions -------------------------------------------------

    def cancel_all(self) -> None:
        """Cancel every item that has not finished the current phase."""
        with self._lock:
            if self._cancel_all.is_set():
                return
            if self._phase in _GATED_PHASES:
                self._survivors = set(self._finished_in_phase)
            self._cancel_all.set()
        phase = self._phase.value if self._phase else "idle"
        logger.info(f"Cancel all requested during {phase}; {len(self._survivors)} item(s) continue")

    def skip_current(self, item_id: Optional[str] = None) -> bool:
        """Skip the item currently uploading. Returns False if nothing to skip.

        Refused outside the Upload phase, which is the only one with a retry
        loop to abort.
        """
        with self._lock:
            if self._phase not in _SKIPPABLE_PHASES:
                phase = self._phase.value if self._phase else "idle"
                logger.debug(f"Skip ignored: nothing can be skipped during {phase}")
                return False
            if self._current_item is None:
                return False
            if item_id is not None and item_id != self._current_item:
                logger.debug(f"Skip ignored for {item_id}: current item is {self._current_item}")
                return False
            self._skip.set()
            logger.info(f"Skip requested for {self._current_item}")
            return True

    # -- orchestrator bookkeeping -----------------------------------------

    def begin_phase(self, phase: Phase) -> None:
        with self._lock:
            self._phase = phase
            self._finished_in_phase = set()
            self._current_item = None
            self._skip.clear()

    def begin_item(self, item_id: str) -> None:
        """Mark ``item_id`` as current and reset the skip signal."""
        with self._lock:
            self._current_item = item_id
            self._skip.clear()

    def finish_item(self, item_id: str) -> None:
        with self._lock:
            self._finished_in_phase.add(item_id)
            if self._current_item == item_id:
                self._current_item = None

    # -- queries -----------------------------------------------------------

    @property
    def cancel_all_requested(self) -> bool:
        return self._cancel_all.is_set()

    @property
    def current_item(self) -> Optional[str]:
        return self._current_item

    def is_cancelled(self, item_id: str) -> bool:
        """True if cancel-all applies to this item."""
        if not self._cancel_all.is_set():
            return False
        with self._lock:
            return item_id not in self._survivors

    def is_skipped(self, item_id: str) -> bool:
        return self._skip.is_set() and self._current_item == item_id

    def flag_for(self, item_id: str) -> "ItemCancelFlag":
        return ItemCancelFlag(self, item_id)


class ItemCancelFlag:
    """Event-like view of the cancellation signals for one item.

    Exposes ``is_set()`` and ``wait(timeout)`` so it can be passed anywhere a
    ``threading.Event`` cancel flag is accepted.
    """

    def __init__(self, controller: BatchCancellation, item_id: str):
        self._controller = controller
        self.item_id = item_id

    def is_cancelled(self) -> bool:
        return self._controller.is_cancelled(self.item_id)

    def is_skipped(self) -> bool:
        return self._controller.is_skipped(self.item_id)

    def is_set(self) -> bool:
        return self.is_cancelled() or self.is_skipped()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Sleep up to ``timeout`` seconds; return True as soon as a signal trips."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while not self.is_set():
            if deadline is None:
                time.sleep(CHECK_INTERVAL)
                continue
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return False
            time.sleep(min(CHECK_INTERVAL, remaining))
        return True
