"""Bounded retry with interruptible backoff.

Every retry loop in sharepack (upload attempts, processing polls, link
conversion) runs through ``retry_call`` so attempt caps, delay schedules and
cancellation checks behave the same everywhere.
"""

import math
import random
import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple, Type, TypeVar, Union

from sharepack.core.logger import setup_logger

logger = setup_logger(__name__)

T = TypeVar("T")

DelaySchedule = Callable[[int, BaseException], float]


class OperationCancelled(Exception):
    """Raised when a skip or cancel signal interrupts an operation."""
    pass


@dataclass
class RetryState:
    """Bookkeeping for one retry loop."""
    attempt: int = 0
    last_error: Optional[BaseException] = None
    next_delay: float = 0.0


def fixed_delay(seconds: float) -> DelaySchedule:
    return lambda attempt, error: seconds


def linear_delay(base: float, step: float, cap: float) -> DelaySchedule:
    """``base + attempt * step``, capped."""
    return lambda attempt, error: min(base + attempt * step, cap)


def exponential_delay(base: float, cap: float, jitter: float = 0.0) -> DelaySchedule:
    """Exponential backoff with optional random jitter."""
    def schedule(attempt: int, error: BaseException) -> float:
        delay = min(cap, base * (2 ** (attempt - 1)))
        return delay + random.uniform(0, delay * jitter) if jitter else delay
    return schedule


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int
    delay: DelaySchedule
    retry_on: Union[Tuple[Type[BaseException], ...], Callable[[BaseException], bool]] = (Exception,)

    def should_retry(self, error: BaseException) -> bool:
        if isinstance(self.retry_on, tuple):
            return isinstance(error, self.retry_on)
        return bool(self.retry_on(error))


def interruptible_wait(
    seconds: float,
    cancel_flag=None,
    on_tick: Optional[Callable[[int], None]] = None,
) -> bool:
    """Wait ``seconds`` in one-second steps. Returns True if cancelled.

    ``cancel_flag`` is anything with ``is_set()`` and ``wait(timeout)``
    (``threading.Event`` or ``ItemCancelFlag``). ``on_tick`` receives the
    whole seconds remaining before each step.
    """
    remaining = float(seconds)
    while remaining > 0:
        if cancel_flag is not None and cancel_flag.is_set():
            return True
        if on_tick:
            on_tick(math.ceil(remaining))
        step = min(1.0, remaining)
        if cancel_flag is not None:
            if cancel_flag.wait(timeout=step):
                return True
        else:
            time.sleep(step)
        remaining -= step
    return cancel_flag is not None and cancel_flag.is_set()


def retry_call(
    operation: Callable[[RetryState], T],
    policy: RetryPolicy,
    cancel_flag=None,
    on_retry: Optional[Callable[[RetryState], None]] = None,
    on_tick: Optional[Callable[[int, RetryState], None]] = None,
) -> T:
    """Run ``operation`` until it succeeds or the policy gives up.

    Raises:
        OperationCancelled: cancel flag set before or between attempts.
        Exception: the last error once attempts are exhausted, or any error
            the policy does not retry.
    """
    state = RetryState()
    name = getattr(operation, "__name__", "operation")

    for attempt in range(1, policy.max_attempts + 1):
        state.attempt = attempt
        if cancel_flag is not None and cancel_flag.is_set():
            raise OperationCancelled(f"{name} cancelled before attempt {attempt}")

        try:
            return operation(state)
        except OperationCancelled:
            raise
        except Exception as e:
            if cancel_flag is not None and cancel_flag.is_set():
                raise OperationCancelled(f"{name} cancelled during attempt {attempt}") from e
            if not policy.should_retry(e):
                raise
            state.last_error = e

        if attempt >= policy.max_attempts:
            break

        state.next_delay = policy.delay(attempt, state.last_error)
        logger.debug(
            f"Retry {attempt}/{policy.max_attempts} for {name} "
            f"after {state.next_delay:.1f}s (error: {state.last_error})"
        )
        if on_retry:
            on_retry(state)

        tick = (lambda remaining: on_tick(remaining, state)) if on_tick else None
        if interruptible_wait(state.next_delay, cancel_flag, tick):
            raise OperationCancelled(f"{name} cancelled while waiting to retry")

    logger.debug(f"Giving up on {name} after {policy.max_attempts} attempts: {state.last_error}")
    raise state.last_error
