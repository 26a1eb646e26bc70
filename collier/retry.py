import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Generic, List, Optional, TypeVar

from collier.errors import NonTransientSourceError, SourceError, TransientSourceError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """Bounded exponential backoff"""

    max_retries: int = 5
    initial_backoff: float = 1.0  # seconds
    max_backoff: float = 60.0

    def __post_init__(self):
        if self.max_retries < 1:
            raise ValueError(f"max_retries must be at least 1, got {self.max_retries}")

    def backoff(self, attempt: int) -> float:
        return min(self.max_backoff, self.initial_backoff * (2 ** (attempt - 1)))


@dataclass
class SourceResult(Generic[T]):
    """Outcome of a remote call after retries"""

    value: Optional[T] = None
    error: Optional[Exception] = None
    attempts: int = 0
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None and not self.cancelled

    @property
    def transient(self) -> bool:
        return isinstance(self.error, TransientSourceError)

    def unwrap(self) -> T:
        if self.error is not None:
            raise self.error
        return self.value


def with_retries(
    call: Callable[[], T],
    policy: RetryPolicy,
    cancel_event: Optional[threading.Event] = None,
    description: str = "request",
    abort_event: Optional[threading.Event] = None,
) -> SourceResult[T]:
    """
    Run a remote call, retrying transient failures with exponential backoff.

    Non-transient errors are returned immediately. Backoff waits on the cancel
    event and on the abort event, so a stopped run gives up retrying at once.
    Either event yields a cancelled result.
    """
    stop_events = [e for e in (cancel_event, abort_event) if e is not None]
    last_error: Optional[SourceError] = None
    for attempt in range(1, policy.max_retries + 1):
        if _stopped(stop_events):
            return SourceResult(error=last_error, attempts=attempt - 1, cancelled=True)

        try:
            return SourceResult(value=call(), attempts=attempt)
        except NonTransientSourceError as e:
            logger.error(f"{description} failed permanently: {e}")
            return SourceResult(error=e, attempts=attempt)
        except TransientSourceError as e:
            last_error = e
            if attempt == policy.max_retries:
                break
            backoff = policy.backoff(attempt)
            logger.warning(f"{description} failed (attempt {attempt}/{policy.max_retries}): {e}, retrying after {backoff}s")
            if _wait(backoff, stop_events):
                return SourceResult(error=last_error, attempts=attempt, cancelled=True)

    logger.error(f"{description} failed after {policy.max_retries} attempts: {last_error}")
    return SourceResult(error=last_error, attempts=policy.max_retries)


WAIT_SLICE = 0.05  # seconds


def _stopped(events: List[threading.Event]) -> bool:
    return any(e.is_set() for e in events)


def _wait(seconds: float, events: List[threading.Event]) -> bool:
    """Sleep for the backoff period. Returns True if any event was set meanwhile."""
    if seconds <= 0 or not events:
        if seconds > 0:
            time.sleep(seconds)
        return _stopped(events)
    if len(events) == 1:
        return events[0].wait(seconds)

    deadline = time.monotonic() + seconds
    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return _stopped(events)
        if events[0].wait(min(remaining, WAIT_SLICE)) or _stopped(events):
            return True
