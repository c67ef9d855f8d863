"""
Batch accumulator with size and age triggers.

Events are buffered in arrival order until either the record count reaches
``max_records`` or the oldest buffered event is ``max_age_seconds`` old,
whichever comes first. The age timer starts when an event lands in an
empty batch and resets on ``take()``; an empty batch never flushes.

The accumulator does not own a timer task. The driver asks
``time_until_flush()`` and waits on "next event or deadline" itself.
"""

import time
from collections.abc import Callable

from core.errors import PermanentError
from events_to_db.types import Event

__all__ = [
    "BatchAccumulator",
    "BatchFullError",
]


class BatchFullError(PermanentError):
    """append() called on a batch that has already reached max_records."""

    pass


class BatchAccumulator:
    """Buffers matched events until a flush trigger fires.

    Args:
        max_records: Size trigger; a batch never holds more than this
        max_age_seconds: Age trigger, measured from the first append
        clock: Monotonic clock in seconds (injectable for tests)
    """

    def __init__(
        self,
        max_records: int,
        max_age_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        if max_records < 1:
            raise ValueError(f"max_records must be >= 1, got {max_records}")
        if max_age_seconds <= 0:
            raise ValueError(f"max_age_seconds must be > 0, got {max_age_seconds}")

        self.max_records = max_records
        self.max_age_seconds = max_age_seconds
        self._clock = clock
        self._events: list[Event] = []
        self._started_at: float | None = None

    def __len__(self) -> int:
        return len(self._events)

    @property
    def is_empty(self) -> bool:
        return not self._events

    @property
    def is_full(self) -> bool:
        return len(self._events) >= self.max_records

    def append(self, event: Event) -> None:
        if self.is_full:
            raise BatchFullError(
                f"Batch already holds {len(self._events)} events (max {self.max_records})"
            )
        if not self._events:
            self._started_at = self._clock()
        self._events.append(event)

    def age(self, now: float | None = None) -> float:
        """Seconds since the first event was appended, 0.0 when empty."""
        if self._started_at is None:
            return 0.0
        now = self._clock() if now is None else now
        return max(0.0, now - self._started_at)

    def should_flush(self, now: float | None = None) -> bool:
        if not self._events:
            return False
        if self.is_full:
            return True
        return self.age(now) >= self.max_age_seconds

    def time_until_flush(self, now: float | None = None) -> float | None:
        """Seconds until the age trigger fires; None when there is nothing to flush."""
        if not self._events:
            return None
        if self.is_full:
            return 0.0
        return max(0.0, self.max_age_seconds - self.age(now))

    def take(self) -> list[Event]:
        """Return the current batch and start a new, empty one."""
        batch = self._events
        self._events = []
        self._started_at = None
        return batch
