"""Event source protocol consumed by the pipeline driver."""

from collections.abc import AsyncIterator, Mapping, Sequence
from typing import Protocol

from events_to_db.filters import Subscription
from events_to_db.types import Event


class EventSource(Protocol):
    """
    Protocol for event stream providers.

    Reconnecting after a failure is the driver's job: a source reports a
    broken stream by raising EventSourceError (or by ending the iterator)
    and the driver resubscribes with freshly resolved offsets.
    """

    async def start(self) -> None:
        """Acquire client resources (HTTP session, etc.)."""
        ...

    async def close(self) -> None:
        """Release client resources."""
        ...

    def subscribe(
        self,
        subscriptions: Sequence[Subscription],
        start_offsets: Mapping[str, int],
    ) -> AsyncIterator[Event]:
        """
        Stream events matching the subscriptions.

        Args:
            subscriptions: Filter set; empty means every event
            start_offsets: First offset wanted per source (inclusive);
                sources not listed start at the beginning

        Raises:
            EventSourceError: Service unreachable or stream broken
        """
        ...

    async def get_offsets(self) -> dict[str, int]:
        """Highest offset currently known to the service, per source."""
        ...


__all__ = [
    "EventSource",
]
