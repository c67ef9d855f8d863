"""Event sources the pipeline driver can subscribe to."""

from events_to_db.source.base import EventSource
from events_to_db.source.event_service import EventServiceClient

__all__ = [
    "EventSource",
    "EventServiceClient",
]
