"""Event model shared by the event source, the filters and the sink writer."""

from typing import Any

from pydantic import BaseModel, Field, ValidationError

from core.errors import EventDecodeError

__all__ = [
    "BEGINNING_OFFSET",
    "Event",
]

# First offset of every source's stream
BEGINNING_OFFSET = 0


class Event(BaseModel):
    """Immutable event as read from the event service.

    Attributes:
        source: Stream origin identifier (the offset partition)
        semantics: Logical event type
        name: Stream name
        seq: Sequence number (Lamport timestamp on the wire)
        offset: Position within the source's stream
        timestamp: Wall clock time in microseconds since the epoch
        payload: JSON document, stored untouched

    Example:
        >>> Event.from_wire({
        ...     "stream": {"source": "a", "semantics": "orders", "name": "o-1"},
        ...     "lamport": 17, "offset": 5, "timestamp": 1600000000000000,
        ...     "payload": {"qty": 3},
        ... }).offset
        5
    """

    source: str = Field(..., min_length=1)
    semantics: str
    name: str
    seq: int
    offset: int = Field(..., ge=BEGINNING_OFFSET)
    timestamp: int
    payload: Any = None

    model_config = {
        "frozen": True,
        "extra": "ignore",
    }

    @classmethod
    def from_wire(cls, data: dict[str, Any]) -> "Event":
        """Build an Event from an event service document.

        Accepts the nested wire layout (``stream`` object, ``lamport``) as
        well as flat documents using this model's own field names.

        Raises:
            EventDecodeError: Document is missing fields or has wrong types
        """
        if not isinstance(data, dict):
            raise EventDecodeError(
                f"Event must be a JSON object, got {type(data).__name__}"
            )

        stream = data.get("stream")
        if isinstance(stream, dict):
            fields = {
                "source": stream.get("source"),
                "semantics": stream.get("semantics"),
                "name": stream.get("name"),
                "seq": data.get("lamport", data.get("seq")),
                "offset": data.get("offset"),
                "timestamp": data.get("timestamp"),
                "payload": data.get("payload"),
            }
        else:
            fields = dict(data)
            if "seq" not in fields and "lamport" in fields:
                fields["seq"] = fields["lamport"]

        try:
            return cls.model_validate(fields)
        except ValidationError as e:
            raise EventDecodeError(
                f"Malformed event: {e.error_count()} validation error(s)",
                cause=e,
                context={"source": fields.get("source"), "offset": fields.get("offset")},
            ) from e

    def to_row(self) -> dict[str, Any]:
        """Column mapping for the sink table."""
        return {
            "source": self.source,
            "semantics": self.semantics,
            "name": self.name,
            "seq": self.seq,
            "offset": self.offset,
            "timestamp": self.timestamp,
            "payload": self.payload,
        }
