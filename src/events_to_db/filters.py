"""
Subscription filters.

A subscription is a conjunction over optional ``source``, ``semantics`` and
``name`` fields; a missing field is a wildcard. The configured subscription
set is a disjunction of subscriptions, and the empty set matches everything.
"""

import json
from collections.abc import Iterable, Sequence
from typing import Any

from pydantic import BaseModel, ValidationError

from core.errors import ConfigurationError

__all__ = [
    "Subscription",
    "SubscriptionSet",
    "matches",
    "parse_subscriptions",
    "to_wire",
]


class Subscription(BaseModel):
    """One filter of the subscription set. None means "any value"."""

    source: str | None = None
    semantics: str | None = None
    name: str | None = None

    model_config = {
        "frozen": True,
        "extra": "forbid",
        "strict": True,
    }

    @property
    def is_wildcard(self) -> bool:
        return self.source is None and self.semantics is None and self.name is None

    def matches(self, event) -> bool:
        if self.source is not None and event.source != self.source:
            return False
        if self.semantics is not None and event.semantics != self.semantics:
            return False
        if self.name is not None and event.name != self.name:
            return False
        return True


SubscriptionSet = tuple[Subscription, ...]


def matches(event, subscriptions: Sequence[Subscription]) -> bool:
    """True if any subscription matches the event; an empty set matches all."""
    if not subscriptions:
        return True
    return any(sub.matches(event) for sub in subscriptions)


def parse_subscriptions(raw: Any) -> SubscriptionSet:
    """Parse a subscription set from configuration.

    Accepts JSON text or already-decoded data, either a list of objects or a
    single object. Empty text and None give the empty (match-all) set.

    Raises:
        ConfigurationError: Invalid JSON, a non-object entry, a non-string
            field value or an unknown key
    """
    if raw is None:
        return ()

    if isinstance(raw, (bytes, str)):
        text = raw.decode() if isinstance(raw, bytes) else raw
        if not text.strip():
            return ()
        try:
            raw = json.loads(text)
        except json.JSONDecodeError as e:
            raise ConfigurationError(
                f"Subscriptions are not valid JSON: {e.msg} at position {e.pos}",
                cause=e,
            ) from e

    if isinstance(raw, dict):
        raw = [raw]

    if not isinstance(raw, list):
        raise ConfigurationError(
            f"Subscriptions must be a JSON object or array of objects, got {type(raw).__name__}"
        )

    subscriptions = []
    for index, item in enumerate(raw):
        if not isinstance(item, dict):
            raise ConfigurationError(
                f"Subscription #{index} must be an object, got {type(item).__name__}"
            )
        try:
            subscriptions.append(Subscription.model_validate(item))
        except ValidationError as e:
            details = "; ".join(
                f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()
            )
            raise ConfigurationError(
                f"Subscription #{index} is invalid: {details}",
                cause=e,
                context={"subscription": item},
            ) from e

    return tuple(subscriptions)


def to_wire(subscriptions: Iterable[Subscription]) -> list[dict[str, str]]:
    """Request-body form of a subscription set; empty means "everything"."""
    wire = [sub.model_dump(exclude_none=True) for sub in subscriptions]
    return wire or [{}]
