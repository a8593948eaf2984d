"""Decide whether an event qualifies for an endpoint."""
from __future__ import annotations

from typing import Any, Iterable, Protocol

from delivery_service.domain.enums import EventKind
from delivery_service.domain.webhooks import Endpoint, EndpointRules


class RuleSubject(Protocol):
    """Anything carrying the fields rules look at (events, digest items)."""

    rating: int | None
    type: Any
    tags: Iterable[str] | None


def is_subscribed(endpoint: Endpoint, kind: EventKind) -> bool:
    return kind in endpoint.subscribed_events


def matches(subject: RuleSubject, rules: EndpointRules | None) -> bool:
    """AND of rating ceiling, type allow-list and tag intersection."""
    if rules is None:
        return True

    if rules.rating_max is not None and subject.rating is not None:
        if subject.rating > rules.rating_max:
            return False

    if rules.types:
        # an untyped item cannot satisfy an explicit type allow-list
        subject_type = getattr(subject.type, "value", subject.type)
        if subject_type is None or subject_type not in rules.types:
            return False

    if rules.tags_include:
        wanted = {tag.lower() for tag in rules.tags_include}
        present = {str(tag).lower() for tag in subject.tags or ()}
        if not wanted & present:
            return False

    return True


def qualifies(endpoint: Endpoint, subject: RuleSubject, kind: EventKind) -> bool:
    """Full pre-delivery filter: enabled, subscribed, rule-matching."""
    return endpoint.enabled and is_subscribed(endpoint, kind) and matches(subject, endpoint.rules)
