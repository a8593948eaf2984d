"""Domain enums for endpoints, events and delivery outcomes."""
from __future__ import annotations

from enum import Enum


class EndpointKind(str, Enum):
    """Receiver families an endpoint can belong to."""

    SLACK = "slack"
    DISCORD = "discord"
    GENERIC = "generic"
    GITHUB = "github"


class EventKind(str, Enum):
    """Domain event kinds an endpoint may subscribe to."""

    CREATED = "created"
    UPDATED = "updated"
    DIGEST = "digest"

    @property
    def event_name(self) -> str:
        """Name used on the wire and in the delivery log."""
        return f"feedbacks.{self.value}"


class FeedbackType(str, Enum):
    BUG = "bug"
    IDEA = "idea"
    PRAISE = "praise"


class DeliveryStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


class DispatchOutcome(str, Enum):
    """Per-endpoint result of one dispatch task."""

    DELIVERED = "delivered"
    FAILED = "failed"
    RATE_LIMITED = "rate_limited"
    ERRORED = "errored"
