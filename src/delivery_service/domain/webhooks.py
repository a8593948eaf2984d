"""Normalized endpoint model consumed by the delivery engine."""
from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from delivery_service.domain.enums import EndpointKind, EventKind


class EndpointRules(BaseModel):
    """Optional per-endpoint filter; an empty rule set matches everything."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    rating_max: int | None = Field(default=None, alias="ratingMax", ge=1, le=5)
    types: frozenset[str] = frozenset()
    tags_include: frozenset[str] = Field(default=frozenset(), alias="tagsInclude")

    @field_validator("types", "tags_include", mode="before")
    @classmethod
    def _none_as_empty(cls, value: Any) -> Any:
        return () if value is None else value


class Redaction(BaseModel):
    model_config = ConfigDict(frozen=True)

    email: bool = False
    url: bool = False


class Endpoint(BaseModel):
    """One externally configured delivery target."""

    model_config = ConfigDict(populate_by_name=True, frozen=True, extra="ignore")

    id: str
    kind: EndpointKind
    url: str = Field(min_length=1)
    enabled: bool = False
    events: frozenset[EventKind] | None = None
    delivery: Literal["immediate", "digest"] = "immediate"
    digest_interval: Literal["hourly"] = Field(default="hourly", alias="digestInterval")
    rules: EndpointRules = Field(default_factory=EndpointRules)
    rate_limit_per_min: int | None = Field(default=None, alias="rateLimitPerMin", ge=0)
    redact: Redaction = Field(default_factory=Redaction)
    format: Literal["rich", "compact"] = "rich"
    secret: str | None = None
    # github issue target
    repo: str | None = None
    token: str | None = None
    labels: tuple[str, ...] = ()

    @field_validator("events", mode="before")
    @classmethod
    def _known_events_only(cls, value: Any) -> Any:
        if value is None or not isinstance(value, (list, tuple, set, frozenset)):
            return None
        known = {kind.value for kind in EventKind}
        return [item for item in value if item in known]

    @property
    def subscribed_events(self) -> frozenset[EventKind]:
        """Explicit subscription, else the legacy inference from ``delivery``."""
        if self.events is not None:
            return self.events
        if self.delivery == "digest":
            return frozenset({EventKind.DIGEST})
        return frozenset({EventKind.CREATED})

    @property
    def rate_limited(self) -> bool:
        return bool(self.rate_limit_per_min)
