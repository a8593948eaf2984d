from __future__ import annotations

from types import SimpleNamespace

import pytest

from delivery_service.domain.enums import EndpointKind, EventKind
from delivery_service.domain.webhooks import Endpoint, EndpointRules
from delivery_service.services.rules import is_subscribed, matches, qualifies


def subject(rating=None, type=None, tags=None):
    return SimpleNamespace(rating=rating, type=type, tags=tags)


def endpoint(**overrides) -> Endpoint:
    data = {"id": "e1", "kind": EndpointKind.GENERIC, "url": "https://x.test", "enabled": True}
    data.update(overrides)
    return Endpoint.model_validate(data)


def test_empty_rules_match_everything():
    assert matches(subject(), EndpointRules())
    assert matches(subject(rating=5, type="bug", tags=["x"]), None)


@pytest.mark.parametrize(
    ("rating", "expected"),
    [(2, True), (3, True), (4, False), (None, True)],
)
def test_rating_ceiling(rating, expected):
    assert matches(subject(rating=rating), EndpointRules(ratingMax=3)) is expected


def test_type_allow_list_rejects_untyped_items():
    rules = EndpointRules(types=["bug", "idea"])
    assert matches(subject(type="bug"), rules)
    assert not matches(subject(type="praise"), rules)
    assert not matches(subject(type=None), rules)


def test_tags_intersection_is_case_insensitive():
    rules = EndpointRules(tagsInclude=["Checkout"])
    assert matches(subject(tags=["checkout", "mobile"]), rules)
    assert not matches(subject(tags=["mobile"]), rules)
    assert not matches(subject(tags=None), rules)


def test_all_rules_are_anded():
    rules = EndpointRules(ratingMax=2, types=["bug"], tagsInclude=["ui"])
    assert matches(subject(rating=1, type="bug", tags=["UI"]), rules)
    assert not matches(subject(rating=3, type="bug", tags=["UI"]), rules)


def test_subscription_checked_before_rules():
    ep = endpoint(events=["updated"])
    assert is_subscribed(ep, EventKind.UPDATED)
    assert not qualifies(ep, subject(), EventKind.CREATED)
    assert qualifies(ep, subject(), EventKind.UPDATED)


def test_disabled_endpoint_never_qualifies():
    assert not qualifies(endpoint(enabled=False), subject(), EventKind.CREATED)
