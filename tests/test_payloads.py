from __future__ import annotations

import hmac
import json
import uuid
from datetime import datetime, timedelta, timezone
from hashlib import sha256

import pytest

from delivery_service.domain.enums import EndpointKind, EventKind
from delivery_service.domain.feedback import Feedback, FeedbackEvent
from delivery_service.domain.webhooks import Endpoint, Redaction
from delivery_service.services.payloads import (
    SIGNATURE_HEADER,
    TIMESTAMP_HEADER,
    Links,
    build_digest_envelope,
    build_event_envelope,
    build_request,
    build_test_payload,
    encode_body,
    redact,
    render,
    sign,
)

LINKS = Links("https://app.feedbacks.test")


def make_event(**overrides) -> FeedbackEvent:
    data = dict(
        id=uuid.uuid4(),
        project_id=uuid.uuid4(),
        project_name="Acme",
        created_at=datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc),
        message="Checkout button does nothing",
        email="user@example.com",
        url="https://shop.example.com/cart",
        type="bug",
        rating=2,
        tags=["checkout"],
    )
    data.update(overrides)
    return FeedbackEvent(**data)


def make_endpoint(kind=EndpointKind.GENERIC, **overrides) -> Endpoint:
    data = {"id": "e1", "kind": kind, "url": "https://x.test/hook", "enabled": True}
    data.update(overrides)
    return Endpoint.model_validate(data)


def test_created_envelope_has_no_changes():
    event = make_event()
    envelope = build_event_envelope(event, EventKind.CREATED)
    assert envelope["event"] == "feedbacks.created"
    assert envelope["project_id"] == str(event.project_id)
    assert envelope["project"] == "Acme"
    assert envelope["feedback"]["email"] == "user@example.com"
    assert envelope["feedback"]["id"] == str(event.id)
    assert "changes" not in envelope


def test_updated_envelope_carries_changes():
    event = make_event(changes={"is_read": True})
    envelope = build_event_envelope(event, EventKind.UPDATED)
    assert envelope["event"] == "feedbacks.updated"
    assert envelope["changes"] == {"is_read": True}


def test_redact_returns_copy_and_keeps_original():
    envelope = build_event_envelope(make_event(), EventKind.CREATED)
    wire = redact(envelope, Redaction(email=True))
    assert wire["feedback"]["email"] is None
    assert wire["feedback"]["url"] == "https://shop.example.com/cart"
    assert envelope["feedback"]["email"] == "user@example.com"


def test_generic_render_is_redacted_envelope():
    envelope = build_event_envelope(make_event(), EventKind.CREATED)
    wire = render(make_endpoint(redact={"email": True, "url": True}), envelope, LINKS)
    assert wire["event"] == "feedbacks.created"
    assert wire["feedback"]["email"] is None
    assert wire["feedback"]["url"] is None


def test_slack_rich_render():
    event = make_event()
    wire = render(make_endpoint(EndpointKind.SLACK), build_event_envelope(event, EventKind.CREATED), LINKS)
    assert wire["text"] == "Acme — New feedback"
    attachment = wire["attachments"][0]
    assert attachment["color"] == "#dc2626"
    title = attachment["blocks"][0]["text"]["text"]
    assert ":beetle:" in title
    assert f"https://app.feedbacks.test/feedback/{event.id}" in title
    assert attachment["blocks"][1]["text"]["text"] == "Checkout button does nothing"
    field_texts = [f["text"] for f in attachment["blocks"][2]["fields"]]
    assert "*Rating:*\n2/5" in field_texts


def test_slack_compact_render():
    wire = render(
        make_endpoint(EndpointKind.SLACK, format="compact"),
        build_event_envelope(make_event(type="idea"), EventKind.CREATED),
        LINKS,
    )
    assert set(wire) == {"text"}
    assert wire["text"].startswith(":bulb: Acme: Checkout button does nothing")


def test_slack_updated_render_lists_changes():
    event = make_event(changes={"is_read": True, "add_tag": "urgent"})
    wire = render(make_endpoint(EndpointKind.SLACK), build_event_envelope(event, EventKind.UPDATED), LINKS)
    blocks = wire["attachments"][0]["blocks"]
    assert blocks[1]["text"]["text"] == "*Changes:* *is_read:* true | *add_tag:* urgent"


def test_discord_rich_render_uses_int_colors():
    wire = render(
        make_endpoint(EndpointKind.DISCORD),
        build_event_envelope(make_event(type="praise"), EventKind.CREATED),
        LINKS,
    )
    assert wire["content"] == ""
    assert wire["username"] == "feedbacks.dev"
    assert wire["embeds"][0]["color"] == 0x16A34A


def test_discord_untyped_uses_fallback_color():
    wire = render(
        make_endpoint(EndpointKind.DISCORD),
        build_event_envelope(make_event(type=None), EventKind.CREATED),
        LINKS,
    )
    assert wire["embeds"][0]["color"] == 0x64748B


def test_github_issue_render():
    endpoint = make_endpoint(EndpointKind.GITHUB, repo="acme/app", token="t", labels=["triage"])
    wire = render(endpoint, build_event_envelope(make_event(), EventKind.CREATED), LINKS)
    assert wire["title"] == "[bug] Checkout button does nothing"
    assert wire["labels"] == ["triage"]
    assert "View in feedbacks.dev" in wire["body"]


def _feedback(project_id, **fields):
    fields.setdefault("created_at", datetime.now(timezone.utc))
    fields.setdefault("message", "hello")
    return Feedback(id=uuid.uuid4(), project_id=project_id, **fields)


def test_digest_envelope_summary():
    project_id = uuid.uuid4()
    until = datetime.now(timezone.utc)
    items = [
        _feedback(project_id, type="bug", rating=1),
        _feedback(project_id, type="bug", rating=4),
        _feedback(project_id, type="idea"),
    ]
    envelope = build_digest_envelope(
        project_id=project_id,
        project_name="Acme",
        since=until - timedelta(hours=1),
        until=until,
        items=items,
        max_items=2,
    )
    assert envelope["event"] == "feedbacks.digest"
    assert envelope["count"] == 3
    assert envelope["avg_rating"] == 2.5
    assert envelope["by_type"] == {"bug": 2, "idea": 1}
    assert [item["id"] for item in envelope["items"]] == [str(items[1].id), str(items[2].id)]


def test_digest_renders_summary_text_for_slack():
    project_id = uuid.uuid4()
    now = datetime.now(timezone.utc)
    envelope = build_digest_envelope(
        project_id=project_id,
        project_name="Acme",
        since=now - timedelta(hours=1),
        until=now,
        items=[_feedback(project_id, type="bug", rating=3)],
    )
    wire = render(make_endpoint(EndpointKind.SLACK, format="compact"), envelope, LINKS)
    assert "1 new feedback in the last hour" in wire["text"]
    assert "Avg rating: 3.00" in wire["text"]


def test_encode_body_is_compact_utf8():
    assert encode_body({"a": 1, "b": "é"}) == '{"a":1,"b":"é"}'.encode("utf-8")


def test_sign_matches_receiver_recomputation():
    body = b'{"x":1}'
    headers = sign("s3cret", body, timestamp=1700000000)
    assert headers[TIMESTAMP_HEADER] == "1700000000"
    expected = hmac.new(b"s3cret", b"1700000000." + body, sha256).hexdigest()
    assert headers[SIGNATURE_HEADER] == expected


def test_build_request_signs_exact_bytes_for_generic():
    endpoint = make_endpoint(secret="abc")
    body, headers = build_request(endpoint, {"k": "v"}, timestamp=42)
    assert body == b'{"k":"v"}'
    assert headers[SIGNATURE_HEADER] == hmac.new(b"abc", b"42." + body, sha256).hexdigest()


@pytest.mark.parametrize("kind", [EndpointKind.SLACK, EndpointKind.DISCORD])
def test_build_request_never_signs_chat_endpoints(kind):
    _, headers = build_request(make_endpoint(kind, secret="abc"), {"text": "hi"})
    assert SIGNATURE_HEADER not in headers


def test_build_request_github_headers():
    endpoint = make_endpoint(EndpointKind.GITHUB, repo="acme/app", token="ghp_1")
    _, headers = build_request(endpoint, {"title": "t"})
    assert headers["Authorization"] == "Bearer ghp_1"
    assert headers["Accept"] == "application/vnd.github+json"


def test_generic_test_payload():
    now = datetime(2024, 1, 1, tzinfo=timezone.utc)
    payload = build_test_payload(make_endpoint(), "Acme", now)
    assert payload == {"type": "test", "source": "feedbacks.dev", "project": "Acme", "at": now.isoformat()}
    assert json.loads(encode_body(payload)) == payload
