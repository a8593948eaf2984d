"""Wire payloads for every endpoint kind.

The canonical *envelope* (``build_event_envelope`` / ``build_digest_envelope``)
is what the delivery log stores. ``render`` derives the kind-specific wire
payload from an envelope, applying the endpoint's redaction to a deep copy
first, so the stored snapshot keeps every field for operators.
"""
from __future__ import annotations

import copy
import hmac
import json
import time
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from hashlib import sha256
from typing import Any, Mapping
from uuid import UUID

from delivery_service.domain.enums import EndpointKind, EventKind
from delivery_service.domain.feedback import Feedback, FeedbackEvent
from delivery_service.domain.webhooks import Endpoint, Redaction

TIMESTAMP_HEADER = "X-Feedbacks-Timestamp"
SIGNATURE_HEADER = "X-Feedbacks-Signature"
BOT_USERNAME = "feedbacks.dev"
DEFAULT_GITHUB_LABELS = ("feedbacks-dev",)


@dataclass(frozen=True, slots=True)
class TypeStyle:
    slack_color: str
    discord_color: int
    emoji: str
    glyph: str


TYPE_STYLES = {
    "bug": TypeStyle("#dc2626", 0xDC2626, ":beetle:", "\U0001f41e"),
    "idea": TypeStyle("#2563eb", 0x2563EB, ":bulb:", "\U0001f4a1"),
    "praise": TypeStyle("#16a34a", 0x16A34A, ":sparkles:", "✨"),
}
DEFAULT_STYLE = TypeStyle("#6b7280", 0x64748B, ":speech_balloon:", "\U0001f4ac")
DIGEST_SLACK_COLOR = "#64748b"
DIGEST_DISCORD_COLOR = 0x64748B


def style_for(feedback_type: Any) -> TypeStyle:
    return TYPE_STYLES.get(str(feedback_type), DEFAULT_STYLE) if feedback_type else DEFAULT_STYLE


@dataclass(frozen=True, slots=True)
class Links:
    """Deep links into the dashboard."""

    base_url: str

    def project(self, project_id: Any) -> str:
        return f"{self.base_url.rstrip('/')}/projects/{project_id}"

    def feedback(self, feedback_id: Any) -> str:
        return f"{self.base_url.rstrip('/')}/feedback/{feedback_id}"


# ---------------------------------------------------------------------------
# envelopes
# ---------------------------------------------------------------------------

def build_event_envelope(event: FeedbackEvent, kind: EventKind) -> dict[str, Any]:
    envelope: dict[str, Any] = {
        "event": kind.event_name,
        "project_id": str(event.project_id),
        "project": event.project_name,
        "feedback": event.feedback_fields(),
    }
    if kind is EventKind.UPDATED:
        envelope["changes"] = dict(event.changes or {})
    return envelope


def build_digest_envelope(
    *,
    project_id: UUID,
    project_name: str,
    since: datetime,
    until: datetime,
    items: list[Feedback],
    max_items: int = 25,
) -> dict[str, Any]:
    ratings = [item.rating for item in items if item.rating is not None]
    by_type = dict(Counter(item.type or "general" for item in items))
    return {
        "event": EventKind.DIGEST.event_name,
        "project_id": str(project_id),
        "project": project_name,
        "since": since.isoformat(),
        "until": until.isoformat(),
        "count": len(items),
        "avg_rating": round(sum(ratings) / len(ratings), 2) if ratings else None,
        "by_type": by_type,
        "items": [
            item.model_dump(
                mode="json",
                include={"id", "created_at", "message", "email", "url", "type", "rating", "tags"},
            )
            for item in items[-max_items:]
        ],
    }


def redact(envelope: Mapping[str, Any], redaction: Redaction) -> dict[str, Any]:
    """Deep copy of ``envelope`` with redacted fields set to ``None``."""
    wire = copy.deepcopy(dict(envelope))
    fields = [name for name, enabled in (("email", redaction.email), ("url", redaction.url)) if enabled]
    if not fields:
        return wire
    records: list[dict[str, Any]] = []
    if isinstance(wire.get("feedback"), dict):
        records.append(wire["feedback"])
    records.extend(item for item in wire.get("items") or () if isinstance(item, dict))
    for record in records:
        for name in fields:
            if name in record:
                record[name] = None
    return wire


# ---------------------------------------------------------------------------
# rendering
# ---------------------------------------------------------------------------

def _plain(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple)):
        return ",".join(_plain(item) for item in value)
    if value is None:
        return ""
    return str(value)


def _excerpt(text: str | None, limit: int = 140) -> str:
    text = " ".join((text or "").split())
    return text if len(text) <= limit else text[: limit - 1] + "…"


def _changes_text(changes: Mapping[str, Any], *, bold: bool) -> str:
    if not changes:
        return "no fields"
    fmt = "*{}:* {}" if bold else "{}: {}"
    return " | ".join(fmt.format(key, _plain(value)) for key, value in changes.items())


def _detail_fields(feedback: Mapping[str, Any]) -> list[tuple[str, str]]:
    fields: list[tuple[str, str]] = []
    if feedback.get("rating") is not None:
        fields.append(("Rating", f"{feedback['rating']}/5"))
    if feedback.get("type"):
        fields.append(("Type", str(feedback["type"])))
    if feedback.get("tags"):
        fields.append(("Tags", ", ".join(str(tag) for tag in feedback["tags"])))
    if feedback.get("email"):
        fields.append(("From", str(feedback["email"])))
    if feedback.get("url"):
        fields.append(("Page", str(feedback["url"])))
    return fields


def _render_slack(endpoint: Endpoint, wire: Mapping[str, Any], links: Links) -> dict[str, Any]:
    feedback = wire["feedback"]
    project = wire.get("project") or "Project"
    style = style_for(feedback.get("type"))
    project_url = links.project(wire.get("project_id"))
    feedback_url = links.feedback(feedback.get("id"))
    updated = "changes" in wire

    if endpoint.format == "compact":
        if updated:
            text = f"{project} updated: {_changes_text(wire['changes'], bold=True)} — {feedback_url}"
        else:
            text = f"{style.emoji} {project}: {_excerpt(feedback.get('message'))} — {feedback_url}"
        return {"text": text}

    blocks: list[dict[str, Any]] = [
        {
            "type": "section",
            "text": {
                "type": "mrkdwn",
                "text": f"*{style.emoji} {project}* — <{project_url}|View Project> • <{feedback_url}|View Feedback>",
            },
        }
    ]
    if updated:
        blocks.append(
            {"type": "section", "text": {"type": "mrkdwn", "text": f"*Changes:* {_changes_text(wire['changes'], bold=True)}"}}
        )
        text = f"{project} — Feedback updated"
    else:
        blocks.append({"type": "section", "text": {"type": "mrkdwn", "text": feedback.get("message") or ""}})
        fields = _detail_fields(feedback)
        if fields:
            blocks.append(
                {
                    "type": "section",
                    "fields": [{"type": "mrkdwn", "text": f"*{name}:*\n{value}"} for name, value in fields],
                }
            )
        text = f"{project} — New feedback"
    return {"text": text, "attachments": [{"color": style.slack_color, "blocks": blocks}]}


def _render_discord(endpoint: Endpoint, wire: Mapping[str, Any], links: Links) -> dict[str, Any]:
    feedback = wire["feedback"]
    project = wire.get("project") or "Project"
    style = style_for(feedback.get("type"))
    feedback_url = links.feedback(feedback.get("id"))
    updated = "changes" in wire

    if endpoint.format == "compact":
        if updated:
            content = f"{project} updated: {_changes_text(wire['changes'], bold=False)} — {feedback_url}"
        else:
            content = f"{style.glyph} {project}: {_excerpt(feedback.get('message'))} — {feedback_url}"
        return {"content": content, "username": BOT_USERNAME}

    if updated:
        description = "Feedback updated"
        fields = [{"name": "Changes", "value": _changes_text(wire["changes"], bold=False), "inline": False}]
    else:
        description = _excerpt(feedback.get("message"), 4000)
        fields = [{"name": name, "value": value, "inline": True} for name, value in _detail_fields(feedback)]
    embed = {
        "title": f"{style.glyph} {project}",
        "url": feedback_url,
        "description": description,
        "color": style.discord_color,
        "fields": fields,
    }
    return {"content": "", "username": BOT_USERNAME, "embeds": [embed]}


def _render_github(endpoint: Endpoint, wire: Mapping[str, Any], links: Links) -> dict[str, Any]:
    feedback = wire["feedback"]
    feedback_url = links.feedback(feedback.get("id"))
    label = feedback.get("type") or "feedback"
    if "changes" in wire:
        title = f"[{label}] updated: {_excerpt(feedback.get('message'), 80)}"
        summary = f"**Changes:** {_changes_text(wire['changes'], bold=False)}"
    else:
        title = f"[{label}] {_excerpt(feedback.get('message'), 80)}"
        summary = feedback.get("message") or ""
    lines = [summary, ""]
    lines.extend(f"- **{name}:** {value}" for name, value in _detail_fields(feedback))
    lines.extend(["", f"[View in feedbacks.dev]({feedback_url})"])
    return {"title": title, "body": "\n".join(lines), "labels": list(endpoint.labels or DEFAULT_GITHUB_LABELS)}


def _digest_lines(wire: Mapping[str, Any], links: Links, *, markdown: str, discord: bool) -> list[str]:
    project = wire.get("project") or "Project"
    by_type: Mapping[str, int] = wire.get("by_type") or {}
    if discord:
        breakdown = ", ".join(f"{style_for(name).glyph} {name}: {count}" for name, count in by_type.items())
    else:
        breakdown = ", ".join(f"{style_for(name).emoji} {name}:{count}" for name, count in by_type.items())
    lines = [
        f"{markdown}{project}{markdown} — {wire.get('count', 0)} new feedback in the last hour",
        f"Avg rating: {wire['avg_rating']:.2f}" if wire.get("avg_rating") is not None else "",
        f"By type: {breakdown}" if breakdown else "",
        f"View: {links.project(wire.get('project_id'))}",
    ]
    return [line for line in lines if line]


def _render_digest(endpoint: Endpoint, wire: dict[str, Any], links: Links) -> dict[str, Any]:
    if endpoint.kind is EndpointKind.GENERIC:
        return wire
    if endpoint.kind is EndpointKind.SLACK:
        text = "\n".join(_digest_lines(wire, links, markdown="*", discord=False))
        if endpoint.format == "compact":
            return {"text": text}
        blocks = [{"type": "section", "text": {"type": "mrkdwn", "text": text}}]
        return {"text": text, "attachments": [{"color": DIGEST_SLACK_COLOR, "blocks": blocks}]}
    if endpoint.kind is EndpointKind.DISCORD:
        text = "\n".join(_digest_lines(wire, links, markdown="**", discord=True))
        if endpoint.format == "compact":
            return {"content": text, "username": BOT_USERNAME}
        return {"content": "", "username": BOT_USERNAME, "embeds": [{"description": text, "color": DIGEST_DISCORD_COLOR}]}
    lines = _digest_lines(wire, links, markdown="**", discord=True)
    return {
        "title": f"{wire.get('project') or 'Project'}: {wire.get('count', 0)} new feedback in the last hour",
        "body": "\n".join(lines),
        "labels": list(endpoint.labels or DEFAULT_GITHUB_LABELS),
    }


def render(endpoint: Endpoint, envelope: Mapping[str, Any], links: Links) -> dict[str, Any]:
    """Wire payload for ``endpoint`` built from a canonical envelope."""
    wire = redact(envelope, endpoint.redact)
    if wire.get("event") == EventKind.DIGEST.event_name:
        return _render_digest(endpoint, wire, links)
    if endpoint.kind is EndpointKind.GENERIC:
        return wire
    if endpoint.kind is EndpointKind.SLACK:
        return _render_slack(endpoint, wire, links)
    if endpoint.kind is EndpointKind.DISCORD:
        return _render_discord(endpoint, wire, links)
    return _render_github(endpoint, wire, links)


def build_test_payload(endpoint: Endpoint, project_name: str, now: datetime) -> dict[str, Any]:
    text = f"feedbacks.dev test webhook for {project_name}"
    if endpoint.kind is EndpointKind.SLACK:
        return {"text": text}
    if endpoint.kind is EndpointKind.DISCORD:
        return {"content": text, "username": BOT_USERNAME}
    if endpoint.kind is EndpointKind.GITHUB:
        return {
            "title": text,
            "body": f"This is a test issue created at {now.isoformat()}",
            "labels": list(endpoint.labels or DEFAULT_GITHUB_LABELS),
        }
    return {"type": "test", "source": BOT_USERNAME, "project": project_name, "at": now.isoformat()}


# ---------------------------------------------------------------------------
# encoding and signing
# ---------------------------------------------------------------------------

def encode_body(payload: Any) -> bytes:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def sign(secret: str, body: bytes, timestamp: int | None = None) -> dict[str, str]:
    """HMAC-SHA256 over ``"{timestamp}." + body``; receivers recompute it from the raw bytes."""
    ts = str(int(time.time()) if timestamp is None else timestamp)
    digest = hmac.new(secret.encode("utf-8"), ts.encode("ascii") + b"." + body, sha256).hexdigest()
    return {TIMESTAMP_HEADER: ts, SIGNATURE_HEADER: digest}


def build_request(
    endpoint: Endpoint,
    payload: Any,
    *,
    timestamp: int | None = None,
) -> tuple[bytes, dict[str, str]]:
    """Encode ``payload`` once and derive the headers from those exact bytes."""
    body = encode_body(payload)
    headers: dict[str, str] = {}
    if endpoint.kind is EndpointKind.GENERIC and endpoint.secret:
        headers.update(sign(endpoint.secret, body, timestamp))
    elif endpoint.kind is EndpointKind.GITHUB and endpoint.token:
        headers.update(
            {
                "Authorization": f"Bearer {endpoint.token}",
                "Accept": "application/vnd.github+json",
                "User-Agent": BOT_USERNAME,
            }
        )
    return body, headers
