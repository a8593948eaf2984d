"""Turn raw per-project webhook configuration into typed endpoints.

A project stores its configuration per kind in one of two shapes:

* legacy ``{"url": ..., "enabled": ...}`` (generic may carry ``secret``)
* current ``{"endpoints": [{...}, ...]}``

The plural shape wins when both are present. Legacy entries are lifted into
a single endpoint whose ``id`` is derived from its URL, so identity survives
reloads and re-imports. Entries that cannot be delivered to are dropped
without error: validating configuration is the editor's job, not ours.
"""
from __future__ import annotations

import copy
import hashlib
from typing import Any, Mapping
from urllib.parse import urlparse

import structlog
from pydantic import ValidationError

from delivery_service.domain.enums import EndpointKind
from delivery_service.domain.webhooks import Endpoint

logger = structlog.get_logger(__name__)

GITHUB_API_BASE = "https://api.github.com"

_HTTP_KINDS = (EndpointKind.SLACK, EndpointKind.DISCORD, EndpointKind.GENERIC)


def derive_endpoint_id(value: str) -> str:
    return "u-" + hashlib.sha1(value.encode("utf-8")).hexdigest()[:12]


def github_issues_url(repo: str) -> str:
    return f"{GITHUB_API_BASE}/repos/{repo}/issues"


def _entries(section: Any) -> list[Any]:
    if not isinstance(section, Mapping):
        return []
    if "endpoints" in section and section["endpoints"] is not None:
        endpoints = section["endpoints"]
        return list(endpoints) if isinstance(endpoints, list) else []
    if isinstance(section.get("url"), str) and section["url"]:
        legacy = {"url": section["url"], "enabled": bool(section.get("enabled"))}
        if section.get("secret"):
            legacy["secret"] = section["secret"]
        return [legacy]
    return []


def _build(kind: EndpointKind, entry: Any) -> Endpoint | None:
    if not isinstance(entry, Mapping):
        return None
    data = {key: value for key, value in entry.items() if value is not None}
    if kind is EndpointKind.GITHUB:
        repo, token = data.get("repo"), data.get("token")
        if not isinstance(repo, str) or not repo or not isinstance(token, str) or not token:
            return None
        data["url"] = github_issues_url(repo)
    url = data.get("url")
    if not isinstance(url, str) or not url:
        return None
    data["kind"] = kind
    data["id"] = data.get("id") or derive_endpoint_id(url)
    try:
        return Endpoint.model_validate(data)
    except ValidationError as exc:
        logger.debug("dropping malformed endpoint", kind=kind.value, url=url, errors=exc.error_count())
        return None


def normalize_config(raw: Mapping[str, Any] | None) -> list[Endpoint]:
    """Flatten every kind of a project's config into one endpoint list."""
    if not isinstance(raw, Mapping):
        return []
    endpoints: list[Endpoint] = []
    for kind in EndpointKind:
        for entry in _entries(raw.get(kind.value)):
            endpoint = _build(kind, entry)
            if endpoint is not None:
                endpoints.append(endpoint)
    return endpoints


def find_endpoint(raw: Mapping[str, Any] | None, endpoint_id: str) -> Endpoint | None:
    for endpoint in normalize_config(raw):
        if endpoint.id == endpoint_id:
            return endpoint
    return None


def disable_endpoint_in_config(
    raw: Mapping[str, Any] | None,
    kind: EndpointKind,
    endpoint_id: str,
) -> tuple[dict[str, Any], bool]:
    """Return a copy of ``raw`` with the endpoint's ``enabled`` set to false."""
    config: dict[str, Any] = copy.deepcopy(dict(raw or {}))
    section = config.get(kind.value)
    if not isinstance(section, dict):
        return config, False

    endpoints = section.get("endpoints")
    if endpoints is not None:
        changed = False
        for entry in endpoints if isinstance(endpoints, list) else []:
            if not isinstance(entry, dict):
                continue
            built = _build(kind, entry)
            if built is not None and built.id == endpoint_id and entry.get("enabled"):
                entry["enabled"] = False
                changed = True
        return config, changed

    url = section.get("url")
    if isinstance(url, str) and url and derive_endpoint_id(url) == endpoint_id and section.get("enabled"):
        section["enabled"] = False
        return config, True
    return config, False


def _is_https(value: Any) -> bool:
    if not value:
        return True
    if not isinstance(value, str):
        return False
    parsed = urlparse(value)
    return parsed.scheme == "https" and bool(parsed.netloc)


def validate_config(raw: Mapping[str, Any]) -> list[str]:
    """Return the field paths that make a submitted config unacceptable."""
    invalid: list[str] = []
    for kind in _HTTP_KINDS:
        section = raw.get(kind.value)
        if not isinstance(section, Mapping):
            continue
        if not _is_https(section.get("url")):
            invalid.append(f"{kind.value}.url")
        endpoints = section.get("endpoints")
        if isinstance(endpoints, list):
            for index, entry in enumerate(endpoints):
                url = entry.get("url") if isinstance(entry, Mapping) else None
                if not _is_https(url):
                    invalid.append(f"{kind.value}.endpoints[{index}].url")

    github = raw.get(EndpointKind.GITHUB.value)
    endpoints = github.get("endpoints") if isinstance(github, Mapping) else None
    if isinstance(endpoints, list):
        for index, entry in enumerate(endpoints):
            if not isinstance(entry, Mapping):
                continue
            repo, token = entry.get("repo"), entry.get("token")
            if (repo and not isinstance(repo, str)) or (token and not isinstance(token, str)):
                invalid.append(f"github.endpoints[{index}]")
    return invalid
