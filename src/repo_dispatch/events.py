"""Helpers for reading repository event payloads.

Events arrive as plain JSON-compatible mappings produced by upstream
ingestion. Only a handful of keys matter to the scheduler: ``id``, ``type``,
``repository`` (``owner/name``), ``issue.number`` and ``pull_request.number``
(``pullRequest`` is accepted as an alias).
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

Event = Mapping[str, Any]


def issue_number(event: Event) -> int | None:
    return _nested_number(event, "issue")


def pull_request_number(event: Event) -> int | None:
    return _nested_number(event, "pull_request") or _nested_number(event, "pullRequest")


def event_key(event: Event) -> str:
    """Stable short name identifying the logical unit an event belongs to."""

    number = issue_number(event)
    if number:
        return f"issue-{number}"
    number = pull_request_number(event)
    if number:
        return f"pr-{number}"
    return f"event-{event.get('id')}"


def repository_parts(event: Event) -> tuple[str, str]:
    """Split ``owner/name``; unknown parts fall back to ``unknown``."""

    raw = str(event.get("repository") or "")
    owner, _, name = raw.partition("/")
    return owner or "unknown", name or "unknown"


def _nested_number(event: Event, key: str) -> int | None:
    section = event.get(key)
    if not isinstance(section, Mapping):
        return None
    value = section.get("number")
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
