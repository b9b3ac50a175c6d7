"""Issue records read from the tracker and the JSON shapes they arrive in."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any

from .status import logical_status
from .util import YokeError


DEFAULT_PREFIX = "bd"
EPIC = "epic"
TASK = "task"
BLOCKS = "blocks"

_PREFIX_RE = re.compile(r"^[a-z0-9](?:[a-z0-9._-]*[a-z0-9])?$")


class TrackerPayloadError(YokeError, ValueError):
    pass


def _text(value: object) -> str:
    if value is None:
        return ""
    return str(value).strip()


@dataclass(frozen=True)
class Issue:
    id: str
    title: str = ""
    issue_type: str = ""
    raw_status: str = ""
    labels: frozenset[str] = field(default_factory=frozenset)
    comment_count: int = 0
    dependency_type: str = ""

    @classmethod
    def from_dict(cls, row: dict[str, Any]) -> Issue:
        labels = row.get("labels") or []
        if not isinstance(labels, list):
            labels = []
        try:
            comment_count = int(row.get("comment_count") or 0)
        except (TypeError, ValueError):
            comment_count = 0
        return cls(
            id=_text(row.get("id")),
            title=_text(row.get("title")),
            issue_type=_text(row.get("issue_type")),
            raw_status=_text(row.get("status")),
            labels=frozenset(_text(label) for label in labels if _text(label)),
            comment_count=comment_count,
            dependency_type=_text(row.get("dependency_type")),
        )

    @property
    def status(self) -> str:
        return logical_status(self)

    @property
    def is_epic(self) -> bool:
        return self.issue_type.lower() == EPIC


@dataclass(frozen=True)
class DependencyEdge:
    issue_id: str
    depends_on_id: str
    type: str

    @property
    def is_blocking(self) -> bool:
        return self.type.lower() == BLOCKS


@dataclass(frozen=True)
class Comment:
    id: int
    issue_id: str
    author: str
    text: str
    created_at: str

    @classmethod
    def from_dict(cls, row: dict[str, Any]) -> Comment:
        try:
            comment_id = int(row.get("id") or 0)
        except (TypeError, ValueError):
            comment_id = 0
        return cls(
            id=comment_id,
            issue_id=_text(row.get("issue_id")),
            author=_text(row.get("author")),
            text=str(row.get("text") or ""),
            created_at=_text(row.get("created_at")),
        )


def _load(raw: str, *, what: str) -> Any:
    trimmed = raw.strip()
    if not trimmed or trimmed == "null":
        return None
    try:
        return json.loads(trimmed)
    except json.JSONDecodeError as exc:
        raise TrackerPayloadError(f"parse {what} json: {exc}") from exc


def _rows(payload: Any, *, what: str) -> list[dict[str, Any]]:
    if payload is None:
        return []
    if not isinstance(payload, list):
        raise TrackerPayloadError(f"parse {what} json: expected a list")
    return [row for row in payload if isinstance(row, dict)]


def parse_issue_list(raw: str) -> list[Issue]:
    payload = _load(raw, what="bd list")
    return [Issue.from_dict(row) for row in _rows(payload, what="bd list")]


def parse_issue_show(raw: str) -> Issue:
    """Parse ``bd show --json`` which returns either one object or a list."""
    payload = _load(raw, what="bd show")
    if payload is None:
        raise TrackerPayloadError("empty issue payload")
    if isinstance(payload, list):
        if not payload or not isinstance(payload[0], dict):
            raise TrackerPayloadError("issue payload missing issue data")
        return Issue.from_dict(payload[0])
    if not isinstance(payload, dict):
        raise TrackerPayloadError("parse bd show json: expected an object")
    issue = Issue.from_dict(payload)
    if not issue.id:
        raise TrackerPayloadError("issue payload missing issue data")
    return issue


def parse_comments(raw: str) -> list[Comment]:
    payload = _load(raw, what="bd comments")
    return [Comment.from_dict(row) for row in _rows(payload, what="bd comments")]


def parse_dependency_edges(raw: str, *, issue_id: str = "") -> list[DependencyEdge]:
    """Parse ``bd dep list --json`` output into edges.

    Three row shapes are accepted: explicit edges (``issue_id``,
    ``depends_on_id``, ``type``), issues embedding a ``dependencies`` list,
    and dependency issue rows carrying ``dependency_type``.
    """
    payload = _load(raw, what="bd dep list")
    edges: list[DependencyEdge] = []
    for row in _rows(payload, what="bd dep list"):
        if "depends_on_id" in row:
            edges.append(
                DependencyEdge(
                    issue_id=_text(row.get("issue_id")) or issue_id,
                    depends_on_id=_text(row.get("depends_on_id")),
                    type=_text(row.get("type") or row.get("dependency_type")),
                )
            )
            continue
        nested = row.get("dependencies")
        if isinstance(nested, list):
            owner = _text(row.get("id")) or issue_id
            for dep in nested:
                if not isinstance(dep, dict):
                    continue
                edges.append(
                    DependencyEdge(
                        issue_id=_text(dep.get("issue_id")) or owner,
                        depends_on_id=_text(dep.get("depends_on_id") or dep.get("id")),
                        type=_text(dep.get("type") or dep.get("dependency_type")),
                    )
                )
            continue
        if row.get("dependency_type") is not None:
            edges.append(
                DependencyEdge(
                    issue_id=issue_id,
                    depends_on_id=_text(row.get("id")),
                    type=_text(row.get("dependency_type")),
                )
            )
    return [edge for edge in edges if edge.depends_on_id]


def parse_created_issue_id(raw: str) -> str:
    """Extract the id from ``bd create --json`` output.

    Accepts an object, a list of objects, a JSON string, or a bare token.
    """
    trimmed = raw.strip()
    if not trimmed:
        raise TrackerPayloadError("empty output")

    try:
        payload = json.loads(trimmed)
    except json.JSONDecodeError:
        payload = None
    else:
        if isinstance(payload, dict) and _text(payload.get("id")):
            return _text(payload.get("id"))
        if isinstance(payload, list) and payload:
            first = payload[0]
            if isinstance(first, dict) and _text(first.get("id")):
                return _text(first.get("id"))
        if isinstance(payload, str) and payload.strip():
            return payload.strip()

    fields = trimmed.split()
    if len(fields) == 1 and payload is None:
        return fields[0]
    raise TrackerPayloadError(f"unsupported output format: {trimmed!r}")


def normalize_prefix(value: str) -> str:
    prefix = (value or "").strip().lower()
    if not prefix:
        return DEFAULT_PREFIX
    if not _PREFIX_RE.match(prefix):
        raise ValueError(
            f"invalid bd prefix {value!r}: use letters, numbers, '.', '_' or '-', "
            "and avoid trailing separators"
        )
    return prefix


def issue_pattern(prefix: str) -> re.Pattern[str]:
    try:
        normalized = normalize_prefix(prefix)
    except ValueError:
        normalized = DEFAULT_PREFIX
    return re.compile(re.escape(normalized) + r"-[a-z0-9]+(?:\.[a-z0-9]+)*")


def extract_issue_id(text: str, prefix: str) -> str:
    match = issue_pattern(prefix).search(text.lower())
    return match.group(0) if match else ""


def looks_like_issue_id(value: str, prefix: str) -> bool:
    lowered = value.strip().lower()
    return bool(lowered) and issue_pattern(prefix).fullmatch(lowered) is not None


def first_matching_issue_id(issues: list[Issue], prefix: str, status: str = "") -> str:
    wanted = status.strip().lower()
    for issue in issues:
        issue_id = issue.id.lower()
        if not issue_id:
            continue
        if wanted and issue.status != wanted:
            continue
        if looks_like_issue_id(issue_id, prefix):
            return issue_id
    return ""


def branch_for_issue(issue_id: str) -> str:
    return f"yoke/{issue_id}"
