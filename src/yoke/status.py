"""Logical workflow status derived from raw tracker state."""

from __future__ import annotations

from collections.abc import Iterable
from typing import Literal, Protocol


LogicalStatus = Literal["open", "in_progress", "in_review", "blocked", "closed"]

OPEN = "open"
IN_PROGRESS = "in_progress"
IN_REVIEW = "in_review"
BLOCKED = "blocked"
CLOSED = "closed"

REVIEW_QUEUE_LABEL = "yoke:in_review"


class StatusSource(Protocol):
    raw_status: str
    labels: frozenset[str]


def has_label(labels: Iterable[str], target: str) -> bool:
    wanted = target.strip().lower()
    return any(label.strip().lower() == wanted for label in labels)


def normalize_status(raw_status: str, labels: Iterable[str] = ()) -> str:
    """Map a raw tracker status plus labels onto a logical status.

    ``blocked`` with the review-queue label is ``in_review``; anything else
    passes through trimmed and lower-cased, unknown values included.
    """
    status = (raw_status or "").strip().lower()
    if status == BLOCKED and has_label(labels, REVIEW_QUEUE_LABEL):
        return IN_REVIEW
    return status


def logical_status(issue: StatusSource) -> str:
    return normalize_status(issue.raw_status, issue.labels)


def is_closed(issue: StatusSource) -> bool:
    return logical_status(issue) == CLOSED
