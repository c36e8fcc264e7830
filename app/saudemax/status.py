"""
Display helpers for the status enumerations used across the portal.

Registered as Jinja filters in ``create_app`` (``status_class``, ``status_icon``,
``status_text``).
"""
from __future__ import annotations

_GREEN = "badge-success"
_YELLOW = "badge-warning"
_ORANGE = "badge-orange"
_RED = "badge-danger"
_GRAY = "badge-muted"
_BLUE = "badge-info"
_PURPLE = "badge-purple"

STATUS_CLASSES: dict[str, str] = {
    # membership
    "active": _GREEN,
    "pending": _YELLOW,
    "suspended": _ORANGE,
    "cancelled": _RED,
    "inactive": _GRAY,
    # billing
    "paid": _GREEN,
    "overdue": _RED,
    "failed": _RED,
    # share requests
    "submitted": _PURPLE,
    "under_review": _YELLOW,
    "approved": _GREEN,
    "denied": _RED,
    # support tickets
    "open": _BLUE,
    "in_progress": _YELLOW,
    "resolved": _GREEN,
    "closed": _GRAY,
    # commissions / withdrawals
    "unpaid": _BLUE,
    "processing": _BLUE,
    "completed": _GREEN,
    "rejected": _RED,
}

STATUS_ICONS: dict[str, str] = {
    "active": "check-circle",
    "pending": "clock",
    "suspended": "alert-triangle",
    "cancelled": "x-circle",
    "inactive": "minus-circle",
    "paid": "check-circle",
    "overdue": "x-circle",
    "failed": "x-circle",
    "submitted": "file-text",
    "under_review": "clock",
    "approved": "check-circle",
    "denied": "x-circle",
    "open": "message-circle",
    "in_progress": "clock",
    "resolved": "check-circle",
    "closed": "x-circle",
    "unpaid": "dollar-sign",
    "processing": "clock",
    "completed": "check-circle",
    "rejected": "x-circle",
}

# 1 = needs action now, 5 = archived
STATUS_PRIORITY: dict[str, int] = {
    "overdue": 1,
    "failed": 1,
    "urgent": 1,
    "denied": 1,
    "pending": 2,
    "under_review": 2,
    "processing": 2,
    "in_progress": 2,
    "suspended": 2,
    "submitted": 3,
    "open": 3,
    "unpaid": 3,
    "active": 4,
    "approved": 4,
    "paid": 4,
    "completed": 4,
    "resolved": 4,
    "closed": 5,
    "cancelled": 5,
    "inactive": 5,
}

POSITIVE_STATUSES = frozenset({"active", "approved", "paid", "completed", "resolved"})
NEGATIVE_STATUSES = frozenset({"cancelled", "denied", "failed", "overdue", "suspended", "rejected"})
PENDING_STATUSES = frozenset({"pending", "under_review", "processing", "in_progress", "submitted", "open"})


def _norm(status: str | None) -> str:
    return (status or "").strip().lower()


def status_class(status: str | None) -> str:
    return STATUS_CLASSES.get(_norm(status), _GRAY)


def status_icon(status: str | None) -> str:
    return STATUS_ICONS.get(_norm(status), "alert-circle")


def status_text(status: str | None) -> str:
    """``under_review`` -> ``Under Review``."""
    words = (status or "").replace("_", " ").split(" ")
    return " ".join(w[:1].upper() + w[1:] for w in words)


def status_priority(status: str | None) -> int:
    return STATUS_PRIORITY.get(_norm(status), 3)


def is_positive_status(status: str | None) -> bool:
    return _norm(status) in POSITIVE_STATUSES


def is_negative_status(status: str | None) -> bool:
    return _norm(status) in NEGATIVE_STATUSES


def is_pending_status(status: str | None) -> bool:
    return _norm(status) in PENDING_STATUSES
