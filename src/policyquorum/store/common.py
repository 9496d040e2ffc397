"""Shared store constants and validators."""

from __future__ import annotations

from ..types import PolicyStatus

DEFAULT_AUDIT_PAGE_SIZE: int = 100
MAX_AUDIT_PAGE_SIZE: int = 1000
BUSY_TIMEOUT_SECONDS: float = 30.0
ALLOWED_STATUSES: frozenset[str] = frozenset(status.value for status in PolicyStatus)


def validate_nonempty_str(name: str, value: str) -> None:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{name} must be a non-empty string")


def validate_status(status: str) -> None:
    if status not in ALLOWED_STATUSES:
        raise ValueError(f"status must be one of {sorted(ALLOWED_STATUSES)}")


def clamp_page(limit: int | None, offset: int | None) -> tuple[int, int]:
    """Return a (limit, offset) pair within the allowed page bounds."""
    if limit is None or limit <= 0:
        limit = DEFAULT_AUDIT_PAGE_SIZE
    if offset is None or offset < 0:
        offset = 0
    return min(limit, MAX_AUDIT_PAGE_SIZE), offset
