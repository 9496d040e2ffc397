"""Typed models for policyquorum."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_CONTRACT_TYPE = "forseti"
DEFAULT_APPROVAL_TYPE = "implicit"
DEFAULT_EXECUTION_TYPE = "private"


def format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%fZ")


def parse_timestamp(value: str) -> datetime:
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    return datetime.fromisoformat(text)


def _require_aware(name: str, value: datetime) -> datetime:
    if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
        raise ValueError(f"{name} must be timezone-aware")
    return value


def _require_non_empty(name: str, value: str) -> str:
    if not value or not value.strip():
        raise ValueError(f"{name} must be a non-empty string")
    return value


class PolicyStatus(str, Enum):
    """Lifecycle status of a pending policy."""

    PENDING = "pending"
    APPROVED = "approved"
    COMMITTED = "committed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (PolicyStatus.COMMITTED, PolicyStatus.CANCELLED)


class AuditEvent(str, Enum):
    """Lifecycle transitions recorded in the audit log."""

    CREATED = "created"
    APPROVED = "approved"
    REJECTED = "rejected"
    REVOKED = "revoked"
    STATUS_CHANGED = "status_changed"
    COMMITTED = "committed"
    CANCELLED = "cancelled"


class PendingPolicy(BaseModel):
    """A policy change awaiting multi-party approval.

    ``approval_count`` and ``rejection_count`` are derived from the decision
    set whenever the record is read; they are never stored.
    """

    model_config = ConfigDict(frozen=True, ser_json_bytes="base64")

    id: str
    role_id: str
    status: PolicyStatus
    threshold: int = Field(ge=1)
    requested_by: str
    requested_by_email: str | None = None
    policy_request_data: bytes
    contract_type: str = DEFAULT_CONTRACT_TYPE
    approval_type: str = DEFAULT_APPROVAL_TYPE
    execution_type: str = DEFAULT_EXECUTION_TYPE
    created_at: datetime
    updated_at: datetime
    approval_count: int = 0
    rejection_count: int = 0

    @field_validator("id", "role_id", "requested_by")
    @classmethod
    def _non_empty(cls, value: str) -> str:
        return _require_non_empty("value", value)

    @field_validator("created_at", "updated_at")
    @classmethod
    def _timezone_aware(cls, value: datetime) -> datetime:
        return _require_aware("timestamp", value)

    @property
    def quorum_reached(self) -> bool:
        return self.approval_count >= self.threshold


class PolicyDecision(BaseModel):
    """A single voter's approve/reject decision on a pending policy."""

    model_config = ConfigDict(frozen=True)

    policy_request_id: str
    voter_id: str
    voter_email: str | None = None
    approved: bool
    timestamp: datetime

    @field_validator("voter_id")
    @classmethod
    def _voter_non_empty(cls, value: str) -> str:
        return _require_non_empty("voter_id", value)

    @field_validator("timestamp")
    @classmethod
    def _timezone_aware(cls, value: datetime) -> datetime:
        return _require_aware("timestamp", value)


class CommittedPolicy(BaseModel):
    """The signed policy artifact served for a role."""

    model_config = ConfigDict(frozen=True, ser_json_bytes="base64")

    role_id: str
    policy_data: bytes | None = None
    contract_type: str = DEFAULT_CONTRACT_TYPE
    approval_type: str = DEFAULT_APPROVAL_TYPE
    execution_type: str = DEFAULT_EXECUTION_TYPE
    threshold: int = Field(default=1, ge=1)
    source_policy_id: str | None = None
    committed_by: str | None = None
    committed_at: datetime

    @field_validator("committed_at")
    @classmethod
    def _timezone_aware(cls, value: datetime) -> datetime:
        return _require_aware("committed_at", value)


class VoteResult(BaseModel):
    """Tallies and status after a vote."""

    policy_id: str
    approved: bool
    status: PolicyStatus
    approval_count: int
    rejection_count: int
    threshold: int


class RevokeResult(BaseModel):
    """Outcome of revoking a decision.

    ``approval_removed`` is None when the revoked decision was a rejection and
    no signature share had to be stripped.
    """

    policy_id: str
    revoked_approval: bool
    approval_removed: bool | None = None
    status: PolicyStatus
    approval_count: int
    rejection_count: int
    threshold: int


class CommitResult(BaseModel):
    """Terminal pending policy plus the committed artifact and any soft failures.

    ``committed`` is None when the payload could not be extracted.
    """

    policy: PendingPolicy
    committed: CommittedPolicy | None = None
    reason_codes: tuple[str, ...] = ()


class AuditLogEntry(BaseModel):
    """Append-only record of one lifecycle transition.

    Chain fields are populated by the store when the entry is persisted.
    """

    event: AuditEvent
    policy_id: str
    role_id: str
    actor_id: str
    actor_email: str | None = None
    policy_status: PolicyStatus
    approval_count: int = 0
    rejection_count: int = 0
    threshold: int = 1
    details: str = ""
    reason_codes: tuple[str, ...] = ()
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    sequence: int | None = None
    prev_entry_hash: str | None = None
    entry_hash: str | None = None
    entry_signature: str | None = None

    @field_validator("policy_id", "actor_id")
    @classmethod
    def _non_empty(cls, value: str) -> str:
        return _require_non_empty("value", value)

    @field_validator("details", mode="before")
    @classmethod
    def _truncate_details(cls, value: str | None) -> str:
        if value is None:
            return ""
        if len(value) > 500:
            return value[:497] + "..."
        return value

    @field_validator("created_at")
    @classmethod
    def _timezone_aware(cls, value: datetime) -> datetime:
        return _require_aware("created_at", value)

    def to_record(self) -> dict[str, Any]:
        """Return the hashed body of the entry (chain fields excluded)."""
        return {
            "event": self.event.value,
            "policy_id": self.policy_id,
            "role_id": self.role_id,
            "actor_id": self.actor_id,
            "actor_email": self.actor_email,
            "policy_status": self.policy_status.value,
            "approval_count": self.approval_count,
            "rejection_count": self.rejection_count,
            "threshold": self.threshold,
            "details": self.details,
            "reason_codes": list(self.reason_codes),
            "created_at": format_timestamp(self.created_at),
        }

    @classmethod
    def from_record(cls, record: dict[str, Any], **chain: Any) -> "AuditLogEntry":
        data = dict(record)
        data.pop("prev_entry_hash", None)
        data.pop("entry_hash", None)
        data.pop("entry_signature", None)
        data["created_at"] = parse_timestamp(str(data["created_at"]))
        data["reason_codes"] = tuple(data.get("reason_codes") or ())
        return cls(**data, **chain)
