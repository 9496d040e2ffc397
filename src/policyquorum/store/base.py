from __future__ import annotations

from datetime import datetime
from typing import ContextManager, Iterable, Iterator, Protocol

from ..signing import VerifyKey
from ..types import (
    AuditLogEntry,
    CommittedPolicy,
    PendingPolicy,
    PolicyDecision,
    PolicyStatus,
)


class StoreSession(Protocol):
    """One exclusive read-check-write unit against the policy store.

    Everything done through a session commits together or not at all,
    including audit entries.
    """

    def get_pending(self, policy_id: str) -> PendingPolicy | None:
        ...

    def insert_pending(self, policy: PendingPolicy) -> None:
        ...

    def set_request_data(self, policy_id: str, data: bytes, now: datetime) -> None:
        ...

    def set_status(self, policy_id: str, status: PolicyStatus, now: datetime) -> None:
        ...

    def get_decision(self, policy_id: str, voter_id: str) -> PolicyDecision | None:
        ...

    def insert_decision(self, decision: PolicyDecision) -> None:
        ...

    def delete_decision(self, policy_id: str, voter_id: str) -> bool:
        ...

    def tally(self, policy_id: str) -> tuple[int, int]:
        """Return (approval_count, rejection_count) from the decision set."""
        ...

    def upsert_committed(self, committed: CommittedPolicy) -> None:
        ...

    def append_audit(self, entry: AuditLogEntry) -> str:
        """Append a chained audit entry and return its hash."""
        ...


class PolicyStore(Protocol):
    """Durable storage for pending policies, decisions, committed policies and audit."""

    def session(self) -> ContextManager[StoreSession]:
        ...

    def get_pending(self, policy_id: str) -> PendingPolicy | None:
        ...

    def list_pending(self, statuses: Iterable[PolicyStatus] | None = None) -> list[PendingPolicy]:
        ...

    def list_decisions(self, policy_id: str) -> list[PolicyDecision]:
        ...

    def get_committed(self, role_id: str) -> CommittedPolicy | None:
        ...

    def list_audit(self, *, limit: int | None = None, offset: int | None = None) -> list[AuditLogEntry]:
        ...

    def iter_audit(self) -> Iterator[AuditLogEntry]:
        ...

    def verify_audit(self, *, public_key: VerifyKey | None = None) -> int:
        ...
