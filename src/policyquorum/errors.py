"""Exception types for policyquorum."""

from __future__ import annotations


class PolicyQuorumError(Exception):
    """Base exception for all policyquorum errors."""

    code = "error"


class MalformedRequest(PolicyQuorumError):
    """Raised when a signed request fails to decode or is not initialized."""

    code = "malformed_request"


class PolicyNotFound(PolicyQuorumError):
    """Raised when a pending or committed policy does not exist."""

    code = "not_found"


NotFound = PolicyNotFound


class InvalidState(PolicyQuorumError):
    """Raised when an operation is not permitted in the policy's current status.

    Carries the current status and tally so callers can decide what to do next.
    """

    code = "invalid_state"

    def __init__(
        self,
        message: str,
        *,
        status: str | None = None,
        approval_count: int | None = None,
        threshold: int | None = None,
    ) -> None:
        super().__init__(message)
        self.status = status
        self.approval_count = approval_count
        self.threshold = threshold


class DuplicateVote(PolicyQuorumError):
    """Raised when a voter already holds a decision on a policy."""

    code = "duplicate_vote"


class NoDecision(PolicyQuorumError):
    """Raised when a voter tries to revoke a decision they never cast."""

    code = "no_decision"


class CommitExtractionError(PolicyQuorumError):
    """Raised by strict commits when the policy payload cannot be extracted."""

    code = "extraction_failed"


class AuditLogError(PolicyQuorumError):
    """Raised when audit logging fails."""

    code = "audit_failed"


class StoreError(PolicyQuorumError):
    """Raised when the policy store cannot complete an operation."""

    code = "store_failed"


def sanitize_exception(exc: Exception) -> str:
    """Return a safe error message without filesystem paths."""
    if isinstance(exc, OSError):
        parts: list[str] = [exc.__class__.__name__]
        if exc.errno is not None:
            parts.append(f"errno={exc.errno}")
        if exc.strerror:
            parts.append(exc.strerror)
        return " ".join(parts).strip()
    return str(exc)
