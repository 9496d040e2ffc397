"""Policy lifecycle manager.

Owns every state transition of a pending policy: creation, voting,
revocation, cancellation and commit.

Design notes:
- each mutation holds the per-id lock and one store session for the whole
  read-check-write sequence, so concurrent calls on one id never lose updates
- tallies are always recomputed from the decision set, never stored
- the signed request is only touched through the injected codec
- soft failures (approval removal, missing signature, extraction) are logged
  and recorded as reason codes; they never abort the transition unless
  ``strict_commit`` is set
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Callable, Iterable

from .codec.base import SignedRequest, SignedRequestCodec
from .errors import (
    CommitExtractionError,
    DuplicateVote,
    InvalidState,
    MalformedRequest,
    NoDecision,
    PolicyNotFound,
)
from .locks import KeyedLock
from .reason_codes import (
    APPROVAL_REMOVAL_FAILED,
    COMMIT_BELOW_THRESHOLD,
    EXTRACTION_FAILED_AT_COMMIT,
    SIGNATURE_MISSING_AT_COMMIT,
)
from .store.base import PolicyStore, StoreSession
from .types import (
    DEFAULT_APPROVAL_TYPE,
    DEFAULT_CONTRACT_TYPE,
    DEFAULT_EXECUTION_TYPE,
    AuditEvent,
    AuditLogEntry,
    CommitResult,
    CommittedPolicy,
    PendingPolicy,
    PolicyDecision,
    PolicyStatus,
    RevokeResult,
    VoteResult,
)

_logger = logging.getLogger(__name__)

# Errors a codec may raise for bytes it cannot interpret. CodecError is a ValueError.
_CODEC_ERRORS = (ValueError, TypeError)


def _require(name: str, value: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValueError(f"{name} must be a non-empty string")
    return value


class PolicyLifecycleManager:
    """State machine for multi-party approval of signed policy requests."""

    def __init__(
        self,
        *,
        store: PolicyStore,
        codec: SignedRequestCodec,
        strict_commit: bool = False,
        default_threshold: int = 1,
        locks: KeyedLock | None = None,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        if store is None:
            raise ValueError("store is required")
        if codec is None:
            raise ValueError("codec is required")
        if default_threshold < 1:
            raise ValueError("default_threshold must be >= 1")
        self.store = store
        self.codec = codec
        self.strict_commit = strict_commit
        self.default_threshold = default_threshold
        self._locks = locks if locks is not None else KeyedLock()
        self._now = now or (lambda: datetime.now(timezone.utc))

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def create(
        self,
        request_bytes: bytes,
        role_id: str,
        threshold: int | None = None,
        *,
        requester_id: str,
        requester_email: str | None = None,
        contract_type: str = DEFAULT_CONTRACT_TYPE,
        approval_type: str = DEFAULT_APPROVAL_TYPE,
        execution_type: str = DEFAULT_EXECUTION_TYPE,
    ) -> PendingPolicy:
        """Create a pending policy keyed by the request's unique id.

        Idempotent: submitting the same request again returns the existing
        record untouched.

        Raises:
            MalformedRequest: the bytes do not decode or are not initialized.
        """
        _require("role_id", role_id)
        _require("requester_id", requester_id)
        if threshold is None:
            threshold = self.default_threshold
        if isinstance(threshold, bool) or not isinstance(threshold, int) or threshold < 1:
            raise ValueError("threshold must be a positive integer")

        handle = self._decode(request_bytes)
        policy_id = self._unique_id(handle)

        with self._locks.hold(policy_id), self.store.session() as session:
            existing = session.get_pending(policy_id)
            if existing is not None:
                _logger.info("pending policy %s already exists; returning existing record", policy_id)
                return existing

            now = self._now()
            policy = PendingPolicy(
                id=policy_id,
                role_id=role_id,
                status=PolicyStatus.PENDING,
                threshold=threshold,
                requested_by=requester_id,
                requested_by_email=requester_email,
                policy_request_data=bytes(request_bytes),
                contract_type=contract_type,
                approval_type=approval_type,
                execution_type=execution_type,
                created_at=now,
                updated_at=now,
            )
            session.insert_pending(policy)
            session.append_audit(
                self._entry(
                    AuditEvent.CREATED,
                    policy,
                    actor_id=requester_id,
                    actor_email=requester_email,
                    details=f"created pending policy for role {role_id} (threshold {threshold})",
                )
            )
        _logger.info("created pending policy %s for role %s by %s", policy_id, role_id, requester_email)
        return policy

    def vote(
        self,
        policy_id: str,
        voter_id: str,
        voter_email: str | None,
        approve: bool,
        request_bytes: bytes | None = None,
    ) -> VoteResult:
        """Record one voter's decision and move to ``approved`` at quorum.

        Approvals must carry the re-signed request embedding the voter's
        share; it replaces the stored request bytes whether or not the
        threshold is reached. Rejections leave the request untouched.

        Raises (checked in this order):
            PolicyNotFound, InvalidState, DuplicateVote, MalformedRequest
        """
        _require("voter_id", voter_id)
        new_data: bytes | None = None
        request_error: MalformedRequest | None = None
        if approve:
            try:
                new_data = self._request_for(policy_id, request_bytes)
            except MalformedRequest as exc:
                request_error = exc

        with self._locks.hold(policy_id), self.store.session() as session:
            policy = self._load_mutable(session, policy_id)
            if session.get_decision(policy_id, voter_id) is not None:
                raise DuplicateVote(f"voter {voter_id} has already voted on policy {policy_id}")
            if request_error is not None:
                raise request_error

            now = self._now()
            if new_data is not None:
                session.set_request_data(policy_id, new_data, now)
            session.insert_decision(
                PolicyDecision(
                    policy_request_id=policy_id,
                    voter_id=voter_id,
                    voter_email=voter_email,
                    approved=approve,
                    timestamp=now,
                )
            )

            approvals, rejections = session.tally(policy_id)
            status = policy.status
            if status is PolicyStatus.PENDING and approvals >= policy.threshold:
                status = PolicyStatus.APPROVED
                session.set_status(policy_id, status, now)

            verb = "approved" if approve else "rejected"
            session.append_audit(
                self._entry(
                    AuditEvent.APPROVED if approve else AuditEvent.REJECTED,
                    policy,
                    actor_id=voter_id,
                    actor_email=voter_email,
                    status=status,
                    tally=(approvals, rejections),
                    details=f"{verb} ({approvals}/{policy.threshold} approvals)",
                )
            )

        _logger.info(
            "policy %s %s by %s (approvals %d/%d, status %s)",
            policy_id,
            verb,
            voter_email or voter_id,
            approvals,
            policy.threshold,
            status.value,
        )
        return VoteResult(
            policy_id=policy_id,
            approved=approve,
            status=status,
            approval_count=approvals,
            rejection_count=rejections,
            threshold=policy.threshold,
        )

    def vote_with_request(
        self,
        request_bytes: bytes,
        voter_id: str,
        voter_email: str | None = None,
        approve: bool = True,
    ) -> VoteResult:
        """Vote using a signed request; the policy id is taken from the request.

        A rejection only uses the request to find the policy and leaves the
        stored bytes untouched.
        """
        policy_id = self._unique_id(self._decode(request_bytes))
        return self.vote(policy_id, voter_id, voter_email, approve, request_bytes if approve else None)

    def revoke(self, policy_id: str, voter_id: str, voter_email: str | None = None) -> RevokeResult:
        """Withdraw a voter's decision.

        A revoked approval also has its signature share stripped from the
        stored request. If the share cannot be removed the decision is still
        deleted; the local tally stays authoritative for gating commit.

        Raises:
            PolicyNotFound, InvalidState, NoDecision
        """
        _require("voter_id", voter_id)
        with self._locks.hold(policy_id), self.store.session() as session:
            policy = self._load_mutable(session, policy_id)
            decision = session.get_decision(policy_id, voter_id)
            if decision is None:
                raise NoDecision(f"voter {voter_id} has no decision on policy {policy_id}")

            now = self._now()
            reason_codes: list[str] = []
            approval_removed: bool | None = None
            if decision.approved:
                approval_removed = self._strip_approval(session, policy, voter_id, now)
                if not approval_removed:
                    reason_codes.append(APPROVAL_REMOVAL_FAILED)

            session.delete_decision(policy_id, voter_id)
            approvals, rejections = session.tally(policy_id)
            status = policy.status
            if status is PolicyStatus.APPROVED and approvals < policy.threshold:
                status = PolicyStatus.PENDING
                session.set_status(policy_id, status, now)

            kind = "approval" if decision.approved else "rejection"
            session.append_audit(
                self._entry(
                    AuditEvent.REVOKED,
                    policy,
                    actor_id=voter_id,
                    actor_email=voter_email,
                    status=status,
                    tally=(approvals, rejections),
                    details=f"revoked {kind} ({approvals}/{policy.threshold} approvals)",
                    reason_codes=reason_codes,
                )
            )
            if status is not policy.status:
                session.append_audit(
                    self._entry(
                        AuditEvent.STATUS_CHANGED,
                        policy,
                        actor_id=voter_id,
                        actor_email=voter_email,
                        status=status,
                        tally=(approvals, rejections),
                        details=f"{policy.status.value} -> {status.value}",
                    )
                )

        if status is not policy.status:
            _logger.info(
                "policy %s back to %s (approvals %d/%d)",
                policy_id,
                status.value,
                approvals,
                policy.threshold,
            )
        _logger.info("policy %s %s revoked by %s", policy_id, kind, voter_email or voter_id)
        return RevokeResult(
            policy_id=policy_id,
            revoked_approval=decision.approved,
            approval_removed=approval_removed,
            status=status,
            approval_count=approvals,
            rejection_count=rejections,
            threshold=policy.threshold,
        )

    def cancel(self, policy_id: str, actor_id: str, actor_email: str | None = None) -> PendingPolicy:
        """Move a live policy to the terminal ``cancelled`` status."""
        _require("actor_id", actor_id)
        with self._locks.hold(policy_id), self.store.session() as session:
            policy = self._load_mutable(session, policy_id)
            now = self._now()
            session.set_status(policy_id, PolicyStatus.CANCELLED, now)
            session.append_audit(
                self._entry(
                    AuditEvent.CANCELLED,
                    policy,
                    actor_id=actor_id,
                    actor_email=actor_email,
                    status=PolicyStatus.CANCELLED,
                    details=f"cancelled from {policy.status.value}",
                )
            )
        _logger.info("policy %s cancelled by %s", policy_id, actor_email or actor_id)
        return policy.model_copy(update={"status": PolicyStatus.CANCELLED, "updated_at": now})

    def commit(
        self,
        policy_id: str,
        actor_id: str,
        actor_email: str | None = None,
        signature: bytes | None = None,
    ) -> CommitResult:
        """Extract the requested policy, attach the external signature and publish it.

        Commit is authoritative once called: it does not require status
        ``approved``, but a commit below threshold is logged and recorded.
        When extraction fails the policy still becomes ``committed`` and no
        artifact is written, unless ``strict_commit`` is set, in which case
        nothing changes and CommitExtractionError is raised.

        Raises:
            PolicyNotFound, InvalidState, CommitExtractionError
        """
        _require("actor_id", actor_id)
        with self._locks.hold(policy_id), self.store.session() as session:
            policy = self._load_mutable(session, policy_id)
            now = self._now()
            reason_codes: list[str] = []

            if policy.approval_count < policy.threshold:
                _logger.warning(
                    "committing policy %s below threshold (approvals %d/%d)",
                    policy_id,
                    policy.approval_count,
                    policy.threshold,
                )
                reason_codes.append(COMMIT_BELOW_THRESHOLD)

            committed: CommittedPolicy | None = None
            policy_data = self._extract_policy(policy, signature, reason_codes)
            if policy_data is not None:
                committed = CommittedPolicy(
                    role_id=policy.role_id,
                    policy_data=policy_data,
                    contract_type=policy.contract_type,
                    approval_type=policy.approval_type,
                    execution_type=policy.execution_type,
                    threshold=policy.threshold,
                    source_policy_id=policy_id,
                    committed_by=actor_email or actor_id,
                    committed_at=now,
                )
                session.upsert_committed(committed)

            session.set_status(policy_id, PolicyStatus.COMMITTED, now)
            session.append_audit(
                self._entry(
                    AuditEvent.COMMITTED,
                    policy,
                    actor_id=actor_id,
                    actor_email=actor_email,
                    status=PolicyStatus.COMMITTED,
                    details=(
                        f"committed policy for role {policy.role_id} ({len(policy_data)} bytes)"
                        if policy_data is not None
                        else f"committed without a policy artifact for role {policy.role_id}"
                    ),
                    reason_codes=reason_codes,
                )
            )

        _logger.info("policy %s committed by %s", policy_id, actor_email or actor_id)
        final = policy.model_copy(update={"status": PolicyStatus.COMMITTED, "updated_at": now})
        return CommitResult(policy=final, committed=committed, reason_codes=tuple(reason_codes))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, policy_id: str) -> PendingPolicy:
        policy = self.store.get_pending(policy_id)
        if policy is None:
            raise PolicyNotFound(f"policy {policy_id} not found")
        return policy

    def get_with_decisions(self, policy_id: str) -> tuple[PendingPolicy, list[PolicyDecision]]:
        policy = self.get(policy_id)
        return policy, self.store.list_decisions(policy_id)

    def list_pending(self, statuses: Iterable[PolicyStatus] | None = None) -> list[PendingPolicy]:
        return self.store.list_pending(statuses)

    def audit_log(self, *, limit: int | None = None, offset: int | None = None) -> list[AuditLogEntry]:
        return self.store.list_audit(limit=limit, offset=offset)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _decode(self, data: bytes) -> SignedRequest:
        if not isinstance(data, (bytes, bytearray)) or not data:
            raise MalformedRequest("policy request is empty")
        try:
            handle = self.codec.decode(bytes(data))
        except _CODEC_ERRORS as exc:
            raise MalformedRequest(f"policy request could not be decoded: {exc}") from exc
        if not handle.is_initialized():
            raise MalformedRequest("policy request has not been initialized")
        return handle

    def _unique_id(self, handle: SignedRequest) -> str:
        try:
            policy_id = handle.unique_id()
        except _CODEC_ERRORS as exc:
            raise MalformedRequest(f"policy request has no unique id: {exc}") from exc
        if not isinstance(policy_id, str) or not policy_id.strip():
            raise MalformedRequest("policy request has no unique id")
        return policy_id

    def _request_for(self, policy_id: str, request_bytes: bytes | None) -> bytes:
        if not request_bytes:
            raise MalformedRequest("approval requires the re-signed policy request")
        if self._unique_id(self._decode(request_bytes)) != policy_id:
            raise MalformedRequest("signed request does not belong to this policy")
        return bytes(request_bytes)

    def _load_mutable(self, session: StoreSession, policy_id: str) -> PendingPolicy:
        policy = session.get_pending(policy_id)
        if policy is None:
            raise PolicyNotFound(f"policy {policy_id} not found")
        if policy.status.is_terminal:
            raise InvalidState(
                f"policy {policy_id} is {policy.status.value}",
                status=policy.status.value,
                approval_count=policy.approval_count,
                threshold=policy.threshold,
            )
        return policy

    def _strip_approval(
        self, session: StoreSession, policy: PendingPolicy, voter_id: str, now: datetime
    ) -> bool:
        try:
            handle = self.codec.decode(policy.policy_request_data)
            if not handle.remove_approval(voter_id):
                _logger.warning(
                    "could not remove approval of %s from request for policy %s", voter_id, policy.id
                )
                return False
            updated = handle.encode()
        except Exception as exc:  # any codec failure leaves the blob untouched
            _logger.warning(
                "could not decode request for approval removal on policy %s: %s", policy.id, exc
            )
            return False
        session.set_request_data(policy.id, updated, now)
        _logger.info("removed approval of %s from request for policy %s", voter_id, policy.id)
        return True

    def _extract_policy(
        self, policy: PendingPolicy, signature: bytes | None, reason_codes: list[str]
    ) -> bytes | None:
        try:
            requested = self.codec.decode(policy.policy_request_data).requested_policy()
            if signature:
                requested.attach_signature(signature)
                _logger.info("attached signature to policy %s (%d bytes)", policy.id, len(signature))
            else:
                _logger.warning("no signature provided for commit of policy %s", policy.id)
                reason_codes.append(SIGNATURE_MISSING_AT_COMMIT)
            return requested.to_bytes()
        except Exception as exc:
            if self.strict_commit:
                raise CommitExtractionError(
                    f"could not extract policy payload for {policy.id}: {exc}"
                ) from exc
            _logger.warning("failed to extract policy bytes for %s: %s", policy.id, exc)
            reason_codes.append(EXTRACTION_FAILED_AT_COMMIT)
            return None

    def _entry(
        self,
        event: AuditEvent,
        policy: PendingPolicy,
        *,
        actor_id: str,
        actor_email: str | None,
        status: PolicyStatus | None = None,
        tally: tuple[int, int] | None = None,
        details: str = "",
        reason_codes: Iterable[str] = (),
    ) -> AuditLogEntry:
        approvals, rejections = (
            tally if tally is not None else (policy.approval_count, policy.rejection_count)
        )
        return AuditLogEntry(
            event=event,
            policy_id=policy.id,
            role_id=policy.role_id,
            actor_id=actor_id,
            actor_email=actor_email,
            policy_status=status or policy.status,
            approval_count=approvals,
            rejection_count=rejections,
            threshold=policy.threshold,
            details=details,
            reason_codes=tuple(reason_codes),
            created_at=self._now(),
        )
