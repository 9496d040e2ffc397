"""policyquorum public API."""

from .codec import (
    CodecError,
    EnvelopeCodec,
    EnvelopePolicy,
    EnvelopeRequest,
    RequestedPolicy,
    SignedRequest,
    SignedRequestCodec,
)
from .config import Settings
from .errors import (
    AuditLogError,
    CommitExtractionError,
    DuplicateVote,
    InvalidState,
    MalformedRequest,
    NoDecision,
    NotFound,
    PolicyNotFound,
    PolicyQuorumError,
    StoreError,
)
from .lifecycle import PolicyLifecycleManager
from .locks import KeyedLock
from .resolver import CommittedPolicyResolver, ssh_role_id
from .store import PolicyStore, SQLitePolicyStore, StoreSession
from .types import (
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

__all__ = (
    # Lifecycle
    "PolicyLifecycleManager",
    "CommittedPolicyResolver",
    "ssh_role_id",
    "KeyedLock",
    "Settings",
    # Types
    "PolicyStatus",
    "PendingPolicy",
    "PolicyDecision",
    "CommittedPolicy",
    "VoteResult",
    "RevokeResult",
    "CommitResult",
    "AuditEvent",
    "AuditLogEntry",
    # Store
    "PolicyStore",
    "StoreSession",
    "SQLitePolicyStore",
    # Codec
    "SignedRequest",
    "SignedRequestCodec",
    "RequestedPolicy",
    "CodecError",
    "EnvelopeCodec",
    "EnvelopePolicy",
    "EnvelopeRequest",
    # Errors
    "PolicyQuorumError",
    "MalformedRequest",
    "PolicyNotFound",
    "NotFound",
    "InvalidState",
    "DuplicateVote",
    "NoDecision",
    "CommitExtractionError",
    "AuditLogError",
    "StoreError",
)
