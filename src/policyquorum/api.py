"""HTTP API for policy approval and committed policy lookup.

Identity comes from the fronting identity provider as request headers
(X-User-Id, X-User-Email, X-User-Role). Signed requests, signatures and
policy bytes travel as base64 text.
"""

from __future__ import annotations

import base64
import binascii
import logging
from dataclasses import dataclass
from typing import Any

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .codec.base import SignedRequestCodec
from .codec.envelope import EnvelopeCodec
from .config import Settings
from .errors import (
    AuditLogError,
    CommitExtractionError,
    DuplicateVote,
    InvalidState,
    MalformedRequest,
    NoDecision,
    PolicyNotFound,
    PolicyQuorumError,
    StoreError,
)
from .lifecycle import PolicyLifecycleManager
from .resolver import CommittedPolicyResolver
from .signing import load_private_key
from .store.sqlite import SQLitePolicyStore
from .types import CommittedPolicy, PendingPolicy, PolicyStatus

_logger = logging.getLogger(__name__)

ADMIN_ROLE = "admin"

_ERROR_STATUS: dict[type[PolicyQuorumError], int] = {
    MalformedRequest: 400,
    PolicyNotFound: 404,
    InvalidState: 409,
    DuplicateVote: 409,
    NoDecision: 409,
    CommitExtractionError: 422,
    AuditLogError: 500,
    StoreError: 500,
}


# ---------------------------------------------------------------------------
# Identity
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Actor:
    user_id: str
    email: str | None
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE


def get_actor(
    x_user_id: str | None = Header(default=None, alias="X-User-Id"),
    x_user_email: str | None = Header(default=None, alias="X-User-Email"),
    x_user_role: str = Header(default="", alias="X-User-Role"),
) -> Actor:
    """Extract the caller identity. Fail-closed if missing."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="authentication required")
    return Actor(
        user_id=x_user_id.strip(),
        email=(x_user_email or "").strip() or None,
        role=x_user_role.strip().lower(),
    )


def require_admin(actor: Actor = Depends(get_actor)) -> Actor:
    if not actor.is_admin:
        raise HTTPException(status_code=403, detail="admin privileges required")
    return actor


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------


class CreatePolicyBody(BaseModel):
    policy_request: str = Field(..., description="Base64 signed policy request")
    role_id: str = Field(..., min_length=1)
    threshold: int | None = Field(default=None, ge=1)


class ApproveBody(BaseModel):
    policy_request: str = Field(..., description="Base64 request re-signed by the voter")
    rejected: bool = Field(default=False, description="Record a rejection instead of an approval")


class VoteBody(BaseModel):
    approve: bool
    policy_request: str | None = Field(default=None, description="Required when approving")


class CommitBody(BaseModel):
    signature: str | None = Field(default=None, description="Base64 external quorum signature")


# ---------------------------------------------------------------------------
# Serialization helpers
# ---------------------------------------------------------------------------


def _b64decode(value: str, name: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise MalformedRequest(f"{name} is not valid base64") from exc


def _b64encode(value: bytes | None) -> str | None:
    return base64.b64encode(value).decode("ascii") if value is not None else None


def _policy_json(policy: PendingPolicy) -> dict[str, Any]:
    data = policy.model_dump(mode="json", exclude={"policy_request_data"})
    data["policy_request_data"] = _b64encode(policy.policy_request_data)
    data["quorum_reached"] = policy.quorum_reached
    return data


def _committed_json(policy: CommittedPolicy) -> dict[str, Any]:
    data = policy.model_dump(mode="json", exclude={"policy_data"})
    data["policy_data"] = _b64encode(policy.policy_data)
    return data


def _error_body(exc: PolicyQuorumError) -> dict[str, Any]:
    body: dict[str, Any] = {"error": str(exc), "code": exc.code}
    if isinstance(exc, InvalidState):
        body.update(
            status=exc.status,
            approval_count=exc.approval_count,
            threshold=exc.threshold,
        )
    return body


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------


def create_app(manager: PolicyLifecycleManager, resolver: CommittedPolicyResolver) -> FastAPI:
    app = FastAPI(title="policyquorum", version="0.1.0")
    app.state.manager = manager
    app.state.resolver = resolver

    @app.exception_handler(PolicyQuorumError)
    async def _handle_policy_error(request: Request, exc: PolicyQuorumError) -> JSONResponse:
        status_code = next(
            (code for kind, code in _ERROR_STATUS.items() if isinstance(exc, kind)), 500
        )
        if status_code >= 500:
            _logger.error("%s %s failed: %s", request.method, request.url.path, exc)
        return JSONResponse(status_code=status_code, content=_error_body(exc))

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    # -- admin: pending policies ------------------------------------------

    @app.post("/api/admin/ssh-policies/pending")
    def create_pending(body: CreatePolicyBody, actor: Actor = Depends(require_admin)) -> dict[str, Any]:
        policy = manager.create(
            _b64decode(body.policy_request, "policy_request"),
            body.role_id,
            body.threshold,
            requester_id=actor.user_id,
            requester_email=actor.email,
        )
        return {"success": True, "policy": _policy_json(policy)}

    @app.get("/api/admin/ssh-policies/pending")
    def list_pending(
        status: list[PolicyStatus] | None = Query(default=None),
        actor: Actor = Depends(require_admin),
    ) -> dict[str, Any]:
        return {"policies": [_policy_json(p) for p in manager.list_pending(status)]}

    @app.post("/api/admin/ssh-policies/pending/approve")
    def approve_with_request(body: ApproveBody, actor: Actor = Depends(require_admin)) -> dict[str, Any]:
        result = manager.vote_with_request(
            _b64decode(body.policy_request, "policy_request"),
            actor.user_id,
            actor.email,
            approve=not body.rejected,
        )
        return {"success": True, "result": result.model_dump(mode="json")}

    @app.get("/api/admin/ssh-policies/pending/{policy_id}")
    def get_pending(policy_id: str, actor: Actor = Depends(require_admin)) -> dict[str, Any]:
        policy, decisions = manager.get_with_decisions(policy_id)
        return {
            "policy": _policy_json(policy),
            "decisions": [d.model_dump(mode="json") for d in decisions],
        }

    @app.post("/api/admin/ssh-policies/pending/{policy_id}/vote")
    def vote(policy_id: str, body: VoteBody, actor: Actor = Depends(require_admin)) -> dict[str, Any]:
        request_bytes = (
            _b64decode(body.policy_request, "policy_request") if body.policy_request else None
        )
        result = manager.vote(policy_id, actor.user_id, actor.email, body.approve, request_bytes)
        return {"success": True, "result": result.model_dump(mode="json")}

    @app.post("/api/admin/ssh-policies/pending/{policy_id}/reject")
    def reject(policy_id: str, actor: Actor = Depends(require_admin)) -> dict[str, Any]:
        result = manager.vote(policy_id, actor.user_id, actor.email, False)
        return {"success": True, "result": result.model_dump(mode="json")}

    @app.post("/api/admin/ssh-policies/pending/{policy_id}/revoke")
    def revoke(policy_id: str, actor: Actor = Depends(require_admin)) -> dict[str, Any]:
        result = manager.revoke(policy_id, actor.user_id, actor.email)
        return {"success": True, "result": result.model_dump(mode="json")}

    @app.post("/api/admin/ssh-policies/pending/{policy_id}/cancel")
    def cancel(policy_id: str, actor: Actor = Depends(require_admin)) -> dict[str, Any]:
        policy = manager.cancel(policy_id, actor.user_id, actor.email)
        return {"success": True, "policy": _policy_json(policy)}

    @app.post("/api/admin/ssh-policies/pending/{policy_id}/commit")
    def commit(
        policy_id: str,
        body: CommitBody | None = None,
        actor: Actor = Depends(require_admin),
    ) -> dict[str, Any]:
        signature = (
            _b64decode(body.signature, "signature") if body is not None and body.signature else None
        )
        result = manager.commit(policy_id, actor.user_id, actor.email, signature)
        return {
            "success": True,
            "policy": _policy_json(result.policy),
            "committed": _committed_json(result.committed) if result.committed is not None else None,
            "warnings": list(result.reason_codes),
        }

    @app.get("/api/admin/ssh-policies/logs")
    def logs(
        limit: int = Query(default=100, ge=1, le=1000),
        offset: int = Query(default=0, ge=0),
        actor: Actor = Depends(require_admin),
    ) -> dict[str, Any]:
        entries = manager.audit_log(limit=limit, offset=offset)
        return {"logs": [entry.model_dump(mode="json") for entry in entries]}

    # -- committed policy lookup ------------------------------------------

    @app.get("/api/ssh-policies/committed/{role_id}")
    def committed_by_role(role_id: str, actor: Actor = Depends(get_actor)) -> dict[str, Any]:
        policy = resolver.get_by_role(role_id)
        return {"role_id": policy.role_id, "policy_data": _b64encode(policy.policy_data)}

    @app.get("/api/ssh-policies/for-ssh-user/{ssh_user}")
    def committed_for_ssh_user(ssh_user: str, actor: Actor = Depends(get_actor)) -> dict[str, Any]:
        policy = resolver.get_for_ssh_user(ssh_user)
        return {
            "ssh_user": ssh_user,
            "role_id": policy.role_id,
            "policy_data": _b64encode(policy.policy_data),
        }

    return app


def app_from_settings(
    settings: Settings | None = None, codec: SignedRequestCodec | None = None
) -> FastAPI:
    """Wire store, manager and resolver from settings."""
    settings = settings or Settings.from_env()
    signing_key = None
    if settings.audit_signing_key is not None:
        signing_key = load_private_key(settings.audit_signing_key.read_bytes())
    store = SQLitePolicyStore(settings.db_path, signing_key=signing_key)
    manager = PolicyLifecycleManager(
        store=store,
        codec=codec or EnvelopeCodec(),
        strict_commit=settings.strict_commit,
        default_threshold=settings.default_threshold,
    )
    return create_app(manager, CommittedPolicyResolver(store))
