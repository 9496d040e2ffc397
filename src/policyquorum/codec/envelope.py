"""Reference signed-request codec.

A canonical-JSON envelope holding the requested policy and a map of voter id
to Ed25519 signature share over the request's unique id. It is used for local
deployments and tests; production deployments inject the signing network's
own codec through the same protocol.
"""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass, field, replace
from typing import Any, Mapping

from ..canonical import CanonicalizationError, canonical_bytes, sha256_hex
from ..signing import SigningKey, VerifyKey, sign_text, verify_text
from ..types import DEFAULT_APPROVAL_TYPE, DEFAULT_CONTRACT_TYPE, DEFAULT_EXECUTION_TYPE
from .base import CodecError

ENVELOPE_FORMAT = "policyquorum.envelope/1"


@dataclass
class EnvelopePolicy:
    role_id: str
    contract_type: str = DEFAULT_CONTRACT_TYPE
    approval_type: str = DEFAULT_APPROVAL_TYPE
    execution_type: str = DEFAULT_EXECUTION_TYPE
    threshold: int = 1
    params: dict[str, Any] = field(default_factory=dict)
    signature: bytes | None = None

    def attach_signature(self, signature: bytes) -> None:
        self.signature = bytes(signature)

    def body(self) -> dict[str, Any]:
        """Unsigned payload; this is what the unique id is derived from."""
        return {
            "role_id": self.role_id,
            "contract_type": self.contract_type,
            "approval_type": self.approval_type,
            "execution_type": self.execution_type,
            "threshold": self.threshold,
            "params": self.params,
        }

    def to_bytes(self) -> bytes:
        payload = self.body()
        payload["signature"] = (
            base64.b64encode(self.signature).decode("ascii") if self.signature is not None else None
        )
        return canonical_bytes(payload)

    @classmethod
    def from_bytes(cls, data: bytes) -> "EnvelopePolicy":
        """Parse serialized policy bytes, e.g. as served by the resolver."""
        payload = _load_json(data)
        policy = _policy_from_dict(payload)
        signature = payload.get("signature")
        if signature is not None:
            policy.signature = _b64decode(signature, "signature")
        return policy


class EnvelopeRequest:
    """Decoded envelope handle implementing the SignedRequest protocol."""

    def __init__(
        self, policy: EnvelopePolicy | None, approvals: Mapping[str, str] | None = None
    ) -> None:
        self._policy = policy
        self._approvals: dict[str, str] = dict(approvals or {})

    @classmethod
    def new(cls, role_id: str, **kwargs: Any) -> "EnvelopeRequest":
        return cls(EnvelopePolicy(role_id=role_id, **kwargs))

    @property
    def approvals(self) -> dict[str, str]:
        return dict(self._approvals)

    def is_initialized(self) -> bool:
        return self._policy is not None and bool(self._policy.role_id.strip())

    def unique_id(self) -> str:
        if self._policy is None:
            raise CodecError("request has no policy")
        return sha256_hex(self._policy.body())

    def requested_policy(self) -> EnvelopePolicy:
        if self._policy is None:
            raise CodecError("request has no policy")
        # a copy, so attaching a signature never mutates the request itself
        return replace(self._policy, params=dict(self._policy.params))

    def add_approval(self, voter_id: str, private_key: SigningKey) -> None:
        """Embed the voter's signature share. Client side of a vote."""
        self._approvals[voter_id] = sign_text(private_key, self.unique_id())

    def remove_approval(self, voter_id: str) -> bool:
        if voter_id not in self._approvals:
            return False
        del self._approvals[voter_id]
        return True

    def verify_approvals(self, public_keys: Mapping[str, VerifyKey]) -> list[str]:
        """Return voter ids whose shares verify against the given keys."""
        unique_id = self.unique_id()
        return sorted(
            voter_id
            for voter_id, share in self._approvals.items()
            if voter_id in public_keys and verify_text(public_keys[voter_id], unique_id, share)
        )

    def encode(self) -> bytes:
        try:
            return canonical_bytes(
                {
                    "format": ENVELOPE_FORMAT,
                    "policy": self._policy.body() if self._policy is not None else None,
                    "approvals": self._approvals,
                }
            )
        except CanonicalizationError as exc:
            raise CodecError(str(exc)) from exc


class EnvelopeCodec:
    """SignedRequestCodec for envelope bytes."""

    def decode(self, data: bytes) -> EnvelopeRequest:
        payload = _load_json(data)
        if payload.get("format") != ENVELOPE_FORMAT:
            raise CodecError("unknown envelope format")
        raw_policy = payload.get("policy")
        policy = None
        if raw_policy is not None:
            if not isinstance(raw_policy, dict):
                raise CodecError("policy must be an object")
            policy = _policy_from_dict(raw_policy)
        approvals = payload.get("approvals") or {}
        if not isinstance(approvals, dict) or not all(
            isinstance(k, str) and isinstance(v, str) for k, v in approvals.items()
        ):
            raise CodecError("approvals must map voter ids to signatures")
        return EnvelopeRequest(policy, approvals)


def _load_json(data: bytes) -> dict[str, Any]:
    if not isinstance(data, (bytes, bytearray)) or not data:
        raise CodecError("request bytes are empty")
    try:
        payload = json.loads(bytes(data).decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise CodecError("request bytes are not valid JSON") from exc
    if not isinstance(payload, dict):
        raise CodecError("request must be a JSON object")
    return payload


def _policy_from_dict(raw: dict[str, Any]) -> EnvelopePolicy:
    role_id = raw.get("role_id")
    threshold = raw.get("threshold", 1)
    params = raw.get("params") or {}
    if not isinstance(role_id, str):
        raise CodecError("role_id must be a string")
    if not isinstance(threshold, int) or isinstance(threshold, bool) or threshold < 1:
        raise CodecError("threshold must be a positive integer")
    if not isinstance(params, dict):
        raise CodecError("params must be an object")
    return EnvelopePolicy(
        role_id=role_id,
        contract_type=str(raw.get("contract_type", DEFAULT_CONTRACT_TYPE)),
        approval_type=str(raw.get("approval_type", DEFAULT_APPROVAL_TYPE)),
        execution_type=str(raw.get("execution_type", DEFAULT_EXECUTION_TYPE)),
        threshold=threshold,
        params=params,
    )


def _b64decode(value: Any, name: str) -> bytes:
    if not isinstance(value, str):
        raise CodecError(f"{name} must be base64 text")
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise CodecError(f"{name} is not valid base64") from exc
