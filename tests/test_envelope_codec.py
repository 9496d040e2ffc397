from __future__ import annotations

import json

import pytest

from policyquorum.codec import (
    CodecError,
    EnvelopeCodec,
    EnvelopePolicy,
    EnvelopeRequest,
    RequestedPolicy,
    SignedRequest,
    SignedRequestCodec,
)
from policyquorum.signing import CRYPTO_AVAILABLE, generate_keypair, load_private_key, load_public_key


def test_envelope_types_satisfy_codec_protocols() -> None:
    request = EnvelopeRequest.new("ssh:root")
    assert isinstance(EnvelopeCodec(), SignedRequestCodec)
    assert isinstance(request, SignedRequest)
    assert isinstance(request.requested_policy(), RequestedPolicy)


def test_unique_id_ignores_approvals() -> None:
    request = EnvelopeRequest.new("ssh:root", params={"principals": ["root"]})
    approved = EnvelopeRequest(request.requested_policy(), {"alice": "share"})

    assert request.unique_id() == approved.unique_id()
    assert request.unique_id() != EnvelopeRequest.new("ssh:deploy").unique_id()


def test_decode_round_trips_encoded_request() -> None:
    request = EnvelopeRequest(EnvelopePolicy(role_id="ssh:root", threshold=2), {"alice": "share"})

    decoded = EnvelopeCodec().decode(request.encode())

    assert decoded.unique_id() == request.unique_id()
    assert decoded.approvals == {"alice": "share"}
    assert decoded.is_initialized()


def test_remove_approval() -> None:
    request = EnvelopeRequest(EnvelopePolicy(role_id="ssh:root"), {"alice": "a", "bob": "b"})

    assert request.remove_approval("alice") is True
    assert request.remove_approval("alice") is False
    assert EnvelopeCodec().decode(request.encode()).approvals == {"bob": "b"}


def test_requested_policy_is_a_copy() -> None:
    request = EnvelopeRequest.new("ssh:root")
    policy = request.requested_policy()
    policy.attach_signature(b"sig")

    assert request.requested_policy().signature is None
    parsed = EnvelopePolicy.from_bytes(policy.to_bytes())
    assert parsed.signature == b"sig"
    assert parsed.body() == request.requested_policy().body()


@pytest.mark.parametrize(
    "payload",
    [
        b"",
        b"\xff\xfe",
        b"[]",
        json.dumps({"format": "unknown"}).encode(),
        json.dumps({"format": "policyquorum.envelope/1", "policy": "x"}).encode(),
        json.dumps(
            {"format": "policyquorum.envelope/1", "policy": {"role_id": "r", "threshold": 0}}
        ).encode(),
        json.dumps(
            {"format": "policyquorum.envelope/1", "policy": {"role_id": "r"}, "approvals": {"a": 1}}
        ).encode(),
    ],
)
def test_decode_rejects_malformed_bytes(payload: bytes) -> None:
    with pytest.raises(CodecError):
        EnvelopeCodec().decode(payload)


def test_request_without_policy_is_not_initialized() -> None:
    decoded = EnvelopeCodec().decode(EnvelopeRequest(None).encode())

    assert decoded.is_initialized() is False
    with pytest.raises(CodecError):
        decoded.unique_id()


@pytest.mark.skipif(not CRYPTO_AVAILABLE, reason="cryptography not installed")
def test_signature_shares_verify_against_voter_keys() -> None:
    alice_private, alice_public = generate_keypair()
    _, bob_public = generate_keypair()
    request = EnvelopeRequest.new("ssh:root")
    request.add_approval("alice", load_private_key(alice_private))
    request.add_approval("bob", load_private_key(alice_private))

    verified = request.verify_approvals(
        {"alice": load_public_key(alice_public), "bob": load_public_key(bob_public)}
    )

    assert verified == ["alice"]
