"""Capability contract for the opaque signed policy request.

The lifecycle manager never interprets request bytes itself. It relies on an
injected codec that can decode the blob and expose exactly these operations.

Codecs should report malformed input with ``CodecError``. At create and vote
time that becomes a ``MalformedRequest``. During approval removal and payload
extraction any exception raised by the codec is treated as a soft failure and
recorded as a reason code (unless strict commit is enabled).
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable


class CodecError(ValueError):
    """Raised when request bytes cannot be decoded."""


@runtime_checkable
class RequestedPolicy(Protocol):
    """Policy payload carried inside a signed request."""

    def attach_signature(self, signature: bytes) -> None:
        """Attach the external quorum signature before serialization."""
        ...

    def to_bytes(self) -> bytes:
        """Serialize the (possibly signed) payload."""
        ...


@runtime_checkable
class SignedRequest(Protocol):
    """Decoded handle over a signed policy request."""

    def is_initialized(self) -> bool:
        ...

    def unique_id(self) -> str:
        """Stable identifier; unchanged as signature shares are added or removed."""
        ...

    def requested_policy(self) -> RequestedPolicy:
        ...

    def remove_approval(self, voter_id: str) -> bool:
        """Strip a voter's signature share. Returns False if it could not be removed."""
        ...

    def encode(self) -> bytes:
        ...


@runtime_checkable
class SignedRequestCodec(Protocol):
    """Decoder for signed request bytes."""

    def decode(self, data: bytes) -> SignedRequest:
        """Decode bytes into a handle. Raises CodecError on malformed input."""
        ...
