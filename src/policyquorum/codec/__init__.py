"""Signed request codecs."""

from .base import CodecError, RequestedPolicy, SignedRequest, SignedRequestCodec
from .envelope import EnvelopeCodec, EnvelopePolicy, EnvelopeRequest

__all__ = (
    "CodecError",
    "RequestedPolicy",
    "SignedRequest",
    "SignedRequestCodec",
    "EnvelopeCodec",
    "EnvelopePolicy",
    "EnvelopeRequest",
)
