"""Events engine package exposing the envelope codec and consumer utilities."""

from .schemas import EnvelopeDecodeError, EventEnvelope, EventType, decode_envelope, encode_envelope  # noqa: F401
