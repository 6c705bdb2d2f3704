"""Adapter-level constants shared across modules."""
from __future__ import annotations

from enum import Enum


class AckMode(str, Enum):
    """When a delivery is acknowledged relative to decoding its body.

    ACK_FIRST acks every delivery before decoding it, then rejects it when the
    body does not decode. DECODE_FIRST decodes first and then either acks or
    rejects, never both.
    """

    ACK_FIRST = "ack_first"
    DECODE_FIRST = "decode_first"


class DeliveryOutcome(str, Enum):
    DISPATCHED = "DISPATCHED"
    REJECTED = "REJECTED"
    ABANDONED = "ABANDONED"
    SKIPPED = "SKIPPED"


UPDATE_TYPE_SET = "SET"
