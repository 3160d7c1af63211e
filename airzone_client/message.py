"""
Wire Protocol for the controller server link.

Outbound text frames:
    "alive?"          liveness probe
    "d" + 6 x "0"/"1"  air lane state, lane 0 first

Inbound frames:
    "alive"           liveness acknowledgement (text)
    <bytes>           LED state, passed on without interpretation
"""

import logging
from dataclasses import dataclass
from typing import Optional, Sequence, Union

from .lane_control import LANE_COUNT

logger = logging.getLogger(__name__)

LIVENESS_PROBE = "alive?"
LIVENESS_ACK = "alive"
LANE_FRAME_PREFIX = "d"


@dataclass(frozen=True)
class LivenessAck:
    """Server answered a liveness probe."""


@dataclass(frozen=True)
class LedFrame:
    """Opaque LED state pushed by the server."""
    data: bytes


InboundFrame = Union[LivenessAck, LedFrame]


def encode_lane_frame(lanes: Sequence[int]) -> str:
    """
    Serialize a lane vector to an outbound text frame.

    Args:
        lanes: Exactly LANE_COUNT values, each 0 or 1

    Returns:
        Frame such as "d010001"
    """
    if len(lanes) != LANE_COUNT:
        raise ValueError(f"Lane vector must have {LANE_COUNT} entries, got {len(lanes)}")
    if any(v not in (0, 1) for v in lanes):
        raise ValueError(f"Lane values must be 0 or 1, got {list(lanes)}")
    return LANE_FRAME_PREFIX + "".join(str(int(v)) for v in lanes)


def parse_inbound(message: Union[str, bytes]) -> Optional[InboundFrame]:
    """
    Classify a message received from the server.

    Returns:
        LivenessAck, LedFrame, or None for text the client does not use
    """
    if isinstance(message, (bytes, bytearray, memoryview)):
        return LedFrame(bytes(message))
    if message == LIVENESS_ACK:
        return LivenessAck()
    logger.debug(f"Ignoring unknown text frame: {message!r}")
    return None
