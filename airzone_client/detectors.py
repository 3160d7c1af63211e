"""
Detector Adapters - Turn hand detector output into HandSamples.

Each supported detector backend gets one small adapter; everything after
the adapter (zones, lanes, link) is shared.
"""

import logging
from typing import Any, Callable, List, Optional, Tuple

import numpy as np

from .lane_control import MAX_HANDS, HandSample

logger = logging.getLogger(__name__)

# ============================================================================
# MediaPipe Landmark Indices
# ============================================================================

WRIST = 0
MIDDLE_MCP = 9

# Landmarks averaged to approximate the hand centre
CENTER_LANDMARKS = (WRIST, MIDDLE_MCP)


# ============================================================================
# Adapters
# ============================================================================

def _landmark_center(landmarks) -> Optional[Tuple[float, float]]:
    """Get the (x, y) hand centre from a landmark list, None if incomplete."""
    if landmarks is None or len(landmarks) <= max(CENTER_LANDMARKS):
        return None
    pts = np.array(
        [[landmarks[i].x, landmarks[i].y] for i in CENTER_LANDMARKS],
        dtype=np.float32,
    )
    cx, cy = np.mean(pts, axis=0)
    return float(cx), float(cy)


def _malformed(label: Optional[str]) -> HandSample:
    return HandSample(x=None, y=None, label=label)


def samples_from_hands_results(results) -> List[HandSample]:
    """
    Convert MediaPipe Hands (solutions API) results to samples.

    Args:
        results: Output of mp.solutions.hands.Hands.process()

    Returns:
        One normalized sample per detected hand, in detection order
    """
    samples: List[HandSample] = []
    if not results.multi_hand_landmarks:
        return samples

    handedness = results.multi_handedness or []
    for i, hand in enumerate(results.multi_hand_landmarks):
        label = None
        if i < len(handedness) and handedness[i].classification:
            label = handedness[i].classification[0].label

        center = _landmark_center(hand.landmark)
        if center is None:
            samples.append(_malformed(label))
            continue
        samples.append(HandSample(x=center[0], y=center[1], label=label))
    return samples


def samples_from_landmarker_result(result) -> List[HandSample]:
    """
    Convert a MediaPipe Tasks HandLandmarkerResult to samples.

    Args:
        result: Output of HandLandmarker.detect() / detect_for_video()

    Returns:
        One normalized sample per detected hand, in detection order
    """
    samples: List[HandSample] = []
    handedness = result.handedness or []
    for i, landmarks in enumerate(result.hand_landmarks or []):
        label = None
        if i < len(handedness) and handedness[i]:
            label = handedness[i][0].category_name

        center = _landmark_center(landmarks)
        if center is None:
            samples.append(_malformed(label))
            continue
        samples.append(HandSample(x=center[0], y=center[1], label=label))
    return samples


# ============================================================================
# MediaPipe Detector
# ============================================================================

class MediaPipeGate:
    """
    Gate for MediaPipe processing errors.

    Wraps hand processing to catch detector exceptions so a bad frame costs
    one empty cycle instead of the whole client.
    """

    def __init__(self, max_consecutive_failures: int = 5):
        """
        Initialize MediaPipeGate.

        Args:
            max_consecutive_failures: Number of consecutive processing failures
                before the stream counts as problematic.
        """
        self.max_consecutive_failures = max_consecutive_failures
        self._consecutive_failures = 0
        self._total_failures = 0
        self._total_successes = 0

    def process(self, hands, rgb_frame: np.ndarray) -> Tuple[bool, Any]:
        """
        Process frame with MediaPipe hands, catching exceptions.

        Returns:
            Tuple of (success, result or None)
        """
        try:
            result = hands.process(rgb_frame)
        except Exception as e:
            self._consecutive_failures += 1
            self._total_failures += 1
            logger.warning(f"MediaPipe processing error: {e}")
            if self._consecutive_failures == self.max_consecutive_failures:
                logger.error(
                    f"{self._consecutive_failures} consecutive detector failures, "
                    "stream looks broken"
                )
            return False, None
        self._consecutive_failures = 0
        self._total_successes += 1
        return True, result

    def is_stream_problematic(self) -> bool:
        """Check if the stream has too many consecutive failures."""
        return self._consecutive_failures >= self.max_consecutive_failures

    def get_stats(self) -> dict:
        """Get processing statistics."""
        total = self._total_successes + self._total_failures
        return {
            "total_processed": total,
            "successes": self._total_successes,
            "failures": self._total_failures,
            "success_rate": self._total_successes / total if total > 0 else 0.0,
            "consecutive_failures": self._consecutive_failures,
        }


class MediaPipeHandDetector:
    """
    Hand sample source backed by a MediaPipe graph.

    The graph is created by the caller, so confidence thresholds and model
    options pass straight through to MediaPipe. Anything with ``process(rgb)``
    and ``close()`` works; ``to_samples`` turns its output into samples.
    """

    def __init__(
        self,
        hands,
        gate: Optional[MediaPipeGate] = None,
        to_samples: Callable[[Any], List[HandSample]] = samples_from_hands_results,
    ):
        self.hands = hands
        self.gate = gate or MediaPipeGate()
        self.to_samples = to_samples
        self.last_results = None

    def detect(self, rgb_frame: np.ndarray) -> List[HandSample]:
        """Run detection on an RGB frame and return up to MAX_HANDS samples."""
        ok, results = self.gate.process(self.hands, rgb_frame)
        if not ok:
            self.last_results = None
            return []
        self.last_results = results
        return self.to_samples(results)[:MAX_HANDS]

    def close(self) -> None:
        """Release the MediaPipe graph."""
        if self.hands is not None:
            self.hands.close()
            self.hands = None
