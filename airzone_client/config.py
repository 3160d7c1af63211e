"""
Client configuration.

All tunables for the air zone client in one place. Values come from command
line flags (see main.py) and are validated once at startup.
"""

import logging
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_SERVER_URL = "ws://127.0.0.1:1606/ws"

# Detector confidence bounds accepted by the hand tracker UI
MIN_CONFIDENCE = 0.05
MAX_CONFIDENCE = 1.0

DETECTORS = ("hands", "landmarker")


def clamp(v: float, lo: float, hi: float) -> float:
    """Clamp value between lo and hi."""
    return max(lo, min(hi, v))


@dataclass
class ClientConfig:
    """
    Runtime configuration for the air zone client.

    Attributes:
        server_url: WebSocket endpoint of the controller server
        zone_height: Height of the interaction zone in pixels, measured from
            the top of the image
        throttle_ms: Minimum spacing between lane frames on the wire
        watchdog_interval: Seconds between liveness probes
        missed_probe_threshold: Unanswered probes tolerated before reconnecting
        hand_expire_cycles: Detection cycles a lost hand keeps its lane
            (0 keeps it until the hand is seen again)
        min_detection_confidence: Passed through to the detector
        min_tracking_confidence: Passed through to the detector
        model_complexity: Detector model size (0 or 1)
        flip: Mirror the camera image (selfie view)
        paused: Start with lane output suppressed
        camera_index: OpenCV camera device index
        rate: Detection loop cap (Hz)
        preview: Show the OpenCV preview window
        detector: "hands" (MediaPipe Hands solution) or "landmarker" (MediaPipe
            Tasks HandLandmarker)
        model_path: HandLandmarker .task model file, required for "landmarker"
    """
    server_url: str = DEFAULT_SERVER_URL
    zone_height: float = 200.0
    throttle_ms: float = 10.0
    watchdog_interval: float = 1.0
    missed_probe_threshold: int = 2
    hand_expire_cycles: int = 15
    min_detection_confidence: float = 0.25
    min_tracking_confidence: float = 0.1
    model_complexity: int = 0
    flip: bool = True
    paused: bool = False
    camera_index: int = 0
    rate: float = 30.0
    preview: bool = False
    detector: str = "hands"
    model_path: Optional[str] = None

    def __post_init__(self):
        if self.zone_height <= 0:
            raise ValueError(f"zone_height must be positive, got {self.zone_height}")
        if self.throttle_ms < 0:
            raise ValueError(f"throttle_ms must not be negative, got {self.throttle_ms}")
        if self.watchdog_interval <= 0:
            raise ValueError(
                f"watchdog_interval must be positive, got {self.watchdog_interval}"
            )
        if self.missed_probe_threshold < 0:
            raise ValueError(
                f"missed_probe_threshold must not be negative, got {self.missed_probe_threshold}"
            )
        if self.hand_expire_cycles < 0:
            raise ValueError(
                f"hand_expire_cycles must not be negative, got {self.hand_expire_cycles}"
            )
        if self.detector not in DETECTORS:
            raise ValueError(f"detector must be one of {DETECTORS}, got {self.detector!r}")
        if self.detector == "landmarker" and not self.model_path:
            raise ValueError("the landmarker detector needs a model_path")
        if self.rate <= 0:
            raise ValueError(f"rate must be positive, got {self.rate}")
        if not self.server_url.startswith(("ws://", "wss://")):
            raise ValueError(f"server_url must be a ws:// or wss:// URL, got {self.server_url}")

        # Out-of-range detector settings are clamped, not rejected
        detection = clamp(self.min_detection_confidence, MIN_CONFIDENCE, MAX_CONFIDENCE)
        tracking = clamp(self.min_tracking_confidence, MIN_CONFIDENCE, MAX_CONFIDENCE)
        complexity = int(clamp(round(self.model_complexity), 0, 1))
        if (detection, tracking, complexity) != (
            self.min_detection_confidence,
            self.min_tracking_confidence,
            self.model_complexity,
        ):
            logger.warning(
                f"Detector settings clamped: detection={detection}, "
                f"tracking={tracking}, complexity={complexity}"
            )
        self.min_detection_confidence = detection
        self.min_tracking_confidence = tracking
        self.model_complexity = complexity

    @property
    def throttle_seconds(self) -> float:
        """Throttle window in seconds."""
        return self.throttle_ms / 1000.0

    @property
    def reconnect_window(self) -> float:
        """Seconds the watchdog waits before giving up on a link."""
        return (self.missed_probe_threshold + 1) * self.watchdog_interval

    @property
    def expire_after(self) -> Optional[int]:
        """Hand expiry in cycles, or None for no expiry."""
        return self.hand_expire_cycles or None

    def effective_zone_height(self, image_height: int) -> float:
        """Zone height limited to the visible image, as the tracker UI does."""
        return clamp(self.zone_height, 1, max(image_height, 1))
