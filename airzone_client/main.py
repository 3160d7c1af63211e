#!/usr/bin/env python3
"""
Air Zone Client - Main Entry Point

This client runs next to the controller server, tracks hands in the webcam
image with MediaPipe, and streams six air lanes to the server's WebSocket
endpoint.

Usage:
    python -m airzone_client.main --server ws://127.0.0.1:1606/ws --camera 0
    python -m airzone_client.main --zone-height 250 --preview
"""

import argparse
import asyncio
import logging
import signal
import sys
import time
from typing import List, Optional, Tuple

import cv2
import mediapipe as mp
import numpy as np
from mediapipe.tasks import python as mp_tasks
from mediapipe.tasks.python import vision as mp_vision

from .config import DEFAULT_SERVER_URL, DETECTORS, ClientConfig
from .detectors import MediaPipeGate, MediaPipeHandDetector, samples_from_landmarker_result
from .lane_control import MAX_HANDS, HandSample, LaneTracker, LaneVector, ZoneConfig
from .link_session import Connected, Disconnected, LedPayload, LinkSession
from .message import encode_lane_frame
from .throttle import Throttle
from .watchdog import Watchdog

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# MediaPipe setup
mp_hands = mp.solutions.hands
mp_draw = mp.solutions.drawing_utils

ZONE_STEP_PX = 10


class LedFrameBuffer:
    """
    Latest LED payload from the server.

    The payload is opaque to the link; for the preview it is drawn as a strip
    of RGB triples.
    """

    def __init__(self):
        self.data: Optional[bytes] = None
        self.frames = 0

    def update(self, data: bytes) -> None:
        self.data = data
        self.frames += 1

    def colors(self) -> List[Tuple[int, int, int]]:
        """Get (B, G, R) tuples for OpenCV drawing."""
        if not self.data:
            return []
        usable = len(self.data) - len(self.data) % 3
        return [
            (self.data[i + 2], self.data[i + 1], self.data[i])
            for i in range(0, usable, 3)
        ]


class LandmarkerRunner:
    """
    Video-mode HandLandmarker behind the process()/close() calls of a
    solutions Hands graph.
    """

    def __init__(self, landmarker):
        self.landmarker = landmarker
        self._last_timestamp_ms = 0

    def process(self, rgb_frame: np.ndarray):
        # Video mode rejects timestamps that do not increase
        timestamp_ms = max(self._last_timestamp_ms + 1, int(time.monotonic() * 1000))
        self._last_timestamp_ms = timestamp_ms
        image = mp.Image(image_format=mp.ImageFormat.SRGB, data=rgb_frame)
        return self.landmarker.detect_for_video(image, timestamp_ms)

    def close(self) -> None:
        self.landmarker.close()


class AirZoneClient:
    """
    Main client that integrates all components:
    - Camera capture
    - MediaPipe hand detection
    - Zone mapping and lane composition
    - Throttled lane frames
    - Link session with heartbeat watchdog
    """

    def __init__(self, config: ClientConfig, session: Optional[LinkSession] = None):
        """
        Initialize the air zone client.

        Args:
            config: Validated client configuration
            session: Link to use instead of one built from the config
        """
        self.config = config

        # Components
        self.tracker = LaneTracker(
            ZoneConfig(zone_height=config.zone_height),
            expire_after=config.expire_after,
        )
        self.session = session or LinkSession(
            server_url=config.server_url,
            max_backoff_seconds=config.reconnect_window,
        )
        self.watchdog = Watchdog(
            self.session,
            interval=config.watchdog_interval,
            threshold=config.missed_probe_threshold,
        )
        self.throttle: Optional[Throttle] = None
        self.detector: Optional[MediaPipeHandDetector] = None
        self.leds = LedFrameBuffer()

        # Camera
        self.cap: Optional[cv2.VideoCapture] = None

        # State
        self._running = False
        self._fault: Optional[BaseException] = None
        self._events_task: Optional[asyncio.Task] = None

        if config.paused:
            self.tracker.pause()

        # UI font
        self.font = cv2.FONT_HERSHEY_SIMPLEX

    async def start(self) -> None:
        """Start the client."""
        logger.info("Starting Air Zone Client...")

        if not self._init_camera():
            raise RuntimeError("Failed to initialize camera")

        self.detector = self._create_detector()
        await self.start_link()

        self._running = True
        logger.info("Air Zone Client started")

    async def start_link(self) -> None:
        """Start lane throttling, session event dispatch and the link itself."""
        self.throttle = Throttle(self._send_frame, wait=self.config.throttle_seconds)
        self._events_task = asyncio.create_task(self._dispatch_events())
        self._events_task.add_done_callback(self._report_events_failure)
        await self.session.start()
        await self.watchdog.start()

    def _create_detector(self) -> MediaPipeHandDetector:
        if self.config.detector == "landmarker":
            logger.info(f"Loading hand landmarker model: {self.config.model_path}")
            options = mp_vision.HandLandmarkerOptions(
                base_options=mp_tasks.BaseOptions(model_asset_path=self.config.model_path),
                running_mode=mp_vision.RunningMode.VIDEO,
                num_hands=MAX_HANDS,
                min_hand_detection_confidence=self.config.min_detection_confidence,
                min_tracking_confidence=self.config.min_tracking_confidence,
            )
            landmarker = mp_vision.HandLandmarker.create_from_options(options)
            return MediaPipeHandDetector(
                LandmarkerRunner(landmarker),
                MediaPipeGate(),
                to_samples=samples_from_landmarker_result,
            )

        hands = mp_hands.Hands(
            static_image_mode=False,
            max_num_hands=MAX_HANDS,
            model_complexity=self.config.model_complexity,
            min_detection_confidence=self.config.min_detection_confidence,
            min_tracking_confidence=self.config.min_tracking_confidence,
        )
        return MediaPipeHandDetector(hands, MediaPipeGate())

    async def stop(self) -> None:
        """Stop the client and clean up resources."""
        logger.info("Stopping Air Zone Client...")
        self._running = False

        if self.throttle:
            self.throttle.cancel()
        await self.watchdog.stop()
        await self.session.close()
        self._log_stats()

        if self._events_task:
            self._events_task.cancel()
            try:
                await self._events_task
            except asyncio.CancelledError:
                pass
            self._events_task = None

        if self.cap:
            self.cap.release()
            self.cap = None

        if self.detector:
            self.detector.close()
            self.detector = None

        if self.config.preview:
            cv2.destroyAllWindows()

        logger.info("Air Zone Client stopped")

    def request_stop(self) -> None:
        """Ask the main loop to exit after the current frame."""
        self._running = False

    def fail(self, exc: Optional[BaseException]) -> None:
        """Record a fault from outside the main loop and stop it."""
        if self._fault is None:
            self._fault = exc or RuntimeError("unknown fault")
        self._running = False

    async def run(self) -> None:
        """
        Main detection loop.

        Faults are not caught here; they end the loop and reach main().
        """
        target_dt = 1.0 / self.config.rate

        while self._running:
            loop_start = time.time()

            self._process_frame()

            if self.config.preview:
                self._handle_key(cv2.waitKey(1) & 0xFF)

            # Yield to the link tasks even when the frame ran long
            elapsed = time.time() - loop_start
            await asyncio.sleep(max(0.0, target_dt - elapsed))

        if self._fault is not None:
            raise RuntimeError("Air zone client stopped on a fault") from self._fault

    def _process_frame(self) -> None:
        """Process a single frame through the pipeline."""
        ok, frame = self.cap.read()
        if not ok or frame is None or frame.size == 0:
            logger.debug("Camera returned no frame")
            return

        if self.config.flip:
            frame = cv2.flip(frame, 1)
        h, w = frame.shape[:2]

        # Zone cannot be taller than the image
        self.tracker.set_zone_height(self.config.effective_zone_height(h))

        rgb = cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)
        self.handle_samples(self.detector.detect(rgb), image_height=h)

        if self.config.preview:
            self._draw_preview(frame, h, w)
            cv2.imshow("Air Zone Client", frame)

    def handle_samples(self, samples: List[HandSample], image_height: int) -> None:
        """Run one detection cycle's samples through the tracker to the link."""
        lanes = self.tracker.process(samples, image_height=image_height)
        if lanes is not None:
            self._dispatch_lanes(lanes)

    def _dispatch_lanes(self, lanes: LaneVector) -> None:
        frame = encode_lane_frame(lanes)
        logger.debug(f"Lanes changed: {frame}")
        self.throttle.dispatch(frame)

    def _send_frame(self, frame: str) -> None:
        self.session.send(frame)

    def _handle_key(self, key: int) -> None:
        if key in (27, ord('q')):
            logger.info("Quit requested")
            self._running = False
        elif key in (ord('p'), ord('P')):
            if self.tracker.paused:
                lanes = self.tracker.resume()
                if lanes is not None:
                    self._dispatch_lanes(lanes)
            else:
                self.tracker.pause()
        elif key == ord(']'):
            self.config.zone_height += ZONE_STEP_PX
        elif key == ord('['):
            self.config.zone_height = max(1.0, self.config.zone_height - ZONE_STEP_PX)

    async def _dispatch_events(self) -> None:
        """Consume link session events."""
        while True:
            event = await self.session.events.get()
            if isinstance(event, LedPayload):
                self.leds.update(event.data)
            elif isinstance(event, Connected):
                logger.info("Connected to controller server")
                # The server clears air input on disconnect; restore it
                if not self.tracker.paused and any(self.tracker.lanes):
                    self._dispatch_lanes(self.tracker.lanes)
            elif isinstance(event, Disconnected):
                logger.warning(f"Disconnected from controller server: {event.reason}")

    def _report_events_failure(self, task: asyncio.Task) -> None:
        if task.cancelled() or task.exception() is None:
            return
        task.get_loop().call_exception_handler({
            "message": "Session event dispatch failed",
            "exception": task.exception(),
            "task": task,
        })

    def _log_stats(self) -> None:
        logger.info(f"Link stats: {self.session.get_stats()}")
        if self.throttle:
            logger.info(f"Throttle stats: {self.throttle.get_stats()}")
        if self.detector:
            logger.info(f"Detector stats: {self.detector.gate.get_stats()}")

    def _init_camera(self) -> bool:
        """Initialize video capture."""
        logger.info(f"Opening camera index: {self.config.camera_index}")
        self.cap = cv2.VideoCapture(self.config.camera_index)

        if not self.cap.isOpened():
            logger.error("Failed to open camera source")
            return False

        width = int(self.cap.get(cv2.CAP_PROP_FRAME_WIDTH))
        height = int(self.cap.get(cv2.CAP_PROP_FRAME_HEIGHT))
        fps = self.cap.get(cv2.CAP_PROP_FPS)
        logger.info(f"Camera opened: {width}x{height} @ {fps:.1f} fps")

        return True

    def _draw_preview(self, frame: np.ndarray, h: int, w: int) -> None:
        """Draw preview overlay."""
        zone_h = int(self.tracker.zone.zone_height)
        level = self.tracker.zone.level_size
        lane_count = self.tracker.zone.lane_count

        # Zone band with lane separators
        overlay = frame.copy()
        cv2.rectangle(overlay, (0, 0), (w, zone_h), (255, 200, 0), -1)
        cv2.addWeighted(overlay, 0.15, frame, 0.85, 0, frame)
        for i in range(1, lane_count):
            y = int(i * level)
            cv2.line(frame, (0, y), (w, y), (255, 200, 0), 1)

        # Hand landmarks (solutions results only)
        results = self.detector.last_results if self.detector else None
        for hand in getattr(results, "multi_hand_landmarks", None) or []:
            mp_draw.draw_landmarks(frame, hand, mp_hands.HAND_CONNECTIONS)

        # Detector health
        if self.detector:
            gate_stats = self.detector.gate.get_stats()
            if self.detector.gate.is_stream_problematic():
                cv2.putText(frame, "Detector failing", (w - 200, 30), self.font, 0.5, (0, 0, 255), 1)
            elif gate_stats["failures"] > 0:
                failed_pct = (1.0 - gate_stats["success_rate"]) * 100
                cv2.putText(
                    frame,
                    f"Detector errors: {failed_pct:.1f}%",
                    (w - 200, 30),
                    self.font, 0.5, (0, 0, 255), 1
                )

        # Lane bits, lane 0 at the bottom of the zone
        lanes = self.tracker.lanes
        for lane, bit in enumerate(lanes):
            y = int((lane_count - 1 - lane + 0.5) * level)
            color = (0, 255, 0) if bit else (80, 80, 80)
            cv2.circle(frame, (w - 20, y), 8, color, -1)

        zones = ", ".join(str(z) for z in self.tracker.zones)
        cv2.putText(frame, f"Zones: {zones}", (20, h - 40), self.font, 0.7, (255, 0, 0), 2)

        # Output status
        if self.tracker.paused:
            cv2.putText(frame, "PAUSED", (20, h - 70), self.font, 0.7, (0, 165, 255), 2)

        # Connection status
        conn_status = self.session.state.value.capitalize()
        conn_color = (0, 255, 0) if self.session.connected else (0, 0, 255)
        cv2.putText(frame, f"Server: {conn_status}", (20, h - 15), self.font, 0.5, conn_color, 1)

        # LED strip from the server
        colors = self.leds.colors()
        if colors:
            cell = max(w // len(colors), 1)
            for i, color in enumerate(colors):
                cv2.rectangle(
                    frame,
                    (i * cell, h - 8),
                    ((i + 1) * cell - 1, h),
                    tuple(int(c) for c in color),
                    -1,
                )


async def main_async(config: ClientConfig) -> None:
    """Async main entry point."""
    client = AirZoneClient(config)

    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Shutdown signal received")
        client.request_stop()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    def exception_handler(loop, context):
        # Timer and task faults end the client instead of being logged and lost
        logger.critical(context.get("message", "Unhandled fault"), exc_info=context.get("exception"))
        client.fail(context.get("exception"))

    loop.set_exception_handler(exception_handler)

    try:
        await client.start()
        await client.run()
    finally:
        await client.stop()


def build_parser() -> argparse.ArgumentParser:
    """Build the command line parser."""
    parser = argparse.ArgumentParser(
        description="Air Zone Hand Tracking Client",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument(
        "--server",
        type=str,
        default=DEFAULT_SERVER_URL,
        help="WebSocket server URL",
    )
    parser.add_argument(
        "--camera",
        type=int,
        default=0,
        help="Camera device index",
    )
    parser.add_argument(
        "--zone-height",
        type=float,
        default=200.0,
        help="Height of the air zone from the image top (pixels)",
    )
    parser.add_argument(
        "--throttle-ms",
        type=float,
        default=10.0,
        help="Minimum spacing between lane frames (ms)",
    )
    parser.add_argument(
        "--watchdog-interval",
        type=float,
        default=1.0,
        help="Seconds between liveness probes",
    )
    parser.add_argument(
        "--missed-probes",
        type=int,
        default=2,
        help="Unanswered probes tolerated before reconnecting",
    )
    parser.add_argument(
        "--hand-expire",
        type=int,
        default=15,
        help="Frames a lost hand keeps its lane (0 = until seen again)",
    )
    parser.add_argument(
        "--detector",
        type=str,
        default="hands",
        choices=DETECTORS,
        help="MediaPipe backend: Hands solution or Tasks HandLandmarker",
    )
    parser.add_argument(
        "--model",
        type=str,
        default=None,
        help="HandLandmarker .task model file (required with --detector landmarker)",
    )
    parser.add_argument(
        "--detection-confidence",
        type=float,
        default=0.25,
        help="Minimum hand detection confidence",
    )
    parser.add_argument(
        "--tracking-confidence",
        type=float,
        default=0.1,
        help="Minimum hand tracking confidence",
    )
    parser.add_argument(
        "--model-complexity",
        type=int,
        default=0,
        choices=(0, 1),
        help="MediaPipe model complexity",
    )
    parser.add_argument(
        "--no-flip",
        action="store_true",
        help="Do not mirror the camera image",
    )
    parser.add_argument(
        "--paused",
        action="store_true",
        help="Start with lane output paused",
    )
    parser.add_argument(
        "--rate",
        type=float,
        default=30.0,
        help="Detection loop rate (Hz)",
    )
    parser.add_argument(
        "--preview",
        action="store_true",
        help="Show preview window",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )
    return parser


def config_from_args(args: argparse.Namespace) -> ClientConfig:
    """Build a ClientConfig from parsed arguments."""
    return ClientConfig(
        server_url=args.server,
        zone_height=args.zone_height,
        throttle_ms=args.throttle_ms,
        watchdog_interval=args.watchdog_interval,
        missed_probe_threshold=args.missed_probes,
        hand_expire_cycles=args.hand_expire,
        min_detection_confidence=args.detection_confidence,
        min_tracking_confidence=args.tracking_confidence,
        model_complexity=args.model_complexity,
        flip=not args.no_flip,
        paused=args.paused,
        camera_index=args.camera,
        rate=args.rate,
        preview=args.preview,
        detector=args.detector,
        model_path=args.model,
    )


def main() -> None:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args()

    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        config = config_from_args(args)
    except ValueError as e:
        parser.error(str(e))

    try:
        asyncio.run(main_async(config))
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        sys.exit(0)
    except Exception:
        logger.critical("Air zone client stopped on an unexpected error", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
