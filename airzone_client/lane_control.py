"""
Lane Control Logic - Discretizes hand heights into air lanes.

This module turns the hand samples of one detection cycle into a fixed
six-lane vector and reports when that vector changes.
"""

import logging
import math
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)

# ============================================================================
# Constants and Types
# ============================================================================

LANE_COUNT = 6
MAX_HANDS = 2
NO_ZONE = -1

LaneVector = Tuple[int, ...]

EMPTY_LANES: LaneVector = (0,) * LANE_COUNT


@dataclass(frozen=True)
class HandSample:
    """
    One detected hand for the current cycle.

    Attributes:
        x: Horizontal position (None if the detector gave no position)
        y: Vertical position, growing downwards from the top of the image
        label: Advisory side label ("Left"/"Right"), not a stable identity
        normalized: True if x/y are in [0, 1] image space, False for pixels
    """
    x: Optional[float]
    y: Optional[float]
    label: Optional[str] = None
    normalized: bool = True

    @property
    def valid(self) -> bool:
        """Check that both coordinates are present and finite."""
        return (
            self.x is not None
            and self.y is not None
            and math.isfinite(self.x)
            and math.isfinite(self.y)
        )


@dataclass(frozen=True)
class ZoneConfig:
    """Interaction zone geometry."""
    zone_height: float
    lane_count: int = LANE_COUNT

    def __post_init__(self):
        if not self.zone_height > 0:
            raise ValueError(f"zone_height must be positive, got {self.zone_height}")
        if self.lane_count < 1:
            raise ValueError(f"lane_count must be at least 1, got {self.lane_count}")

    @property
    def level_size(self) -> float:
        """Height of a single lane band."""
        return self.zone_height / self.lane_count


# ============================================================================
# Zone Mapping
# ============================================================================

def sample_height(sample: HandSample, image_height: float) -> float:
    """Get the vertical offset of a sample in pixels."""
    if sample.normalized:
        return sample.y * image_height
    return sample.y


def map_zone(height: float, cfg: ZoneConfig) -> int:
    """
    Map a hand height to a lane index.

    Lanes count upwards: the band at the top of the image is lane
    ``lane_count - 1`` and the band at the bottom of the zone is lane 0.

    Args:
        height: Vertical offset from the image top, same unit as zone_height
        cfg: Zone geometry

    Returns:
        Lane index in [0, lane_count - 1], or -1 outside the zone
    """
    if height > cfg.zone_height:
        return NO_ZONE
    # height / (zone_height / lane_count), without the rounding of level_size
    level = math.floor(height * cfg.lane_count / cfg.zone_height)
    if level >= cfg.lane_count:
        return NO_ZONE
    # Above the image top edge
    if level < 0:
        return cfg.lane_count - 1
    return cfg.lane_count - 1 - level


# ============================================================================
# State Composition
# ============================================================================

class StateComposer:
    """
    Combines per-hand zones into a lane vector and detects changes.

    The previous vector is always replaced by the latest one, so each
    comparison is made against the most recent real state.
    """

    def __init__(self, lane_count: int = LANE_COUNT):
        self.lane_count = lane_count
        self._previous: LaneVector = (0,) * lane_count

    @property
    def previous(self) -> LaneVector:
        """Last composed lane vector."""
        return self._previous

    def compose(self, zones: Sequence[int]) -> LaneVector:
        """Build a lane vector with a bit set for every zone >= 0."""
        lanes = [0] * self.lane_count
        for zone in zones:
            if zone == NO_ZONE:
                continue
            if not 0 <= zone < self.lane_count:
                raise IndexError(f"zone {zone} outside lanes 0..{self.lane_count - 1}")
            lanes[zone] = 1
        return tuple(lanes)

    def update(self, zones: Sequence[int]) -> Optional[LaneVector]:
        """
        Compose the zones of this cycle.

        Returns:
            The new lane vector if any lane differs from the previous cycle,
            otherwise None
        """
        lanes = self.compose(zones)
        changed = lanes != self._previous
        self._previous = lanes
        return lanes if changed else None

    def reset(self) -> None:
        """Forget the previous vector."""
        self._previous = (0,) * self.lane_count


# ============================================================================
# Hand Slots
# ============================================================================

class HandSlots:
    """
    Same-cycle slots for at most two hands.

    Samples fill slots in detector order. A slot without a valid sample keeps
    its last zone until ``expire_after`` cycles have passed without one.
    """

    def __init__(self, slots: int = MAX_HANDS, expire_after: Optional[int] = None):
        self.slots = slots
        self.expire_after = expire_after
        self._zones: List[int] = [NO_ZONE] * slots
        self._missed: List[int] = [0] * slots

    @property
    def zones(self) -> List[int]:
        """Current zone per slot."""
        return list(self._zones)

    def observe(
        self,
        samples: Sequence[HandSample],
        cfg: ZoneConfig,
        image_height: float,
    ) -> List[int]:
        """
        Update the slots from one cycle of samples.

        Args:
            samples: Hands reported by the detector this cycle
            cfg: Zone geometry
            image_height: Image height used to scale normalized samples

        Returns:
            Zone per slot after this cycle
        """
        if len(samples) > self.slots:
            logger.debug(f"Ignoring {len(samples) - self.slots} extra hand sample(s)")

        for i in range(self.slots):
            sample = samples[i] if i < len(samples) else None
            if sample is not None and sample.valid:
                self._zones[i] = map_zone(sample_height(sample, image_height), cfg)
                self._missed[i] = 0
                continue

            if sample is not None:
                logger.debug(f"Discarding malformed sample in slot {i}: {sample}")
            self._missed[i] += 1
            if (
                self.expire_after is not None
                and self._missed[i] >= self.expire_after
                and self._zones[i] != NO_ZONE
            ):
                logger.debug(f"Slot {i} expired after {self._missed[i]} missed cycles")
                self._zones[i] = NO_ZONE

        return self.zones

    def reset(self) -> None:
        """Clear all slots."""
        self._zones = [NO_ZONE] * self.slots
        self._missed = [0] * self.slots


# ============================================================================
# Lane Tracker
# ============================================================================

class LaneTracker:
    """
    One detection cycle: samples -> slots -> lane vector -> change.

    While paused, composition keeps running but nothing is handed out for
    transmission. The state on resume is handed out once so the server
    catches up.
    """

    def __init__(self, zone: ZoneConfig, expire_after: Optional[int] = None):
        self.zone = zone
        self.slots = HandSlots(expire_after=expire_after)
        self.composer = StateComposer(lane_count=zone.lane_count)
        self._paused = False
        self._withheld = False

    @property
    def paused(self) -> bool:
        """Check if lane output is suppressed."""
        return self._paused

    @property
    def zones(self) -> List[int]:
        """Zone per hand slot from the last cycle."""
        return self.slots.zones

    @property
    def lanes(self) -> LaneVector:
        """Lane vector from the last cycle."""
        return self.composer.previous

    def set_zone_height(self, zone_height: float) -> None:
        """Replace the zone height, keeping the lane count."""
        if zone_height != self.zone.zone_height:
            self.zone = ZoneConfig(zone_height=zone_height, lane_count=self.zone.lane_count)
            logger.info(f"Zone height set to {zone_height:.0f}px")

    def pause(self) -> None:
        """Suppress lane output."""
        if not self._paused:
            self._paused = True
            logger.info("Lane output paused")

    def resume(self) -> Optional[LaneVector]:
        """
        Resume lane output.

        Returns:
            The current lane vector if a change was held back while paused
        """
        if not self._paused:
            return None
        self._paused = False
        logger.info("Lane output resumed")
        if self._withheld:
            self._withheld = False
            return self.composer.previous
        return None

    def process(self, samples: Sequence[HandSample], image_height: float) -> Optional[LaneVector]:
        """
        Run one detection cycle.

        Returns:
            Lane vector to transmit, or None if nothing should be sent
        """
        zones = self.slots.observe(samples, self.zone, image_height)
        lanes = self.composer.update(zones)
        if lanes is None:
            return None
        if self._paused:
            self._withheld = True
            return None
        return lanes
