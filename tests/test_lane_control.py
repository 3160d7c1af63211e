import math

import pytest

from airzone_client.lane_control import (
    EMPTY_LANES,
    LANE_COUNT,
    HandSample,
    HandSlots,
    LaneTracker,
    StateComposer,
    ZoneConfig,
    map_zone,
    sample_height,
)
from airzone_client.message import encode_lane_frame


@pytest.fixture
def zone():
    return ZoneConfig(zone_height=200)


def px(y, label=None):
    return HandSample(x=100.0, y=y, label=label, normalized=False)


# ============================================================================
# Zone mapping
# ============================================================================

class TestMapZone:
    def test_example_height(self, zone):
        assert map_zone(40, zone) == 4

    def test_top_of_image_is_highest_lane(self, zone):
        assert map_zone(0, zone) == LANE_COUNT - 1

    def test_zone_height_boundary_is_outside(self, zone):
        assert map_zone(200, zone) == -1

    def test_below_zone_is_outside(self, zone):
        assert map_zone(200.01, zone) == -1
        assert map_zone(480, zone) == -1

    def test_just_inside_boundary_is_lane_zero(self, zone):
        assert map_zone(199.99, zone) == 0

    def test_negative_height_clamps_to_top_lane(self, zone):
        assert map_zone(-15, zone) == LANE_COUNT - 1

    @pytest.mark.parametrize("zone_height", [1, 50, 200, 250, 333.3, 720])
    def test_range_and_monotonic(self, zone_height):
        cfg = ZoneConfig(zone_height=zone_height)
        steps = 500
        previous = math.inf
        for i in range(steps + 1):
            height = zone_height * i / steps
            lane = map_zone(height, cfg)
            assert -1 <= lane <= cfg.lane_count - 1
            assert lane <= previous
            previous = lane

    def test_every_lane_reachable(self, zone):
        lanes = {map_zone(h, zone) for h in range(0, 200)}
        assert lanes == set(range(LANE_COUNT))

    def test_rejects_non_positive_zone_height(self):
        with pytest.raises(ValueError):
            ZoneConfig(zone_height=0)
        with pytest.raises(ValueError):
            ZoneConfig(zone_height=-10)

    def test_sample_height_scales_normalized(self):
        assert sample_height(HandSample(x=0.5, y=0.25), 480) == pytest.approx(120)
        assert sample_height(px(120), 480) == 120


# ============================================================================
# State composition
# ============================================================================

class TestStateComposer:
    def test_compose_sets_bits(self):
        composer = StateComposer()
        assert composer.compose([5, 1]) == (0, 1, 0, 0, 0, 1)

    def test_compose_same_lane_twice(self):
        composer = StateComposer()
        assert composer.compose([3, 3]) == (0, 0, 0, 1, 0, 0)

    def test_compose_ignores_outside(self):
        composer = StateComposer()
        assert composer.compose([-1, -1]) == EMPTY_LANES
        assert composer.compose([]) == EMPTY_LANES

    def test_compose_rejects_bad_index(self):
        composer = StateComposer()
        with pytest.raises(IndexError):
            composer.compose([6])

    def test_change_reported_once(self):
        composer = StateComposer()
        assert composer.update([2]) == (0, 0, 1, 0, 0, 0)
        assert composer.update([2]) is None
        assert composer.update([2, -1]) is None

    def test_no_change_from_initial_empty(self):
        composer = StateComposer()
        assert composer.update([-1, -1]) is None

    def test_previous_always_replaced(self):
        composer = StateComposer()
        composer.update([0])
        composer.update([1])
        assert composer.previous == (0, 1, 0, 0, 0, 0)
        assert composer.update([0]) == (1, 0, 0, 0, 0, 0)

    def test_reset(self):
        composer = StateComposer()
        composer.update([4])
        composer.reset()
        assert composer.previous == EMPTY_LANES


# ============================================================================
# Hand slots
# ============================================================================

class TestHandSlots:
    def test_samples_fill_slots_in_order(self, zone):
        slots = HandSlots()
        assert slots.observe([px(10), px(150)], zone, 480) == [5, 1]

    def test_extra_samples_ignored(self, zone):
        slots = HandSlots()
        assert slots.observe([px(10), px(150), px(60)], zone, 480) == [5, 1]

    def test_malformed_sample_keeps_previous_zone(self, zone):
        slots = HandSlots()
        slots.observe([px(10), px(150)], zone, 480)
        broken = HandSample(x=None, y=None, normalized=False)
        assert slots.observe([broken, px(150)], zone, 480) == [5, 1]

    def test_nan_sample_is_malformed(self, zone):
        slots = HandSlots()
        slots.observe([px(10)], zone, 480)
        assert slots.observe([px(float("nan"))], zone, 480)[0] == 5

    def test_missing_hand_kept_without_expiry(self, zone):
        slots = HandSlots(expire_after=None)
        slots.observe([px(10), px(150)], zone, 480)
        for _ in range(100):
            zones = slots.observe([], zone, 480)
        assert zones == [5, 1]

    def test_missing_hand_expires(self, zone):
        slots = HandSlots(expire_after=3)
        slots.observe([px(10), px(150)], zone, 480)
        assert slots.observe([px(10)], zone, 480) == [5, 1]
        assert slots.observe([px(10)], zone, 480) == [5, 1]
        assert slots.observe([px(10)], zone, 480) == [5, -1]

    def test_valid_sample_resets_miss_count(self, zone):
        slots = HandSlots(expire_after=2)
        slots.observe([px(10)], zone, 480)
        slots.observe([], zone, 480)
        slots.observe([px(40)], zone, 480)
        assert slots.observe([], zone, 480) == [4, -1]

    def test_normalized_samples_scaled(self, zone):
        slots = HandSlots()
        assert slots.observe([HandSample(x=0.5, y=40 / 480)], zone, 480)[0] == 4


# ============================================================================
# Lane tracker
# ============================================================================

class TestLaneTracker:
    def test_two_hands_to_frame(self, zone):
        tracker = LaneTracker(zone)
        lanes = tracker.process([px(10), px(150)], image_height=480)
        assert lanes == (0, 1, 0, 0, 0, 1)
        assert encode_lane_frame(lanes) == "d010001"

    def test_unchanged_cycle_returns_none(self, zone):
        tracker = LaneTracker(zone)
        tracker.process([px(10)], image_height=480)
        assert tracker.process([px(12)], image_height=480) is None

    def test_pause_suppresses_output_but_keeps_composing(self, zone):
        tracker = LaneTracker(zone)
        tracker.pause()
        assert tracker.process([px(10)], image_height=480) is None
        assert tracker.lanes == (0, 0, 0, 0, 0, 1)
        assert tracker.zones == [5, -1]

    def test_resume_returns_withheld_state(self, zone):
        tracker = LaneTracker(zone)
        tracker.pause()
        tracker.process([px(10)], image_height=480)
        assert tracker.resume() == (0, 0, 0, 0, 0, 1)
        assert tracker.process([px(10)], image_height=480) is None

    def test_resume_without_change_returns_none(self, zone):
        tracker = LaneTracker(zone)
        tracker.pause()
        assert tracker.resume() is None
        assert tracker.resume() is None

    def test_zone_height_change(self, zone):
        tracker = LaneTracker(zone)
        tracker.set_zone_height(400)
        assert tracker.process([px(300)], image_height=480) == (0, 1, 0, 0, 0, 0)
