"""
Tests for human interaction simulation.

## Test Perspectives Table

| Case ID | Input / Precondition | Perspective (Equivalence / Boundary) | Expected Result | Notes |
|---------|---------------------|---------------------------------------|-----------------|-------|
| TC-HB-N-01 | Mouse path | Equivalence – normal | Ends exactly at target | - |
| TC-HB-N-02 | Mouse path length | Equivalence – normal | Steps within bounds | - |
| TC-HB-B-01 | Start == end | Boundary – zero distance | Single point | - |
| TC-HB-N-03 | Path speed profile | Equivalence – normal | Slower at ends | - |
| TC-HB-N-04 | Scroll gesture | Equivalence – normal | Deltas sum to total | - |
| TC-HB-N-05 | Scroll up | Equivalence – normal | Negative deltas | - |
| TC-HB-N-06 | perform(page) | Equivalence – normal | Moves, scroll, dwell | sleep patched |
| TC-HB-N-07 | Pointer bounds | Equivalence – invariant | Targets inside viewport | - |
"""

import random

import pytest

from tierfetch.crawler.human_behavior import (
    HumanBehaviorConfig,
    HumanBehaviorSimulator,
    InertialScroll,
    MouseConfig,
    MouseTrajectory,
    ScrollConfig,
)

pytestmark = pytest.mark.unit


class TestMouseTrajectory:
    """Tests for Bezier mouse paths."""

    def test_path_ends_at_target(self):
        """TC-HB-N-01: Last point is the target, first is near the start."""
        # Given
        trajectory = MouseTrajectory(rng=random.Random(1))

        # When
        path = trajectory.generate_path((100, 100), (700, 400))

        # Then
        assert path[-1][:2] == pytest.approx((700, 400))
        assert path[0][:2] == pytest.approx((100, 100))

    def test_step_count_bounds(self):
        """TC-HB-N-02: Steps clamp to [min_steps, max_steps]."""
        # Given
        config = MouseConfig(min_steps=10, max_steps=50)
        trajectory = MouseTrajectory(config, random.Random(2))

        # When
        short = trajectory.generate_path((0, 0), (30, 0))
        long = trajectory.generate_path((0, 0), (5000, 0))

        # Then
        assert len(short) == 11
        assert len(long) == 51

    def test_zero_distance(self):
        """TC-HB-B-01: No movement needed."""
        # When
        path = MouseTrajectory().generate_path((50, 50), (50, 50))

        # Then
        assert path == [(50, 50, 0.0)]

    def test_slower_at_ends(self):
        """TC-HB-N-03: Delays at the ends exceed the middle delay."""
        # Given
        trajectory = MouseTrajectory(MouseConfig(jitter_frequency=0), random.Random(3))

        # When
        path = trajectory.generate_path((0, 0), (800, 0))
        delays = [d for _, _, d in path]

        # Then
        middle = delays[len(delays) // 2]
        assert delays[0] > middle
        assert all(d > 0 for d in delays)


class TestInertialScroll:
    """Tests for scroll gestures."""

    def test_deltas_sum_to_total(self):
        """TC-HB-N-04: Frames add up to the gesture size."""
        # Given
        config = ScrollConfig(base_scroll_amount=300, scroll_variance=0, animation_steps=8)
        scroll = InertialScroll(config, random.Random(4))

        # When
        frames = scroll.gesture(direction=1, intensity=1.0)

        # Then
        assert len(frames) == 8
        assert sum(delta for delta, _ in frames) == 300
        assert frames[0][0] > frames[-1][0]

    def test_scroll_up(self):
        """TC-HB-N-05: Direction -1 gives non-positive deltas."""
        # Given
        scroll = InertialScroll(ScrollConfig(scroll_variance=0), random.Random(5))

        # When
        frames = scroll.gesture(direction=-1, intensity=0.5)

        # Then
        assert sum(delta for delta, _ in frames) == -150
        assert all(delta <= 0 for delta, _ in frames)


class TestSimulator:
    """Tests for the interaction routine."""

    async def test_perform(self, make_page, no_sleep):
        """TC-HB-N-06: Mouse moves, one scroll gesture, dwell."""
        # Given
        page = make_page()
        config = HumanBehaviorConfig(mouse_moves=2, dwell_min=1.0, dwell_max=1.0)
        simulator = HumanBehaviorSimulator(config, random.Random(6))

        # When
        await simulator.perform(page, (1280, 720))

        # Then
        assert len(page.mouse_positions) > 2
        scroll_calls = [args for script, args in page.evaluated if "scrollBy" in script]
        assert scroll_calls
        assert no_sleep.await_args_list[-1].args == (1.0,)

    async def test_pointer_stays_in_viewport(self, make_page, no_sleep):
        """TC-HB-N-07: Move targets lie in the inner 80% of the viewport."""
        # Given
        page = make_page()
        config = HumanBehaviorConfig(mouse_moves=5, mouse=MouseConfig(jitter_frequency=0))
        simulator = HumanBehaviorSimulator(config, random.Random(7))

        # When
        await simulator.perform(page, (1000, 500))

        # Then
        for x, y in page.mouse_positions:
            assert -100 <= x <= 1100
            assert -100 <= y <= 600
        final_x, final_y = page.mouse_positions[-1]
        assert 100 <= final_x <= 900
        assert 50 <= final_y <= 450

    def test_config_from_settings(self):
        assert HumanBehaviorConfig.from_settings().mouse_moves == 3
