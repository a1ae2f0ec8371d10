"""
Plausible human interaction for protection bypass.

Challenge scripts watch for pointer and scroll activity before clearing a
visitor. This module produces that activity:
- Mouse paths along randomized Bezier curves, slow at both ends
- Short inertial scrolls with ease-out
- Dwell pauses between gestures

Everything is driven through the Page protocol (mouse_move / evaluate), so it
works with any browser pool implementation.
"""

from __future__ import annotations

import asyncio
import math
import random
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from tierfetch.utils.config import get_settings
from tierfetch.utils.logging import get_logger

if TYPE_CHECKING:
    from tierfetch.crawler.browser_pool import Page

logger = get_logger(__name__)


@dataclass
class MouseConfig:
    """Mouse path shape and pacing."""

    base_speed: float = 800.0  # px/s
    speed_variance: float = 0.3
    control_point_variance: float = 80.0  # px, perpendicular to the straight line
    num_control_points: int = 2
    acceleration_ratio: float = 0.2
    deceleration_ratio: float = 0.3
    jitter_amplitude: float = 2.0
    jitter_frequency: float = 0.3
    min_steps: int = 10
    max_steps: int = 50


@dataclass
class ScrollConfig:
    """Scroll gesture size and animation."""

    base_scroll_amount: float = 300.0
    scroll_variance: float = 0.4
    animation_duration_ms: float = 400.0
    animation_steps: int = 8
    ease_out_power: float = 3.0


@dataclass
class HumanBehaviorConfig:
    """Interaction routine run before re-checking a challenge."""

    mouse: MouseConfig = field(default_factory=MouseConfig)
    scroll: ScrollConfig = field(default_factory=ScrollConfig)
    mouse_moves: int = 3
    move_pause_min: float = 0.5
    move_pause_max: float = 1.5
    dwell_min: float = 1.0
    dwell_max: float = 2.0

    @classmethod
    def from_settings(cls) -> HumanBehaviorConfig:
        return cls(mouse_moves=get_settings().protection.mouse_moves)


@dataclass(frozen=True)
class Point:
    x: float
    y: float

    def distance_to(self, other: Point) -> float:
        return math.hypot(self.x - other.x, self.y - other.y)


class MouseTrajectory:
    """Bezier mouse paths with eased speed and small jitter."""

    def __init__(self, config: MouseConfig | None = None, rng: random.Random | None = None):
        self._config = config or MouseConfig()
        self._rng = rng or random.Random()

    def generate_path(
        self,
        start: tuple[float, float],
        end: tuple[float, float],
    ) -> list[tuple[float, float, float]]:
        """Points from start to end.

        Returns:
            (x, y, delay_ms) per step; the last point is exactly `end`.
        """
        origin = Point(*start)
        target = Point(*end)
        distance = origin.distance_to(target)
        if distance < 1:
            return [(target.x, target.y, 0.0)]

        cfg = self._config
        steps = min(cfg.max_steps, max(cfg.min_steps, int(distance / 20)))
        curve = self._control_points(origin, target)
        speed = cfg.base_speed * (1 + self._rng.uniform(-cfg.speed_variance, cfg.speed_variance))
        step_ms = (distance / steps) / speed * 1000

        path: list[tuple[float, float, float]] = []
        for i in range(steps + 1):
            t = i / steps
            x, y = self._point_at(t, curve)
            if 0 < i < steps and self._rng.random() < cfg.jitter_frequency:
                x += self._rng.uniform(-cfg.jitter_amplitude, cfg.jitter_amplitude)
                y += self._rng.uniform(-cfg.jitter_amplitude, cfg.jitter_amplitude)
            path.append((x, y, step_ms / self._speed_factor(t)))
        return path

    def _control_points(self, origin: Point, target: Point) -> list[Point]:
        cfg = self._config
        normal = math.atan2(target.y - origin.y, target.x - origin.x) + math.pi / 2
        points = [origin]
        for i in range(1, cfg.num_control_points + 1):
            t = i / (cfg.num_control_points + 1)
            offset = self._rng.uniform(-cfg.control_point_variance, cfg.control_point_variance)
            points.append(
                Point(
                    origin.x + t * (target.x - origin.x) + offset * math.cos(normal),
                    origin.y + t * (target.y - origin.y) + offset * math.sin(normal),
                )
            )
        points.append(target)
        return points

    @staticmethod
    def _point_at(t: float, curve: list[Point]) -> tuple[float, float]:
        """De Casteljau evaluation."""
        coords = [(p.x, p.y) for p in curve]
        while len(coords) > 1:
            coords = [
                ((1 - t) * a[0] + t * b[0], (1 - t) * a[1] + t * b[1])
                for a, b in zip(coords, coords[1:])
            ]
        return coords[0]

    def _speed_factor(self, t: float) -> float:
        """0.3 at the ends of the path, 1.0 in the middle."""
        accel = self._config.acceleration_ratio
        decel = self._config.deceleration_ratio
        if t < accel:
            return 0.3 + 0.7 * (t / accel) ** 0.5
        if t > 1 - decel:
            return 1.0 - 0.7 * ((t - (1 - decel)) / decel) ** 2
        return 1.0


class InertialScroll:
    """Single scroll gestures with ease-out animation."""

    def __init__(self, config: ScrollConfig | None = None, rng: random.Random | None = None):
        self._config = config or ScrollConfig()
        self._rng = rng or random.Random()

    def gesture(self, direction: int = 1, intensity: float = 1.0) -> list[tuple[int, float]]:
        """Relative scroll increments for one gesture.

        Returns:
            (delta_px, delay_ms) per animation frame; deltas sum to the gesture size.
        """
        cfg = self._config
        total = int(
            cfg.base_scroll_amount
            * intensity
            * direction
            * (1 + self._rng.uniform(-cfg.scroll_variance, cfg.scroll_variance))
        )
        frame_ms = cfg.animation_duration_ms / cfg.animation_steps

        frames: list[tuple[int, float]] = []
        covered = 0
        for i in range(1, cfg.animation_steps + 1):
            eased = 1 - (1 - i / cfg.animation_steps) ** cfg.ease_out_power
            position = int(total * eased)
            frames.append((position - covered, frame_ms))
            covered = position
        return frames


class HumanBehaviorSimulator:
    """Runs interaction routines against a Page."""

    def __init__(self, config: HumanBehaviorConfig | None = None, rng: random.Random | None = None):
        self._config = config or HumanBehaviorConfig()
        self._rng = rng or random.Random()
        self._mouse = MouseTrajectory(self._config.mouse, self._rng)
        self._scroll = InertialScroll(self._config.scroll, self._rng)

    async def move_mouse(
        self,
        page: Page,
        start: tuple[float, float],
        end: tuple[float, float],
    ) -> None:
        for x, y, delay_ms in self._mouse.generate_path(start, end):
            await page.mouse_move(x, y)
            if delay_ms > 0:
                await asyncio.sleep(delay_ms / 1000)

    async def scroll(self, page: Page, direction: int = 1, intensity: float = 1.0) -> None:
        for delta, delay_ms in self._scroll.gesture(direction, intensity):
            if delta:
                await page.evaluate("(dy) => window.scrollBy(0, dy)", delta)
            await asyncio.sleep(delay_ms / 1000)

    async def perform(self, page: Page, viewport: tuple[int, int] = (1920, 1080)) -> None:
        """Mouse moves with pauses, a small scroll, then a dwell.

        Args:
            page: Page to act on.
            viewport: (width, height) used to keep the pointer on screen.
        """
        cfg = self._config
        width, height = viewport
        position = (width / 2, height / 2)

        for _ in range(cfg.mouse_moves):
            target = (
                self._rng.uniform(width * 0.1, width * 0.9),
                self._rng.uniform(height * 0.1, height * 0.9),
            )
            await self.move_mouse(page, position, target)
            position = target
            await asyncio.sleep(self._rng.uniform(cfg.move_pause_min, cfg.move_pause_max))

        await self.scroll(page, direction=1, intensity=0.5)
        await asyncio.sleep(self._rng.uniform(cfg.dwell_min, cfg.dwell_max))
        logger.debug("Human interaction performed", moves=cfg.mouse_moves)
