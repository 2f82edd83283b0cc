import logging
from contextlib import contextmanager
from typing import Callable, Dict, Iterator, List, Optional, Protocol, Tuple

import numpy as np
from PIL import Image
from pydantic import ValidationError

from routecast.app.models import RouteFile

logger = logging.getLogger("routecast-worker")

Point = Tuple[float, float]

# Wall coordinates of each limb before the first move
START_POSE: Dict[str, Point] = {
    "LH": (0.42, 0.30),
    "RH": (0.58, 0.30),
    "LF": (0.44, 0.02),
    "RF": (0.56, 0.02),
}
LIMB_COLORS = {
    "LH": (230, 57, 70, 255),
    "RH": (29, 53, 87, 255),
    "LF": (244, 162, 97, 255),
    "RF": (42, 157, 143, 255),
}
WALL_FILL = (96, 96, 96, 255)


class Signal:
    def __init__(self):
        self._handlers: List[Callable[[], None]] = []

    def connect(self, handler: Callable[[], None]) -> None:
        self._handlers.append(handler)

    def disconnect(self, handler: Callable[[], None]) -> None:
        try:
            self._handlers.remove(handler)
        except ValueError:
            pass

    def emit(self) -> None:
        for handler in list(self._handlers):
            handler()

    @contextmanager
    def subscribed(self, handler: Callable[[], None]) -> Iterator[None]:
        self.connect(handler)
        try:
            yield
        finally:
            self.disconnect(handler)

    def __len__(self) -> int:
        return len(self._handlers)


class SceneDriver(Protocol):
    """What the job runner needs from whatever animates and draws the climber."""

    route_completed: Signal

    def load_route(self, route_json: str) -> bool: ...

    def play(self) -> None: ...

    def stop(self) -> None: ...

    def apply_texture(self, image: Image.Image) -> None: ...

    def update(self, dt: float) -> None: ...

    def attach_target(self, width: int, height: int) -> None: ...

    def render(self) -> bytes: ...

    def detach_target(self) -> None: ...


def _smoothstep(t: float) -> float:
    t = min(1.0, max(0.0, t))
    return t * t * (3.0 - 2.0 * t)


class HeadlessScene:
    """Stand-in scene: a textured wall with four limb markers moved along the route.

    Each move eases the limb to its hold over `move_duration` seconds, then
    holds still for `settle_delay` before the next move starts.
    """

    def __init__(self, move_duration: float = 1.2, settle_delay: float = 0.15):
        self.move_duration = max(1e-6, move_duration)
        self.settle_delay = max(0.0, settle_delay)
        self.route_completed = Signal()
        self.route: Optional[RouteFile] = None
        self.limbs: Dict[str, Point] = dict(START_POSE)
        self.playing = False
        self._texture: Optional[Image.Image] = None
        self._background: Optional[np.ndarray] = None
        self._target: Optional[np.ndarray] = None
        self._move_idx = 0
        self._phase = "move"
        self._elapsed = 0.0
        self._start: Point = (0.0, 0.0)

    def apply_texture(self, image: Image.Image) -> None:
        self._texture = image.convert("RGBA")

    def load_route(self, route_json: str) -> bool:
        try:
            route = RouteFile.model_validate_json(route_json)
        except ValidationError as e:
            logger.error("Route JSON rejected: %s", e)
            return False
        if not route.moves:
            logger.warning("Route JSON has no moves")
            return False
        self.route = route
        return True

    def play(self) -> None:
        if self.route is None:
            logger.error("play() called without a loaded route")
            return
        self.stop()
        self.limbs = dict(START_POSE)
        self._move_idx = 0
        self._begin_move()
        self.playing = True

    def stop(self) -> None:
        self.playing = False

    def _begin_move(self) -> None:
        move = self.route.moves[self._move_idx]
        self._phase = "move"
        self._elapsed = 0.0
        self._start = self.limbs[move.limb]

    def update(self, dt: float) -> None:
        remaining = dt
        while self.playing and remaining > 0:
            move = self.route.moves[self._move_idx]
            if self._phase == "move":
                step = min(self.move_duration - self._elapsed, remaining)
                self._elapsed += step
                remaining -= step
                t = _smoothstep(self._elapsed / self.move_duration)
                sx, sy = self._start
                self.limbs[move.limb] = (sx + (move.nx - sx) * t, sy + (move.ny - sy) * t)
                if self._elapsed >= self.move_duration:
                    self._phase = "settle"
                    self._elapsed = 0.0
                continue
            step = min(self.settle_delay - self._elapsed, remaining)
            self._elapsed += step
            remaining -= step
            if self._elapsed >= self.settle_delay:
                self._move_idx += 1
                if self._move_idx >= len(self.route.moves):
                    self.playing = False
                    logger.info("Route finished after %d moves", len(self.route.moves))
                    self.route_completed.emit()
                else:
                    self._begin_move()

    def attach_target(self, width: int, height: int) -> None:
        if self._texture is not None:
            wall = self._texture.resize((width, height), Image.BILINEAR)
            self._background = np.asarray(wall, dtype=np.uint8).copy()
        else:
            self._background = np.empty((height, width, 4), dtype=np.uint8)
            self._background[:] = WALL_FILL
        self._target = np.empty_like(self._background)

    def render(self) -> bytes:
        if self._target is None:
            raise RuntimeError("render() called without an attached target")
        height, width = self._target.shape[:2]
        np.copyto(self._target, self._background)
        radius = max(2, min(width, height) // 60)
        for limb, (nx, ny) in self.limbs.items():
            cx = int(round(nx * (width - 1)))
            cy = int(round((1.0 - ny) * (height - 1)))
            self._target[
                max(0, cy - radius) : cy + radius + 1, max(0, cx - radius) : cx + radius + 1
            ] = LIMB_COLORS[limb]
        return self._target.tobytes()

    def detach_target(self) -> None:
        self._target = None
        self._background = None
