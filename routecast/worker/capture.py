import asyncio
import logging
import os
from typing import List, Optional

from routecast.app.loop import FrameClock

from .encoder import EncoderBridge, EncoderError, even_dimension

logger = logging.getLogger("routecast-worker")


def _can_render(scene) -> bool:
    return scene is not None and all(
        callable(getattr(scene, name, None)) for name in ("attach_target", "render", "detach_target")
    )


async def capture_route(
    scene,
    clock: FrameClock,
    encoder_argv: List[str],
    output_path: str,
    width: int,
    height: int,
    fps: int,
    padding: float,
    encoder_timeout: float = 120.0,
) -> Optional[str]:
    """Stream one frame per tick into the encoder while the scene plays its route.

    While capturing, every tick advances the scene by exactly `1/fps` so the
    encoded video plays back at scene speed regardless of the tick rate.
    Capture ends on the first frame where the route has completed and at least
    `padding` seconds of frames have been recorded after completion. Returns
    the encoded file path, or None when nothing usable was produced.
    """
    if not _can_render(scene):
        logger.warning("No scene or render surface; idling %.2fs without capture", padding)
        await asyncio.sleep(padding)
        return None

    route_finished = False

    def on_route_completed() -> None:
        nonlocal route_finished
        route_finished = True

    width, height = even_dimension(width), even_dimension(height)
    os.makedirs(os.path.dirname(output_path) or ".", exist_ok=True)
    bridge = EncoderBridge(encoder_argv, output_path, width, height, fps, timeout=encoder_timeout)
    step = 1.0 / max(1, fps)
    with scene.route_completed.subscribed(on_route_completed):
        clock.fixed_step = step
        try:
            bridge.start()
            scene.attach_target(width, height)
            padded = 0.0
            while True:
                finished_before_frame = route_finished
                await clock.next_frame()
                bridge.write_frame(scene.render())
                if finished_before_frame:
                    padded += step
                if route_finished and padded + 1e-9 >= padding:
                    break
            path = bridge.finish()
        except EncoderError as e:
            logger.error("Capture to %s failed: %s", output_path, e)
            return None
        finally:
            clock.fixed_step = None
            try:
                scene.detach_target()
            except Exception:
                logger.exception("Failed to detach render target")
            bridge.abort()

    if not os.path.isfile(path):
        logger.error("Encoder reported success but %s is missing", path)
        return None
    return path
