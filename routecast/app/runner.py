import asyncio
import logging
import os
import re
import time
from typing import Optional, Tuple

import httpx

from routecast.worker.capture import capture_route

from .config import Settings
from .loop import FrameClock
from .models import JobPayload, JobStatus
from .route_plan import route_json
from .state import StatusStore
from .storage import decode_texture, fetch_bytes, upload_file

logger = logging.getLogger("routecast")

_UNSAFE_NAME = re.compile(r"[^A-Za-z0-9_.-]")


class JobRunner:
    """Runs at most one render job at a time on the main loop.

    `enqueue_job` must be called on the main-loop thread (via the dispatch
    queue); `get_status` and `current_state` may be read from any thread.
    """

    def __init__(
        self,
        store: StatusStore,
        scene,
        clock: FrameClock,
        settings: Settings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.store = store
        self.scene = scene
        self.clock = clock
        self.settings = settings
        self.transport = transport
        self._active: Optional[JobPayload] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def current_state(self) -> str:
        return "idle" if self._active is None else "busy"

    @property
    def active_job_id(self) -> Optional[str]:
        active = self._active
        return active.job_id if active is not None else None

    @property
    def task(self) -> Optional[asyncio.Task]:
        return self._task

    def get_status(self, job_id: Optional[str]) -> JobStatus:
        return self.store.get(job_id) or JobStatus.unknown(job_id)

    def enqueue_job(self, payload: JobPayload) -> None:
        if self._active is not None:
            logger.warning(
                "Job %s rejected: job %s is still running", payload.job_id, self._active.job_id
            )
            if payload.job_id != self._active.job_id:
                self.store.admit(JobStatus.finished(payload.job_id, False, "busy"))
            return

        self.store.admit(JobStatus.queued(payload.job_id))
        self._active = payload
        self._task = asyncio.get_running_loop().create_task(
            self._run(payload), name=f"render-{payload.job_id}"
        )

    def _stage(self, job_id: str, stage: str) -> None:
        logger.info("Job %s: %s", job_id, stage)
        self.store.update(JobStatus.running(job_id, stage))

    async def _run(self, payload: JobPayload) -> None:
        success, message = False, "internal error"
        try:
            success, message = await self._run_stages(payload)
        except asyncio.CancelledError:
            message = "cancelled"
            raise
        except Exception as e:
            logger.exception("Job %s crashed", payload.job_id)
            message = f"internal error: {e}"
        finally:
            self._finish(payload.job_id, success, message)

    def _finish(self, job_id: str, success: bool, message: str) -> None:
        if success:
            logger.info("Job %s completed: %s", job_id, message)
        else:
            logger.warning("Job %s failed: %s", job_id, message)
        self.store.update(JobStatus.finished(job_id, success, message))
        self._active = None
        self._task = None

    async def _run_stages(self, payload: JobPayload) -> Tuple[bool, str]:
        job_id = payload.job_id
        self._stage(job_id, "downloading")
        if not payload.route:
            return False, "route json missing"

        texture = None
        if payload.texture_url:
            try:
                data = await fetch_bytes(
                    payload.texture_url, timeout=self.settings.http_timeout, transport=self.transport
                )
            except httpx.HTTPError as e:
                return False, f"texture download failed: {e}"
            try:
                texture = decode_texture(data)
            except (OSError, ValueError) as e:
                return False, f"texture decode failed: {e}"

        self._stage(job_id, "configuring")
        if texture is not None and self.scene is not None:
            self.scene.apply_texture(texture)
        if not self._apply_route(payload):
            return False, "route load failed"

        self._stage(job_id, "rendering")
        video_path = await self._capture(payload)
        if not video_path or not os.path.isfile(video_path):
            return False, "capture failed"

        self._stage(job_id, "uploading")
        try:
            return await self._upload(payload, video_path)
        finally:
            if not self.settings.keep_outputs:
                try:
                    os.remove(video_path)
                except OSError as e:
                    logger.warning("Could not remove %s: %s", video_path, e)

    def _apply_route(self, payload: JobPayload) -> bool:
        if self.scene is None:
            logger.warning("Job %s: no scene attached, route not applied", payload.job_id)
            return True
        self.scene.stop()
        if not self.scene.load_route(route_json(payload)):
            return False
        self.scene.play()
        return True

    async def _capture(self, payload: JobPayload) -> Optional[str]:
        name = f"{_UNSAFE_NAME.sub('_', payload.job_id)}_{int(time.time())}.mp4"
        output_path = os.path.join(self.settings.output_dir, name)
        try:
            return await capture_route(
                self.scene,
                self.clock,
                self.settings.encoder_argv(),
                output_path,
                payload.width or self.settings.default_width,
                payload.height or self.settings.default_height,
                payload.fps,
                payload.duration_padding,
                encoder_timeout=self.settings.encoder_timeout,
            )
        except Exception:
            logger.exception("Job %s: capture crashed", payload.job_id)
            return None

    async def _upload(self, payload: JobPayload, video_path: str) -> Tuple[bool, str]:
        if not payload.upload_url:
            return True, "no upload url provided"
        return await upload_file(
            payload.upload_url,
            video_path,
            timeout=self.settings.upload_timeout,
            transport=self.transport,
        )
