import argparse
import asyncio
import logging
from typing import List, Optional

from routecast.app.config import Settings
from routecast.app.dispatch import DispatchQueue
from routecast.app.loop import FrameClock, MainLoop
from routecast.app.runner import JobRunner
from routecast.app.server import ControlServer, create_app
from routecast.app.state import StatusStore
from routecast.worker.scene import HeadlessScene

logger = logging.getLogger("routecast")


class Service:
    """Everything one routecast process owns, built explicitly at startup."""

    def __init__(self, settings: Settings, scene=None):
        self.settings = settings
        self.scene = scene if scene is not None else HeadlessScene()
        self.store = StatusStore()
        self.dispatch = DispatchQueue()
        self.clock = FrameClock()
        self.runner = JobRunner(self.store, self.scene, self.clock, settings)
        self.loop = MainLoop(self.dispatch, self.clock, self.scene, tick_rate=settings.tick_rate)
        self.app = create_app(self.runner, self.dispatch, settings.shared_secret)
        self.server = ControlServer(self.app, settings.hosts, settings.port)

    async def run(self) -> None:
        # a failed bind leaves the main loop running without a control plane
        self.server.start()
        try:
            await self.loop.run()
        finally:
            self.server.stop()
            task = self.runner.task
            if task is not None and not task.done():
                logger.warning("Shutting down with job %s still active", self.runner.active_job_id)
                task.cancel()


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Local render job server")
    parser.add_argument("--port", type=int, help="listening port (ROUTECAST_PORT)")
    parser.add_argument(
        "--host",
        action="append",
        dest="hosts",
        help="host to bind, repeatable (ROUTECAST_HOSTS)",
    )
    parser.add_argument("--secret", help="bearer token required on requests (ROUTECAST_SECRET)")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    args = parse_args(argv)
    settings = Settings()
    overrides = {
        k: v
        for k, v in {"port": args.port, "hosts": args.hosts, "shared_secret": args.secret}.items()
        if v is not None
    }
    if overrides:
        settings = settings.model_copy(update=overrides)

    service = Service(settings)
    try:
        asyncio.run(service.run())
    except KeyboardInterrupt:
        logger.info("Interrupted, exiting")


if __name__ == "__main__":
    main()
