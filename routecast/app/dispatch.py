import logging
import queue
from typing import Callable

logger = logging.getLogger("routecast")

Action = Callable[[], None]


class DispatchQueue:
    """Hands work from HTTP threads to the thread that owns the scene."""

    def __init__(self):
        self._actions: "queue.SimpleQueue[Action]" = queue.SimpleQueue()

    def enqueue(self, action: Action) -> None:
        self._actions.put(action)

    def pending(self) -> int:
        return self._actions.qsize()

    def drain(self) -> int:
        """Run the actions queued so far; later arrivals wait for the next tick."""
        ran = 0
        for _ in range(self._actions.qsize()):
            try:
                action = self._actions.get_nowait()
            except queue.Empty:
                break
            ran += 1
            try:
                action()
            except Exception:
                logger.exception("Dispatched action %r failed", action)
        return ran
