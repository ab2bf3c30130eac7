import asyncio
import logging
from typing import Awaitable, Callable, Dict

logger = logging.getLogger(__name__)


class PhaseTimer:
    """
    One-shot, cancellable timers keyed by room code.
    Scheduling a key that already has a pending timer cancels the old one,
    so each room has at most one live timer (the discussion end trigger).
    """

    def __init__(self):
        self._tasks: Dict[str, asyncio.Task] = {}

    def schedule(
        self, key: str, delay: float, callback: Callable[[], Awaitable[None]]
    ) -> None:
        self.cancel(key)
        self._tasks[key] = asyncio.create_task(
            self._fire(key, delay, callback), name=f"phase-timer-{key}"
        )

    def cancel(self, key: str) -> None:
        task = self._tasks.pop(key, None)
        if task and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def cancel_all(self) -> None:
        for key in list(self._tasks):
            self.cancel(key)

    def pending(self, key: str) -> bool:
        task = self._tasks.get(key)
        return bool(task and not task.done())

    async def _fire(
        self, key: str, delay: float, callback: Callable[[], Awaitable[None]]
    ) -> None:
        await asyncio.sleep(delay)
        if self._tasks.get(key) is asyncio.current_task():
            self._tasks.pop(key, None)
        try:
            await callback()
        except Exception:
            logger.exception("[%s] Phase timer callback failed", key)
