import asyncio
import logging
from typing import Awaitable, Callable, Optional

log = logging.getLogger("supervisor.scheduler")

TaskFactory = Callable[[], Awaitable[None]]


def compute_backoff_delay(
    attempts: int,
    base: float = 5.0,
    cap: float = 60.0,
    factor: float = 1.5,
    jitter: float = 0.0,
) -> float:
    """
    Delay before reconnect attempt number ``attempts`` (1-based):
    ``min(base * factor ** (attempts - 1) + jitter, cap)``. Never exceeds ``cap``.
    """
    n = max(1, int(attempts))
    return min(base * (factor ** (n - 1)) + max(0.0, jitter), cap)


class ScheduledCall:
    def __init__(self, task: "asyncio.Task[None]") -> None:
        self._task = task

    def cancel(self) -> None:
        if not self._task.done():
            self._task.cancel()

    @property
    def cancelled(self) -> bool:
        return self._task.cancelled()

    def done(self) -> bool:
        return self._task.done()


class Scheduler:
    """Runs a coroutine factory after a delay. Tests substitute a manual clock."""

    def schedule_after(self, delay: float, factory: TaskFactory, name: Optional[str] = None):
        raise NotImplementedError


class AsyncioScheduler(Scheduler):
    def schedule_after(self, delay: float, factory: TaskFactory, name: Optional[str] = None) -> ScheduledCall:
        async def _runner() -> None:
            try:
                await asyncio.sleep(max(0.0, delay))
                await factory()
            except asyncio.CancelledError:
                raise
            except Exception:
                log.exception("Scheduled task %s failed", name or factory)

        return ScheduledCall(asyncio.create_task(_runner(), name=name))
