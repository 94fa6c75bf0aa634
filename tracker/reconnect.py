import asyncio
from typing import Awaitable, Callable, Optional

import structlog

logger = structlog.get_logger(__name__)

MAX_RECONNECT_DELAY_SECONDS = 30


def reconnect_delay(attempt: int) -> int:
    """Seconds to wait before reconnect attempt number `attempt` (1-based)."""
    return min(attempt * attempt, MAX_RECONNECT_DELAY_SECONDS)


class ReconnectScheduler:
    """Quadratic, capped backoff with a one-second countdown before each attempt.

    Only one countdown runs at a time. The attempt counter is cleared by `reset()`
    once a connection has been established.
    """

    def __init__(
        self,
        connect: Callable[[], Awaitable[None]],
        on_caption: Optional[Callable[[str], None]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._connect = connect
        self._on_caption = on_caption or (lambda caption: None)
        self._sleep = sleep
        self.attempts = 0
        self.remaining_seconds = 0
        self._timer: Optional[asyncio.Task] = None

    @property
    def active(self) -> bool:
        return self._timer is not None

    def reset(self) -> None:
        self.attempts = 0

    def schedule(self) -> asyncio.Task:
        self.attempts += 1
        self.remaining_seconds = reconnect_delay(self.attempts)
        logger.info("Scheduling reconnect", attempt=self.attempts, delay_seconds=self.remaining_seconds)
        self._timer = asyncio.create_task(self._countdown(), name="sync-reconnect")
        self._timer.add_done_callback(self._on_task_done)
        return self._timer

    def cancel(self) -> None:
        """Stop the pending countdown. Safe to call any number of times."""
        timer, self._timer = self._timer, None
        if timer is None or timer.done():
            return
        if timer is not asyncio.current_task():
            timer.cancel()

    def _on_task_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("Reconnect attempt failed", attempt=self.attempts, error=str(error))

    async def _countdown(self) -> None:
        while True:
            await self._sleep(1)
            self.remaining_seconds -= 1

            if self.remaining_seconds == 0:
                # release the timer before connecting; the connection may schedule the next one
                self.cancel()
                self._on_caption("Reconnecting...")
                await self._connect()
                return
            elif self.remaining_seconds > 0:
                self._on_caption(f"Reconnecting in {self.remaining_seconds}s...")
