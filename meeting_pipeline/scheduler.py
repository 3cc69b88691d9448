import asyncio
import logging
from typing import Awaitable, Callable, Optional, Set

logger = logging.getLogger(__name__)

TickCallback = Callable[[], Awaitable[None]]


class RepeatingTimer:
    """Run ``callback`` every ``interval_ms`` until cancelled.

    Every tick is spawned as its own task, so a tick that is still waiting on
    I/O never delays the next one. Exceptions raised by a tick are logged and
    do not stop the timer.
    """

    def __init__(self, interval_ms: int, callback: TickCallback, name: str = "timer") -> None:
        if interval_ms <= 0:
            raise ValueError("interval_ms must be positive")
        self.interval = interval_ms / 1000
        self.callback = callback
        self.name = name
        self._task: Optional[asyncio.Task] = None
        self._ticks: Set[asyncio.Task] = set()
        self._cancelled = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._cancelled

    def start(self) -> None:
        if self._task is not None:
            return
        self._task = asyncio.create_task(self._run(), name=f"{self.name}-loop")

    async def _run(self) -> None:
        while not self._cancelled:
            await asyncio.sleep(self.interval)
            if self._cancelled:
                break
            tick = asyncio.create_task(self._invoke(), name=f"{self.name}-tick")
            self._ticks.add(tick)
            tick.add_done_callback(self._ticks.discard)

    async def _invoke(self) -> None:
        try:
            await self.callback()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("[%s] tick failed", self.name)

    def cancel(self) -> None:
        """Stop scheduling new ticks. Safe to call more than once."""
        self._cancelled = True
        if self._task is not None and not self._task.done():
            self._task.cancel()

    async def join(self) -> None:
        """Wait for ticks that were already running when the timer stopped."""
        if self._ticks:
            await asyncio.gather(*list(self._ticks), return_exceptions=True)


TimerFactory = Callable[[int, TickCallback, str], RepeatingTimer]
