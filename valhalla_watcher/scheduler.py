import asyncio
import logging
from typing import Awaitable, Callable, Dict, Hashable, Set

log = logging.getLogger(__name__)

Tick = Callable[[], Awaitable[object]]


class Scheduler:
    """One recurring task per key (typically ``(family, subscriber)``).

    Stopping a key never interrupts a tick that is already running; the loop
    exits once that tick returns. Work in flight is abandoned through
    :class:`RunTokens` instead.
    """

    def __init__(self) -> None:
        self._tasks: Dict[Hashable, asyncio.Task] = {}
        self._stops: Dict[Hashable, asyncio.Event] = {}
        self._draining: Set[asyncio.Task] = set()

    def start(self, key: Hashable, interval: float, tick: Tick) -> asyncio.Task:
        self.stop(key)
        stop = asyncio.Event()
        task = asyncio.get_running_loop().create_task(self._loop(key, interval, tick, stop))
        self._tasks[key] = task
        self._stops[key] = stop
        return task

    def stop(self, key: Hashable) -> bool:
        task = self._tasks.pop(key, None)
        stop = self._stops.pop(key, None)
        if task is None:
            return False
        if stop is not None:
            stop.set()
        if not task.done():
            self._draining.add(task)
            task.add_done_callback(self._draining.discard)
        return True

    def reschedule(self, key: Hashable, interval: float, tick: Tick) -> asyncio.Task:
        """Replace whatever loop runs under ``key``; its running tick, if any, is left to finish."""
        return self.start(key, interval, tick)

    def running(self, key: Hashable) -> bool:
        task = self._tasks.get(key)
        return task is not None and not task.done()

    def keys(self):
        return list(self._tasks)

    async def stop_all(self) -> None:
        for key in list(self._tasks):
            self.stop(key)
        tasks = list(self._draining)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    @staticmethod
    async def _loop(key: Hashable, interval: float, tick: Tick, stop: asyncio.Event) -> None:
        while not stop.is_set():
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval)
            except asyncio.TimeoutError:
                pass
            if stop.is_set():
                return
            try:
                await tick()
            except asyncio.CancelledError:
                raise
            except Exception:
                log.exception("scheduled tick %s failed", key)


class RunTokens:
    """Monotonic generation counter per key.

    Long-running work captures ``current(key)`` when it starts and compares it
    at every checkpoint; ``bump`` invalidates whatever is in flight.
    """

    def __init__(self) -> None:
        self._tokens: Dict[Hashable, int] = {}

    def current(self, key: Hashable) -> int:
        return self._tokens.get(key, 0)

    def bump(self, key: Hashable) -> int:
        self._tokens[key] = self.current(key) + 1
        return self._tokens[key]

    def is_current(self, key: Hashable, token: int) -> bool:
        return self.current(key) == token
