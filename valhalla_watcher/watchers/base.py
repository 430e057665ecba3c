import asyncio
import logging
import time
from typing import Any, Callable, Dict, Optional, Tuple

from ..errors import RpcError, RunCancelled
from ..models import Cursor, SubscriberState
from ..scheduler import RunTokens, Scheduler
from ..store import save_preferences

log = logging.getLogger(__name__)


class Watcher:
    """Per-subscriber lifecycle of one watcher family.

    ``enable`` -> baseline + immediate poll + recurring timer; ``pause`` stops
    the timer and bumps the run-token so in-flight work aborts at its next
    checkpoint. A tick that finds the subscriber's lock held is skipped.
    """

    family = "base"

    def __init__(
        self,
        client: Any,
        store: Any,
        sink: Any,
        scheduler: Scheduler,
        tokens: RunTokens,
        interval: float,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.store = store
        self.sink = sink
        self.scheduler = scheduler
        self.tokens = tokens
        self.interval = interval
        self.clock = clock
        self._locks: Dict[str, asyncio.Lock] = {}
        self._active: set = set()

    def key(self, subscriber_id: str) -> Tuple[str, str]:
        return (self.family, str(subscriber_id))

    def lock(self, subscriber_id: str) -> asyncio.Lock:
        lock = self._locks.get(subscriber_id)
        if lock is None:
            lock = self._locks[subscriber_id] = asyncio.Lock()
        return lock

    def is_active(self, subscriber_id: str) -> bool:
        return str(subscriber_id) in self._active

    def checkpoint(self, subscriber_id: str, token: int) -> None:
        if not self.tokens.is_current(self.key(subscriber_id), token):
            raise RunCancelled(f"{self.family} run for {subscriber_id} superseded")

    def checkpointer(self, subscriber_id: str, token: int) -> Callable[[], None]:
        return lambda: self.checkpoint(subscriber_id, token)

    async def enable(self, subscriber_id: str, state: SubscriberState) -> None:
        if not subscriber_id:
            raise ValueError("subscriber_id is required")
        sub = str(subscriber_id)
        key = self.key(sub)
        self.scheduler.stop(key)
        token = self.tokens.bump(key)
        self._active.add(sub)
        state = await save_preferences(self.store, state)

        async with self.lock(sub):
            try:
                await self.baseline(sub, state, token)
            except RunCancelled:
                return
            except RpcError as exc:
                log.warning("[%s] baseline failed sub=%s: %s", self.family, sub, exc)

        log.info("[%s] enable sub=%s (polling @ %.1fs)", self.family, sub, self.interval)
        await self.poll_once(sub)
        if self.tokens.is_current(key, token):
            self.scheduler.reschedule(key, self.interval, lambda: self.poll_once(sub))
            log.info("[%s] enabled (polling) sub=%s", self.family, sub)

    async def pause(self, subscriber_id: str) -> None:
        sub = str(subscriber_id)
        key = self.key(sub)
        self.scheduler.stop(key)
        self.tokens.bump(key)
        self._active.discard(sub)
        self.on_pause(sub)
        log.info("[%s] paused sub=%s", self.family, sub)

    async def poll_once(self, subscriber_id: str) -> bool:
        """Run one tick unless the subscriber is paused or a tick is already running."""
        sub = str(subscriber_id)
        if sub not in self._active:
            return False
        lock = self.lock(sub)
        if lock.locked():
            log.debug("[%s] tick skipped sub=%s (busy)", self.family, sub)
            return False
        async with lock:
            token = self.tokens.current(self.key(sub))
            try:
                await self.tick(sub, token)
            except RunCancelled:
                log.debug("[%s] tick cancelled sub=%s", self.family, sub)
            except RpcError as exc:
                log.warning("[%s] tick degraded sub=%s: %s", self.family, sub, exc)
            except Exception:
                log.exception("[%s] tick failed sub=%s", self.family, sub)
        return True

    async def load_state(self, subscriber_id: str) -> Optional[SubscriberState]:
        return await self.store.read(subscriber_id)

    async def persist_cursor(self, subscriber_id: str, token: int, cursor: Cursor) -> bool:
        """Read-modify-write the family cursor; never moves it backward."""
        self.checkpoint(subscriber_id, token)
        state = await self.store.read(subscriber_id)
        self.checkpoint(subscriber_id, token)
        if state is None:
            return False
        current = state.cursor(self.family)
        if current is not None and cursor <= current:
            return False
        await self.store.write(subscriber_id, state.with_cursor(self.family, cursor))
        return True

    async def baseline(self, subscriber_id: str, state: SubscriberState, token: int) -> None:
        pass

    def on_pause(self, subscriber_id: str) -> None:
        pass

    async def tick(self, subscriber_id: str, token: int) -> None:
        raise NotImplementedError
