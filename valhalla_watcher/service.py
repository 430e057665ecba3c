import asyncio
import logging
import time
from typing import Any, Callable, Dict, Iterable, Optional

from .attribution import AttributionCache, AttributionResolver, IdentityResolver, PendingQueue
from .config import WatcherConfig
from .dedup import DedupCache
from .models import SubscriberState
from .rpc import LedgerClient
from .scanner import LogScanner
from .scheduler import RunTokens, Scheduler
from .store import SqliteSubscriberStore, save_preferences
from .watchers import EncountersWatcher, MintsWatcher, PvpQueueWatcher, Watcher

log = logging.getLogger(__name__)

FAMILIES = ("mints", "encounters", "pvp")


class WatcherService:
    """Control surface over every watcher family; owns the shared caches and timers."""

    def __init__(
        self,
        config: WatcherConfig,
        client: Any,
        store: Any,
        sink: Any,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Any] = asyncio.sleep,
    ):
        self.config = config
        self.client = client
        self.store = store
        self.sink = sink
        self.scheduler = Scheduler()
        self.tokens = RunTokens()
        self.dedup = DedupCache(config.dedup_max_entries)
        self.cache = AttributionCache(config.attrib_ttl, config.attrib_cache_max, clock=clock)
        self.identity = IdentityResolver(
            client, name_ttl=config.name_ttl, fail_ttl=config.name_fail_ttl, clock=clock
        )
        self.scanner = LogScanner(client, config.block_batch)
        self.resolver = AttributionResolver(client, self.scanner, self.cache, self.identity, config, sleep=sleep)
        self.pending = PendingQueue()

        common = dict(client=client, store=store, sink=sink, scheduler=self.scheduler, tokens=self.tokens,
                      config=config, clock=clock)
        self.watchers: Dict[str, Watcher] = {
            "mints": MintsWatcher(
                scanner=self.scanner, resolver=self.resolver, pending=self.pending, dedup=self.dedup, **common
            ),
            "encounters": EncountersWatcher(identity=self.identity, cache=self.cache, dedup=self.dedup, **common),
            "pvp": PvpQueueWatcher(identity=self.identity, **common),
        }

    def _families(self, families: Optional[Iterable[str]]):
        names = list(families) if families is not None else list(FAMILIES)
        for name in names:
            if name not in self.watchers:
                raise ValueError(f"unknown watcher family {name!r}")
        return names

    async def enable(self, subscriber_id: str, state: SubscriberState) -> None:
        if not subscriber_id:
            raise ValueError("subscriber_id is required")
        wanted = {
            "mints": state.enabled,
            "encounters": state.enabled,
            "pvp": state.pvp_enabled,
        }
        await save_preferences(self.store, state)
        for family, on in wanted.items():
            watcher = self.watchers[family]
            if on:
                await watcher.enable(subscriber_id, state)
            elif watcher.is_active(subscriber_id):
                await watcher.pause(subscriber_id)

    async def pause(self, subscriber_id: str, families: Optional[Iterable[str]] = None) -> None:
        for family in self._families(families):
            await self.watchers[family].pause(subscriber_id)

    async def poll_once(self, subscriber_id: str, family: Optional[str] = None) -> Dict[str, bool]:
        names = self._families([family] if family else None)
        results = await asyncio.gather(*(self.watchers[name].poll_once(subscriber_id) for name in names))
        return dict(zip(names, results))

    async def reset(self, subscriber_id: str) -> None:
        await self.pause(subscriber_id)
        self.dedup.clear(subscriber_id)
        await self.store.delete(str(subscriber_id))

    async def close(self) -> None:
        await self.scheduler.stop_all()


def build_service(config: WatcherConfig, sink: Any, store: Any = None) -> WatcherService:
    client = LedgerClient.from_config(config)
    if store is None:
        store = SqliteSubscriberStore(config.db_path)
    return WatcherService(config, client, store, sink)
