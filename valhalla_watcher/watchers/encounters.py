import logging
from typing import Any

from ..attribution import AttributionCache, IdentityResolver
from ..config import WatcherConfig
from ..dedup import DedupCache
from ..errors import RpcError, RunCancelled
from ..hydrate import build_card, deliver_card
from .base import Watcher

log = logging.getLogger(__name__)


class EncountersWatcher(Watcher):
    """Opponent Veras currently held by the characters a subscriber filters on.

    Opponent lists are stable for a while, so each (character, vera) pair is
    delivered once per sticky window. Every observed pair also feeds the shared
    attribution cache, which is how mints of those Veras get their character.
    """

    family = "encounters"

    def __init__(
        self,
        client: Any,
        store: Any,
        sink: Any,
        scheduler,
        tokens,
        config: WatcherConfig,
        identity: IdentityResolver,
        cache: AttributionCache,
        dedup: DedupCache,
        **kwargs: Any,
    ):
        super().__init__(client, store, sink, scheduler, tokens, config.encounters_poll_interval, **kwargs)
        self.config = config
        self.identity = identity
        self.cache = cache
        self.dedup = dedup
        self.sticky_ns = f"{self.family}:sticky"

    async def tick(self, subscriber_id: str, token: int) -> None:
        state = await self.load_state(subscriber_id)
        if state is None or not state.enabled:
            return
        if not state.filters:
            log.debug("[%s] no filters sub=%s", self.family, subscriber_id)
            return

        head = await self.client.current_height()
        for name in state.filters:
            self.checkpoint(subscriber_id, token)
            char_id = await self.identity.character_id(name)
            if not char_id:
                log.debug("[%s] name->character MISS %s", self.family, name)
                continue

            opponent_ids = await self.client.get_opponent_vera_ids(char_id)
            self.checkpoint(subscriber_id, token)
            if not opponent_ids:
                log.debug("[%s] no opponents name=%s char=%s", self.family, name, char_id)
                continue

            for vera_id in opponent_ids:
                self.cache.put(vera_id, char_id, name)
                await self._deliver(subscriber_id, token, name, char_id, vera_id, head)

    async def _deliver(self, subscriber_id: str, token: int, name: str, char_id: int, vera_id: int, head: int) -> None:
        key = (char_id, vera_id)
        if self.dedup.seen(self.sticky_ns, subscriber_id, key, head, self.config.sticky_dedup_ttl):
            return
        try:
            card = await build_card(
                self.client, self.family, vera_id, actor_id=char_id, actor_name=name, block=head
            )
            self.checkpoint(subscriber_id, token)
        except (RpcError, RunCancelled):
            self.dedup.discard(self.sticky_ns, subscriber_id, key)
            raise
        await deliver_card(self.sink, subscriber_id, card)
