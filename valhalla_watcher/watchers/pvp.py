import logging
from typing import Any, Dict, List, Optional, Tuple

from ..attribution import IdentityResolver
from ..config import WatcherConfig
from ..errors import RpcError
from ..hydrate import deliver_alert, retract_alert
from .base import Watcher

log = logging.getLogger(__name__)

BATTLE_LABELS = {
    3: "a Ranked (3v3) match",
    4: "an Unranked (1v1) match",
    5: "an Unranked (2v2) match",
    6: "an Unranked (3v3) match",
}

QueueKey = Tuple[int, int]


def battle_label(battle_type: int) -> str:
    return BATTLE_LABELS.get(battle_type, f"BattleType {battle_type}")


def alert_text(name: str, elo: int, battle_type: int) -> str:
    return f"{name} ({elo} elo) is looking for {battle_label(battle_type)}."


class PvpQueueWatcher(Watcher):
    """Alerts when a character joins a PvP queue and retracts the alert when it leaves."""

    family = "pvp"

    def __init__(
        self,
        client: Any,
        store: Any,
        sink: Any,
        scheduler,
        tokens,
        config: WatcherConfig,
        identity: IdentityResolver,
        **kwargs: Any,
    ):
        super().__init__(client, store, sink, scheduler, tokens, config.pvp_poll_interval, **kwargs)
        self.config = config
        self.identity = identity
        # subscriber -> {(battle type, character): alert message id}
        self.live: Dict[str, Dict[QueueKey, Optional[Any]]] = {}

    async def baseline(self, subscriber_id, state, token) -> None:
        self.live[subscriber_id] = {}

    def on_pause(self, subscriber_id: str) -> None:
        self.live.pop(subscriber_id, None)

    async def snapshot(self) -> Dict[int, Optional[List[Tuple[int, int]]]]:
        """Queue entries per battle type; ``None`` where the read failed."""
        out: Dict[int, Optional[List[Tuple[int, int]]]] = {}
        for battle_type in self.config.pvp_battle_types:
            try:
                ids, elos = await self.client.get_queued_characters(battle_type)
            except RpcError as exc:
                log.debug("[%s] queue %d unavailable: %s", self.family, battle_type, exc)
                out[battle_type] = None
                continue
            out[battle_type] = [(cid, elos[i] if i < len(elos) else 0) for i, cid in enumerate(ids)]
        return out

    async def tick(self, subscriber_id: str, token: int) -> None:
        state = await self.load_state(subscriber_id)
        if state is None or not state.pvp_enabled:
            return

        prev = self.live.get(subscriber_id, {})
        snapshots = await self.snapshot()
        self.checkpoint(subscriber_id, token)
        nxt: Dict[QueueKey, Optional[Any]] = {}

        for battle_type, entries in snapshots.items():
            if entries is None:
                # keep what we knew rather than retracting everyone on a failed read
                for key, msg_id in prev.items():
                    if key[0] == battle_type:
                        nxt[key] = msg_id
                continue
            for char_id, elo in entries:
                key = (battle_type, char_id)
                if key in prev:
                    nxt[key] = prev[key]
                    continue
                username = await self.identity.username(char_id)
                self.checkpoint(subscriber_id, token)
                name = username or f"Character {char_id}"
                msg_id = await deliver_alert(self.sink, subscriber_id, alert_text(name, elo, battle_type))
                nxt[key] = msg_id
                log.debug("[%s] enter sub=%s type=%d char=%s elo=%s msg=%s",
                          self.family, subscriber_id, battle_type, char_id, elo, msg_id)

        for key, msg_id in prev.items():
            if key in nxt:
                continue
            if msg_id is not None:
                await retract_alert(self.sink, subscriber_id, msg_id)
            log.debug("[%s] leave sub=%s key=%s deleted=%s", self.family, subscriber_id, key, msg_id)

        self.live[subscriber_id] = nxt
