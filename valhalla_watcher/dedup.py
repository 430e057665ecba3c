import logging
from typing import Dict, Hashable, Tuple

log = logging.getLogger(__name__)


class DedupCache:
    """Block-windowed "seen" sets, one map per (namespace, subscriber).

    A key is suppressed while its recorded expiry block is at or beyond the
    block being processed. Once a map grows past ``max_entries`` it is cleared
    wholesale instead of swept; the cost is an occasional re-delivery.
    """

    def __init__(self, max_entries: int = 6000):
        self.max_entries = max_entries
        self._maps: Dict[Tuple[str, str], Dict[Hashable, int]] = {}

    def seen(self, namespace: str, subscriber_id: str, key: Hashable, current_block: int, ttl_blocks: int) -> bool:
        entries = self._maps.setdefault((namespace, str(subscriber_id)), {})
        expiry = entries.get(key)
        if expiry is not None and expiry >= current_block:
            return True
        entries[key] = current_block + ttl_blocks
        if len(entries) > self.max_entries:
            log.debug("dedup %s/%s over %d entries, clearing", namespace, subscriber_id, self.max_entries)
            entries.clear()
        return False

    def discard(self, namespace: str, subscriber_id: str, key: Hashable) -> None:
        entries = self._maps.get((namespace, str(subscriber_id)))
        if entries is not None:
            entries.pop(key, None)

    def clear(self, subscriber_id: str) -> None:
        for ns_key in [k for k in self._maps if k[1] == str(subscriber_id)]:
            del self._maps[ns_key]

    def size(self, namespace: str, subscriber_id: str) -> int:
        return len(self._maps.get((namespace, str(subscriber_id)), {}))
