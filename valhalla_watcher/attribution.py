"""Resolving which character a freshly minted Vera belongs to.

A mint's Transfer goes to a system account, so the character has to be joined
in from elsewhere. Strategies run in order and stop at the first confirmed hit:

1. same transaction: store records written in the mint's transaction carry the
   player's address or character id in their key tuple;
2. live probe: some queued character currently lists the Vera as an opponent;
3. backscan: an encounter record shortly before the mint names the character.

Every candidate is confirmed against the character's current opponent list
before it is accepted. Hits land in a TTL cache shared by all watcher families.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from .config import WatcherConfig
from .errors import RpcError
from .events import (
    TABLE_VERA_TOKEN_BACKLOG,
    TOPIC_STORE_SET_RECORD,
    bytes32_to_address,
    bytes32_to_int,
    decode_encounter_row,
    decode_store_record,
)
from .models import AttributionRecord, LogRow, PendingAttribution, name_key
from .scanner import LogScanner

log = logging.getLogger(__name__)

Clock = Callable[[], float]
Checkpoint = Optional[Callable[[], None]]


class AttributionCache:
    def __init__(self, ttl: float = 1800.0, max_entries: int = 5000, clock: Clock = time.monotonic):
        self.ttl = ttl
        self.max_entries = max_entries
        self.clock = clock
        self._entries: Dict[int, AttributionRecord] = {}

    def _prune(self) -> None:
        now = self.clock()
        if len(self._entries) > self.max_entries:
            for key in [k for k, v in self._entries.items() if v.expires_at <= now]:
                del self._entries[key]
            return
        for key, record in self._entries.items():
            if record.expires_at <= now:
                del self._entries[key]
                break

    def put(self, entity_id: int, actor_id: int, actor_name: Optional[str]) -> AttributionRecord:
        self._prune()
        record = AttributionRecord(int(entity_id), int(actor_id), actor_name, self.clock() + self.ttl)
        self._entries[int(entity_id)] = record
        return record

    def get(self, entity_id: int) -> Optional[AttributionRecord]:
        self._prune()
        record = self._entries.get(int(entity_id))
        if record is None:
            return None
        if record.expires_at <= self.clock():
            del self._entries[int(entity_id)]
            return None
        return record

    def __len__(self) -> int:
        return len(self._entries)


class IdentityResolver:
    """Cached character id <-> username lookups."""

    def __init__(
        self,
        client: Any,
        name_ttl: float = 300.0,
        fail_ttl: float = 60.0,
        id_ttl: float = 600.0,
        clock: Clock = time.monotonic,
    ):
        self.client = client
        self.name_ttl = name_ttl
        self.fail_ttl = fail_ttl
        self.id_ttl = id_ttl
        self.clock = clock
        self._names: Dict[int, Tuple[Optional[str], float]] = {}
        self._ids: Dict[str, Tuple[Optional[int], float]] = {}

    async def username(self, char_id: int) -> Optional[str]:
        now = self.clock()
        cached = self._names.get(char_id)
        if cached is not None:
            name, ts = cached
            ttl = self.name_ttl if name else self.fail_ttl
            if now - ts < ttl:
                return name
        name = await self.client.get_username(char_id)
        self._names[char_id] = (name, now)
        return name

    async def character_id(self, name: str) -> Optional[int]:
        key = name_key(name)
        now = self.clock()
        cached = self._ids.get(key)
        if cached is not None:
            char_id, ts = cached
            ttl = self.id_ttl if char_id else self.fail_ttl
            if now - ts < ttl:
                return char_id
        char_id = await self.client.get_character_id_by_name(name)
        self._ids[key] = (char_id if char_id and char_id > 0 else None, now)
        return self._ids[key][0]


class AttributionResolver:
    def __init__(
        self,
        client: Any,
        scanner: LogScanner,
        cache: AttributionCache,
        identity: IdentityResolver,
        config: WatcherConfig,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.client = client
        self.scanner = scanner
        self.cache = cache
        self.identity = identity
        self.config = config
        self.sleep = sleep

    async def resolve(
        self, entity_id: int, tx_hash: str, block: int, checkpoint: Checkpoint = None
    ) -> Optional[AttributionRecord]:
        cached = self.cache.get(entity_id)
        if cached is not None:
            return cached

        strategies = (
            ("same-tx", lambda: self.from_same_transaction(entity_id, tx_hash, checkpoint)),
            ("probe", lambda: self.from_live_probe(entity_id, checkpoint)),
            ("backscan", lambda: self.from_backscan(entity_id, block, checkpoint)),
        )
        for name, strategy in strategies:
            try:
                char_id = await strategy()
            except RpcError as exc:
                log.debug("attrib %s failed for vera=%s: %s", name, entity_id, exc)
                char_id = None
            if checkpoint is not None:
                checkpoint()
            if char_id:
                try:
                    username = await self.identity.username(char_id)
                except RpcError as exc:
                    log.debug("attrib username lookup failed for char=%s: %s", char_id, exc)
                    username = None
                log.debug("attrib %s HIT vera=%s char=%s name=%s", name, entity_id, char_id, username)
                return self.cache.put(entity_id, char_id, username)
            log.debug("attrib %s MISS vera=%s", name, entity_id)
        return None

    async def owns_opponent(self, char_id: int, entity_id: int) -> bool:
        try:
            return int(entity_id) in await self.client.get_opponent_vera_ids(char_id)
        except RpcError:
            return False

    async def wait_for_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        delay = 0.3
        for _ in range(max(self.config.receipt_attempts, 1)):
            receipt = await self.client.get_transaction_receipt(tx_hash)
            if receipt:
                return receipt
            await self.sleep(delay)
            delay = min(delay + 0.25, 2.0)
        return None

    async def _confirm_key(self, key: bytes, entity_id: int, tried: Set[int]) -> Optional[int]:
        candidates: List[int] = []
        address = bytes32_to_address(key)
        if address:
            try:
                selected = await self.client.get_selected_character_id(address)
            except RpcError:
                selected = 0
            if selected > 0:
                candidates.append(selected)
        raw_id = bytes32_to_int(key)
        if raw_id > 0:
            candidates.append(raw_id)

        for char_id in candidates:
            if char_id in tried:
                continue
            tried.add(char_id)
            if await self.owns_opponent(char_id, entity_id):
                return char_id
        return None

    async def from_same_transaction(self, entity_id: int, tx_hash: str, checkpoint: Checkpoint = None) -> Optional[int]:
        if not tx_hash:
            return None
        receipt = await self.wait_for_receipt(tx_hash)
        if not receipt:
            return None
        records = [r for r in (decode_store_record(raw) for raw in receipt.get("logs") or []) if r is not None]
        log.debug("attrib scan tx=%s store records=%d", tx_hash, len(records))

        strict = [
            r for r in records
            if r.kind == "delete" and r.table_id == bytes(TABLE_VERA_TOKEN_BACKLOG)
        ]
        tried: Set[int] = set()
        for record in strict + [r for r in records if r not in strict]:
            for key in record.key_tuple:
                char_id = await self._confirm_key(key, entity_id, tried)
                if checkpoint is not None:
                    checkpoint()
                if char_id:
                    return char_id
        return None

    async def from_live_probe(self, entity_id: int, checkpoint: Checkpoint = None) -> Optional[int]:
        try:
            char_ids, _elos = await self.client.get_queued_characters(self.config.battle_type)
        except RpcError:
            char_ids = []
        for char_id in char_ids[: self.config.probe_max]:
            if await self.owns_opponent(char_id, entity_id):
                return char_id
            if checkpoint is not None:
                checkpoint()
        return None

    async def from_backscan(self, entity_id: int, block: int, checkpoint: Checkpoint = None) -> Optional[int]:
        from_block = max(0, block - self.config.attrib_backscan_blocks)
        rows = await self.scanner.scan(
            from_block,
            block,
            decode=decode_encounter_row,
            topics=[TOPIC_STORE_SET_RECORD],
            checkpoint=checkpoint,
        )
        tried: Set[int] = set()
        for row in rows:
            if row.subject_id in tried:
                continue
            tried.add(row.subject_id)
            if await self.owns_opponent(row.subject_id, entity_id):
                return row.subject_id
            if checkpoint is not None:
                checkpoint()
        log.debug("attrib backscan scanned %d encounter rows for vera=%s", len(rows), entity_id)
        return None


class PendingQueue:
    """Mints waiting for attribution, one entry per (subscriber, entity)."""

    def __init__(self) -> None:
        self._entries: Dict[Tuple[str, int], PendingAttribution] = {}

    def add(self, subscriber_id: str, row: LogRow, now: float) -> bool:
        key = (str(subscriber_id), int(row.subject_id))
        if key in self._entries:
            return False
        self._entries[key] = PendingAttribution(str(subscriber_id), int(row.subject_id), row, 0, now)
        return True

    def get(self, subscriber_id: str, entity_id: int) -> Optional[PendingAttribution]:
        return self._entries.get((str(subscriber_id), int(entity_id)))

    def entries(self, subscriber_id: str) -> List[PendingAttribution]:
        return [p for (sub, _), p in self._entries.items() if sub == str(subscriber_id)]

    def due(self, subscriber_id: str, now: float, base_delay: float) -> List[PendingAttribution]:
        """Entries whose backoff, ``base_delay * (attempts + 1) ** 2`` since first seen, has elapsed."""
        return [
            p for p in self.entries(subscriber_id)
            if now - p.first_seen_at >= base_delay * (p.attempts + 1) ** 2
        ]

    def remove(self, subscriber_id: str, entity_id: int) -> None:
        self._entries.pop((str(subscriber_id), int(entity_id)), None)

    def clear(self, subscriber_id: str) -> None:
        for key in [k for k in self._entries if k[0] == str(subscriber_id)]:
            del self._entries[key]

    def __len__(self) -> int:
        return len(self._entries)
