import logging
from typing import Any, List, Optional

from ..attribution import AttributionResolver, PendingQueue
from ..config import WatcherConfig
from ..dedup import DedupCache
from ..errors import RpcError, RunCancelled
from ..events import TOPIC_TRANSFER, ZERO_TOPIC, decode_mint
from ..hydrate import build_card, deliver_card
from ..models import Cursor, LogRow, PendingAttribution, SubscriberState
from ..scanner import LogScanner, rows_after
from .base import Watcher

log = logging.getLogger(__name__)


class MintsWatcher(Watcher):
    """New Vera mints, delivered in log order once their character is known."""

    family = "mints"

    def __init__(
        self,
        client: Any,
        store: Any,
        sink: Any,
        scheduler,
        tokens,
        config: WatcherConfig,
        scanner: LogScanner,
        resolver: AttributionResolver,
        pending: PendingQueue,
        dedup: DedupCache,
        **kwargs: Any,
    ):
        super().__init__(client, store, sink, scheduler, tokens, config.poll_interval, **kwargs)
        self.config = config
        self.scanner = scanner
        self.resolver = resolver
        self.pending = pending
        self.dedup = dedup
        self.event_ns = f"{self.family}:event"

    async def scan_mints(
        self, from_block: int, to_block: int, limit: Optional[int] = None, checkpoint=None
    ) -> List[LogRow]:
        return await self.scanner.scan(
            from_block,
            to_block,
            decode=decode_mint,
            address=self.config.vera_erc721,
            topics=[TOPIC_TRANSFER, ZERO_TOPIC],
            limit=limit,
            checkpoint=checkpoint,
        )

    async def baseline(self, subscriber_id: str, state: SubscriberState, token: int) -> None:
        head = await self.client.current_height()
        await self.persist_cursor(subscriber_id, token, Cursor.head(head))
        log.info("[%s] baseline sub=%s head=%d", self.family, subscriber_id, head)

        if self.config.backfill_limit <= 0 or self.config.backfill_blocks <= 0:
            return
        rows = await self.scan_mints(
            max(0, head - self.config.backfill_blocks),
            head,
            limit=self.config.backfill_limit,
            checkpoint=self.checkpointer(subscriber_id, token),
        )
        if not rows:
            log.debug("[%s] backfill found nothing (window=%d)", self.family, self.config.backfill_blocks)
        for row in rows:
            self.checkpoint(subscriber_id, token)
            await self.handle_row(subscriber_id, row, token)

    def on_pause(self, subscriber_id: str) -> None:
        self.pending.clear(subscriber_id)

    async def tick(self, subscriber_id: str, token: int) -> None:
        state = await self.load_state(subscriber_id)
        if state is None or not state.enabled:
            return

        # pending first so late attribution is delivered with minimal latency
        await self.drain_pending(subscriber_id, token)

        head = await self.client.current_height()
        self.checkpoint(subscriber_id, token)
        cursor = state.cursor(self.family)
        from_block = cursor.block if cursor is not None else head
        if head < from_block:
            return

        rows = await self.scan_mints(from_block, head, checkpoint=self.checkpointer(subscriber_id, token))
        todo = rows_after(rows, cursor)

        last: Optional[Cursor] = None
        for row in todo:
            self.checkpoint(subscriber_id, token)
            await self.handle_row(subscriber_id, row, token)
            last = row.position

        if last is not None:
            await self.persist_cursor(subscriber_id, token, last)

    async def handle_row(self, subscriber_id: str, row: LogRow, token: int) -> bool:
        """Deliver one mint, or park it in the pending queue when no character is found yet."""
        event_key = (row.block, row.tx_hash, row.subject_id)
        if self.dedup.seen(self.event_ns, subscriber_id, event_key, row.block, self.config.event_dedup_ttl):
            return False

        try:
            record = await self.resolver.resolve(
                row.subject_id, row.tx_hash, row.block, checkpoint=self.checkpointer(subscriber_id, token)
            )
            self.checkpoint(subscriber_id, token)
            if record is None:
                if self.pending.add(subscriber_id, row, self.clock()):
                    log.debug("[%s] queued pending vera=%s sub=%s", self.family, row.subject_id, subscriber_id)
                return False
            card = await build_card(
                self.client, self.family, row.subject_id, record, block=row.block, tx_hash=row.tx_hash
            )
            self.checkpoint(subscriber_id, token)
        except (RpcError, RunCancelled):
            self.dedup.discard(self.event_ns, subscriber_id, event_key)
            raise

        await deliver_card(self.sink, subscriber_id, card)
        return True

    async def drain_pending(self, subscriber_id: str, token: int) -> int:
        delivered = 0
        due = self.pending.due(subscriber_id, self.clock(), self.config.attrib_retry_base_delay)
        for entry in due:
            self.checkpoint(subscriber_id, token)
            if await self._retry_pending(subscriber_id, entry, token):
                delivered += 1
        return delivered

    async def _retry_pending(self, subscriber_id: str, entry: PendingAttribution, token: int) -> bool:
        row = entry.row
        record = await self.resolver.resolve(
            entry.entity_id, row.tx_hash, row.block, checkpoint=self.checkpointer(subscriber_id, token)
        )
        self.checkpoint(subscriber_id, token)

        if record is None:
            entry.attempts += 1
            if entry.attempts < self.config.attrib_max_retries:
                return False
            if self.config.unattributed_policy == "drop":
                log.info(
                    "[%s] giving up on vera=%s after %d attempts, dropped",
                    self.family, entry.entity_id, entry.attempts,
                )
                self.pending.remove(subscriber_id, entry.entity_id)
                return False
            log.info(
                "[%s] giving up on attribution for vera=%s after %d attempts, delivering unattributed",
                self.family, entry.entity_id, entry.attempts,
            )

        try:
            card = await build_card(
                self.client, self.family, entry.entity_id, record, block=row.block, tx_hash=row.tx_hash
            )
        except RpcError as exc:
            log.warning("[%s] hydrate failed for pending vera=%s: %s", self.family, entry.entity_id, exc)
            return False
        self.checkpoint(subscriber_id, token)
        self.pending.remove(subscriber_id, entry.entity_id)
        await deliver_card(self.sink, subscriber_id, card)
        return True
