import logging
import re
from typing import Any, Callable, Dict, List, Optional, Sequence, TypeVar

from .errors import RpcError, rpc_error_message
from .models import Cursor, LogRow

log = logging.getLogger(__name__)

R = TypeVar("R")

TOO_LARGE_MARKERS = (
    "query returned more than",
    "too many results",
    "too many logs",
    "block range",
    "range is too large",
)
RATE_LIMITED = re.compile(r"rate limit|too many requests|\b429\b", re.IGNORECASE)


def _range_too_large(exc: RpcError) -> bool:
    msg = rpc_error_message(exc).lower()
    if RATE_LIMITED.search(msg):
        return False
    return any(marker in msg for marker in TOO_LARGE_MARKERS)


def _sort_key(row: Any):
    position = getattr(row, "position", None)
    if isinstance(position, Cursor):
        return (position.block, position.tx_index, position.log_index)
    return row.sort_key()


class LogScanner:
    def __init__(self, client: Any, batch_size: int = 6000):
        self.client = client
        self.batch_size = max(int(batch_size), 1)

    async def scan(
        self,
        from_block: int,
        to_block: int,
        *,
        decode: Callable[[Dict[str, Any]], Optional[R]],
        address: Optional[str] = None,
        topics: Optional[Sequence[Any]] = None,
        limit: Optional[int] = None,
        checkpoint: Optional[Callable[[], None]] = None,
    ) -> List[R]:
        """Decoded rows of ``[from_block, to_block]`` in ascending log order.

        Records that fail to decode are skipped. ``limit`` keeps only the most
        recent rows. ``checkpoint`` runs after every batch and may raise to abort.
        """
        rows: List[R] = []
        if from_block > to_block:
            return rows

        current = max(from_block, 0)
        batch_size = self.batch_size
        skipped = 0
        while current <= to_block:
            batch_to = min(current + batch_size - 1, to_block)
            try:
                logs = await self.client.get_logs(current, batch_to, address=address, topics=topics)
            except RpcError as exc:
                if batch_size > 1 and _range_too_large(exc):
                    batch_size = max(batch_size // 2, 1)
                    log.warning(
                        "get_logs too large (%d-%d), reducing batch size to %d", current, batch_to, batch_size
                    )
                    continue
                raise
            if checkpoint is not None:
                checkpoint()
            for raw in logs:
                row = decode(raw)
                if row is None:
                    skipped += 1
                    continue
                rows.append(row)
            current = batch_to + 1

        if skipped:
            log.debug("scan %d-%d skipped %d undecodable records", from_block, to_block, skipped)
        rows.sort(key=_sort_key)
        if limit is not None and limit >= 0:
            rows = rows[-limit:] if limit else []
        return rows


def rows_after(rows: Sequence[LogRow], cursor: Optional[Cursor]) -> List[LogRow]:
    if cursor is None:
        return list(rows)
    return [row for row in rows if row.position > cursor]
