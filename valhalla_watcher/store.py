import asyncio
import json
import sqlite3
from dataclasses import replace
from typing import Dict, Optional, Protocol

from .models import SubscriberState


class SubscriberStore(Protocol):
    async def read(self, subscriber_id: str) -> Optional[SubscriberState]: ...

    async def write(self, subscriber_id: str, state: SubscriberState) -> None: ...

    async def delete(self, subscriber_id: str) -> None: ...


class MemorySubscriberStore:
    def __init__(self) -> None:
        self._states: Dict[str, dict] = {}

    async def read(self, subscriber_id: str) -> Optional[SubscriberState]:
        data = self._states.get(str(subscriber_id))
        return SubscriberState.from_dict(data) if data is not None else None

    async def write(self, subscriber_id: str, state: SubscriberState) -> None:
        self._states[str(subscriber_id)] = state.to_dict()

    async def delete(self, subscriber_id: str) -> None:
        self._states.pop(str(subscriber_id), None)


class SqliteSubscriberStore:
    def __init__(self, db_path: str = "./watcher.db"):
        self.db_path = db_path
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.db_lock = asyncio.Lock()
        self.init_db()

    def init_db(self) -> None:
        cur = self.conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS subscribers (
                subscriber_id TEXT PRIMARY KEY,
                state TEXT NOT NULL,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
            """
        )
        self.conn.commit()

    async def read(self, subscriber_id: str) -> Optional[SubscriberState]:
        async with self.db_lock:
            row = self.conn.execute(
                "SELECT state FROM subscribers WHERE subscriber_id = ?", (str(subscriber_id),)
            ).fetchone()
        if row is None:
            return None
        return SubscriberState.from_dict(json.loads(row["state"]))

    async def write(self, subscriber_id: str, state: SubscriberState) -> None:
        async with self.db_lock:
            cur = self.conn.cursor()
            try:
                cur.execute(
                    """
                    INSERT INTO subscribers (subscriber_id, state, updated_at)
                    VALUES (?, ?, CURRENT_TIMESTAMP)
                    ON CONFLICT(subscriber_id) DO UPDATE SET
                        state = excluded.state, updated_at = CURRENT_TIMESTAMP
                    """,
                    (str(subscriber_id), json.dumps(state.to_dict(), ensure_ascii=True)),
                )
                self.conn.commit()
            except Exception:
                self.conn.rollback()
                raise

    async def delete(self, subscriber_id: str) -> None:
        async with self.db_lock:
            self.conn.execute("DELETE FROM subscribers WHERE subscriber_id = ?", (str(subscriber_id),))
            self.conn.commit()

    def close(self) -> None:
        self.conn.close()


async def save_preferences(store: SubscriberStore, state: SubscriberState) -> SubscriberState:
    """Write the subscriber's flags and filters; a stored cursor only ever moves forward."""
    existing = await store.read(state.subscriber_id)
    if existing is not None:
        cursors = dict(existing.cursors)
        for family, cursor in state.cursors.items():
            stored = cursors.get(family)
            if stored is None or cursor > stored:
                cursors[family] = cursor
        state = replace(state, cursors=cursors)
    await store.write(state.subscriber_id, state)
    return state
