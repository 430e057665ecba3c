from __future__ import annotations

import asyncio

from fakes import (
    FakeLedger,
    RecordingSink,
    address_topic,
    delete_record_log,
    int_key,
    make_config,
    no_sleep,
    transfer_log,
    tx_hash,
)
from valhalla_watcher.models import Cursor, SubscriberState
from valhalla_watcher.service import WatcherService
from valhalla_watcher.store import MemorySubscriberStore

PLAYER = "0x3333333333333333333333333333333333333333"
SUB = "chat-1"


def mint_with_receipt(ledger, block, tx_index, log_index, vera_id, key, n):
    tx = tx_hash(n)
    ledger.add_logs(transfer_log(block, tx_index, log_index, vera_id, tx=tx))
    ledger.add_receipt(tx, delete_record_log(block, tx_index, log_index + 1, [key], tx=tx))
    return tx


def test_rows_delivered_in_log_order_and_cursor_advances(ledger, store, sink, service_factory):
    ledger.head = 105
    mint_with_receipt(ledger, 103, 2, 1, 502, int_key(12), 2)
    mint_with_receipt(ledger, 101, 0, 0, 501, address_topic(PLAYER), 1)
    ledger.selected[PLAYER] = 11
    ledger.opponents[11] = [501]
    ledger.opponents[12] = [502]
    ledger.names[11] = "Alice"
    ledger.names[12] = "Bob"

    async def run_test():
        service = service_factory()
        state = SubscriberState(SUB, enabled=True).with_cursor("mints", Cursor(100, 0, 0))
        await store.write(SUB, state)
        mints = service.watchers["mints"]
        await mints.tick(SUB, service.tokens.current(mints.key(SUB)))

        assert sink.vera_ids() == [501, 502]
        assert [card.actor_name for _, card in sink.cards] == ["Alice", "Bob"]
        assert all(card.attributed for _, card in sink.cards)
        saved = await store.read(SUB)
        assert saved.cursor("mints") == Cursor(103, 2, 1)

        # re-polling the same head delivers nothing new
        await mints.tick(SUB, service.tokens.current(mints.key(SUB)))
        assert sink.vera_ids() == [501, 502]

    asyncio.run(run_test())


def test_enable_starts_live_only(ledger, store, sink, service_factory):
    ledger.add_logs(transfer_log(90, 0, 0, 400))

    async def run_test():
        service = service_factory()
        await service.enable(SUB, SubscriberState(SUB, enabled=True))
        saved = await store.read(SUB)
        assert saved.cursor("mints") == Cursor.head(100)
        assert sink.cards == []
        assert service.scheduler.running(("mints", SUB))
        await service.close()

    asyncio.run(run_test())


def test_backfill_delivers_most_recent_mint(ledger, sink, service_factory):
    ledger.add_logs(transfer_log(80, 0, 0, 401), transfer_log(90, 0, 0, 402))
    ledger.names[7] = "Cara"

    async def run_test():
        service = service_factory(backfill_limit=1, backfill_blocks=50)
        service.cache.put(402, 7, None)
        await service.enable(SUB, SubscriberState(SUB, enabled=True))
        await service.close()

    asyncio.run(run_test())
    assert sink.vera_ids() == [402]


def test_late_attribution_is_delivered_from_pending(ledger, store, sink, service_factory):
    async def run_test():
        service = service_factory()
        await service.enable(SUB, SubscriberState(SUB, enabled=True))
        mints = service.watchers["mints"]

        ledger.head = 110
        ledger.add_logs(transfer_log(105, 0, 0, 650))
        await mints.poll_once(SUB)
        assert sink.cards == []
        assert service.pending.get(SUB, 650) is not None
        assert (await store.read(SUB)).cursor("mints") == Cursor(105, 0, 0)

        ledger.queues[0] = ([44], [1000])
        ledger.opponents[44] = [650]
        ledger.names[44] = "Dana"
        await mints.poll_once(SUB)
        assert sink.vera_ids() == [650]
        assert sink.cards[0][1].actor_name == "Dana"
        assert len(service.pending) == 0
        await service.close()

    asyncio.run(run_test())


def test_unattributed_after_max_attempts(ledger, sink, service_factory):
    async def run_test():
        service = service_factory(attrib_max_retries=2)
        await service.enable(SUB, SubscriberState(SUB, enabled=True))
        mints = service.watchers["mints"]
        ledger.head = 101
        ledger.add_logs(transfer_log(101, 0, 0, 660))

        await mints.poll_once(SUB)
        await mints.poll_once(SUB)
        assert sink.cards == []
        assert service.pending.get(SUB, 660).attempts == 1
        await mints.poll_once(SUB)
        await service.close()

    asyncio.run(run_test())
    [(sub, card)] = sink.cards
    assert card.vera_id == 660
    assert not card.attributed
    assert card.actor_name == "Unclaimed #660"


def test_drop_policy_discards_unattributed(ledger, sink, service_factory):
    async def run_test():
        service = service_factory(attrib_max_retries=1, unattributed_policy="drop")
        await service.enable(SUB, SubscriberState(SUB, enabled=True))
        mints = service.watchers["mints"]
        ledger.head = 101
        ledger.add_logs(transfer_log(101, 0, 0, 661))
        await mints.poll_once(SUB)
        await mints.poll_once(SUB)
        assert len(service.pending) == 0
        await service.close()

    asyncio.run(run_test())
    assert sink.cards == []


def test_hydrate_failure_keeps_cursor_and_retries(ledger, store, sink, service_factory):
    async def run_test():
        service = service_factory()
        await service.enable(SUB, SubscriberState(SUB, enabled=True))
        mints = service.watchers["mints"]
        service.cache.put(670, 9, "Eve")
        ledger.head = 102
        ledger.add_logs(transfer_log(102, 0, 0, 670))

        ledger.failing["get_vera"] = ValueError("execution reverted")
        await mints.poll_once(SUB)
        assert sink.cards == []
        assert (await store.read(SUB)).cursor("mints") == Cursor.head(100)

        del ledger.failing["get_vera"]
        await mints.poll_once(SUB)
        await mints.poll_once(SUB)
        assert sink.vera_ids() == [670]
        assert (await store.read(SUB)).cursor("mints") == Cursor(102, 0, 0)
        await service.close()

    asyncio.run(run_test())


def test_sink_failure_does_not_block_the_stream(ledger, store, sink, service_factory):
    async def run_test():
        service = service_factory()
        await service.enable(SUB, SubscriberState(SUB, enabled=True))
        service.cache.put(680, 9, "Eve")
        ledger.head = 103
        ledger.add_logs(transfer_log(103, 0, 0, 680))
        sink.fail_cards = True
        await service.poll_once(SUB, "mints")
        assert (await store.read(SUB)).cursor("mints") == Cursor(103, 0, 0)
        await service.close()

    asyncio.run(run_test())
    assert sink.cards == []


class PausingLedger(FakeLedger):
    """Pauses the subscriber the moment a receipt is requested."""

    service = None

    async def get_transaction_receipt(self, tx):
        await self.service.pause(SUB)
        return await super().get_transaction_receipt(tx)


def test_pause_during_backfill_stops_delivery():
    ledger = PausingLedger(head=100)
    mint_with_receipt(ledger, 95, 0, 0, 690, int_key(15), 9)
    ledger.opponents[15] = [690]
    sink = RecordingSink()
    store = MemorySubscriberStore()

    async def run_test():
        service = WatcherService(make_config(backfill_limit=1), ledger, store, sink, sleep=no_sleep)
        ledger.service = service
        await service.enable(SUB, SubscriberState(SUB, enabled=True))
        assert not service.scheduler.running(("mints", SUB))
        assert not service.watchers["mints"].is_active(SUB)
        assert len(service.pending) == 0
        await service.close()

    asyncio.run(run_test())
    assert sink.cards == []
    assert ledger.count("get_transaction_receipt") == 1


def test_enable_with_stale_state_never_rewinds_cursor(ledger, store, service_factory):
    ledger.failing["current_height"] = TimeoutError("node down")

    async def run_test():
        await store.write(SUB, SubscriberState(SUB, enabled=True).with_cursor("mints", Cursor(150, 1, 1)))
        stale = SubscriberState(SUB, enabled=True).with_cursor("mints", Cursor(120, 0, 0))
        service = service_factory()
        await service.enable(SUB, stale)
        await service.close()
        return await store.read(SUB)

    saved = asyncio.run(run_test())
    assert saved.cursor("mints") == Cursor(150, 1, 1)
