from __future__ import annotations

import asyncio

from fakes import (
    ENCOUNTER_TABLE,
    OTHER_TABLE,
    address_topic,
    delete_record_log,
    int_key,
    make_config,
    no_sleep,
    set_record_log,
    tx_hash,
)
from valhalla_watcher.attribution import AttributionCache, AttributionResolver, IdentityResolver, PendingQueue
from valhalla_watcher.models import LogRow
from valhalla_watcher.scanner import LogScanner

PLAYER = "0x2222222222222222222222222222222222222222"


def make_resolver(ledger, clock, **overrides):
    config = make_config(**overrides)
    cache = AttributionCache(config.attrib_ttl, config.attrib_cache_max, clock=clock)
    identity = IdentityResolver(ledger, clock=clock)
    return AttributionResolver(ledger, LogScanner(ledger, config.block_batch), cache, identity, config, sleep=no_sleep)


class TestAttributionCache:
    def test_entries_expire(self, clock):
        cache = AttributionCache(ttl=10, clock=clock)
        cache.put(5, 11, "Alice")
        assert cache.get(5).actor_name == "Alice"
        clock.advance(11)
        assert cache.get(5) is None

    def test_over_ceiling_sweeps_expired(self, clock):
        cache = AttributionCache(ttl=10, max_entries=2, clock=clock)
        cache.put(1, 1, None)
        cache.put(2, 2, None)
        clock.advance(20)
        cache.put(3, 3, None)
        cache.put(4, 4, None)
        assert len(cache) == 2
        assert cache.get(4).actor_id == 4


class TestSameTransaction:
    def test_strict_pass_maps_player_address_to_selected_character(self, ledger, clock):
        tx = tx_hash(1)
        ledger.add_receipt(tx, delete_record_log(101, 0, 0, [address_topic(PLAYER), int_key(501)], tx=tx))
        ledger.selected[PLAYER] = 11
        ledger.opponents[11] = [501]
        ledger.names[11] = "Alice"

        resolver = make_resolver(ledger, clock)
        record = asyncio.run(resolver.resolve(501, tx, 101))
        assert (record.actor_id, record.actor_name) == (11, "Alice")
        assert resolver.cache.get(501).actor_id == 11
        assert ledger.count("get_queued_characters") == 0

    def test_broad_pass_tries_raw_character_ids(self, ledger, clock):
        tx = tx_hash(2)
        ledger.add_receipt(tx, set_record_log(101, 0, 0, OTHER_TABLE, [int_key(12)], tx=tx))
        ledger.opponents[12] = [502]

        record = asyncio.run(make_resolver(ledger, clock).resolve(502, tx, 101))
        assert record.actor_id == 12
        assert record.actor_name is None

    def test_candidate_must_hold_the_vera(self, ledger, clock):
        tx = tx_hash(3)
        ledger.add_receipt(tx, delete_record_log(101, 0, 0, [int_key(13)], tx=tx))
        ledger.opponents[13] = [999]

        assert asyncio.run(make_resolver(ledger, clock).resolve(503, tx, 101)) is None

    def test_missing_receipt_is_polled_then_skipped(self, ledger, clock):
        resolver = make_resolver(ledger, clock, receipt_attempts=3)
        assert asyncio.run(resolver.from_same_transaction(504, tx_hash(4))) is None
        assert ledger.count("get_transaction_receipt") == 3


def test_live_probe_finds_queued_holder(ledger, clock):
    ledger.queues[0] = ([20, 21, 22], [1000, 1100, 1200])
    ledger.opponents[21] = [600]
    record = asyncio.run(make_resolver(ledger, clock).resolve(600, tx_hash(5), 200))
    assert record.actor_id == 21


def test_live_probe_respects_cap(ledger, clock):
    ledger.queues[0] = ([20, 21, 22], [0, 0, 0])
    ledger.opponents[22] = [601]
    resolver = make_resolver(ledger, clock, probe_max=2)
    assert asyncio.run(resolver.from_live_probe(601)) is None


def test_backscan_finds_encounter_fifty_blocks_back(ledger, clock):
    ledger.add_logs(
        set_record_log(4950, 0, 0, ENCOUNTER_TABLE, [int_key(31)]),
        set_record_log(4960, 0, 0, OTHER_TABLE, [int_key(32)]),
    )
    ledger.opponents[31] = [700]
    ledger.opponents[32] = [700]
    ledger.names[31] = "Bob"

    resolver = make_resolver(ledger, clock)
    record = asyncio.run(resolver.resolve(700, tx_hash(6), 5000))
    assert (record.actor_id, record.actor_name) == (31, "Bob")

    # cached for every other family
    lookups = ledger.count("get_logs")
    assert asyncio.run(resolver.resolve(700, tx_hash(6), 5000)).actor_id == 31
    assert ledger.count("get_logs") == lookups


def test_rpc_failure_in_a_strategy_counts_as_miss(ledger, clock):
    ledger.failing["get_queued_characters:0"] = ValueError("execution reverted")
    ledger.failing["get_logs"] = ValueError("execution reverted")
    assert asyncio.run(make_resolver(ledger, clock).resolve(800, tx_hash(7), 10)) is None


def test_identity_resolver_caches_misses(ledger, clock):
    identity = IdentityResolver(ledger, name_ttl=300, fail_ttl=60, clock=clock)
    ledger.ids_by_name["alice"] = 11
    assert asyncio.run(identity.character_id("ALICE")) == 11
    assert asyncio.run(identity.character_id("nobody")) is None
    ledger.ids_by_name["nobody"] = 12
    assert asyncio.run(identity.character_id("nobody")) is None
    clock.advance(61)
    assert asyncio.run(identity.character_id("nobody")) == 12
    assert ledger.count("get_character_id_by_name") == 3


class TestPendingQueue:
    def row(self, entity_id):
        return LogRow(10, 0, 0, tx_hash(entity_id), entity_id)

    def test_add_is_idempotent(self):
        pending = PendingQueue()
        assert pending.add("sub", self.row(1), 0.0)
        assert not pending.add("sub", self.row(1), 5.0)
        assert pending.get("sub", 1).first_seen_at == 0.0
        assert len(pending) == 1

    def test_due_follows_quadratic_backoff(self):
        pending = PendingQueue()
        pending.add("sub", self.row(1), 0.0)
        assert pending.due("sub", 0.4, 0.5) == []
        assert [p.entity_id for p in pending.due("sub", 0.5, 0.5)] == [1]
        pending.get("sub", 1).attempts = 2
        assert pending.due("sub", 4.0, 0.5) == []
        assert len(pending.due("sub", 4.5, 0.5)) == 1

    def test_clear_only_touches_one_subscriber(self):
        pending = PendingQueue()
        pending.add("a", self.row(1), 0.0)
        pending.add("b", self.row(1), 0.0)
        pending.clear("a")
        assert pending.entries("a") == []
        assert len(pending.entries("b")) == 1
