from __future__ import annotations

import asyncio
import io
import json

from fakes import FakeLedger, vera_detail
from valhalla_watcher.hydrate import build_card, deliver_alert, deliver_card
from valhalla_watcher.models import AttributionRecord
from valhalla_watcher.sink import ConsoleSink


def test_attributed_card():
    ledger = FakeLedger()
    ledger.veras[5] = vera_detail(5, species=12, level=9)
    card = asyncio.run(build_card(ledger, "mints", 5, AttributionRecord(5, 11, "Alice"), block=3, tx_hash="0xab"))
    assert card.attributed
    assert (card.actor_id, card.actor_name) == (11, "Alice")
    assert card.image_path == "assets/vera/12.png"
    assert card.level == 9
    assert card.to_dict()["innate"]["charisma"] == 6


def test_actor_without_name_gets_fallback_label():
    card = asyncio.run(build_card(FakeLedger(), "mints", 5, AttributionRecord(5, 11, None)))
    assert card.attributed
    assert card.actor_name == "Character #11"


def test_unattributed_card():
    card = asyncio.run(build_card(FakeLedger(), "mints", 6))
    assert not card.attributed
    assert card.actor_id is None
    assert card.actor_name == "Unclaimed #6"


class BrokenSink:
    async def send_entity_card(self, subscriber_id, card):
        raise RuntimeError("chat gone")

    async def send_alert(self, subscriber_id, text):
        raise RuntimeError("chat gone")


def test_sink_errors_are_contained():
    card = asyncio.run(build_card(FakeLedger(), "mints", 6))
    assert asyncio.run(deliver_card(BrokenSink(), "s", card)) is False
    assert asyncio.run(deliver_alert(BrokenSink(), "s", "hi")) is None


def test_console_sink_writes_json_lines():
    out = io.StringIO()
    sink = ConsoleSink(out)
    card = asyncio.run(build_card(FakeLedger(), "encounters", 6, actor_id=4, actor_name="Bo"))

    async def run_test():
        await sink.send_entity_card("s", card)
        message_id = await sink.send_alert("s", "Bo (1000 elo) is looking for a Ranked (3v3) match.")
        await sink.delete_alert("s", message_id)

    asyncio.run(run_test())
    lines = [json.loads(line) for line in out.getvalue().splitlines()]
    assert [line["type"] for line in lines] == ["card", "alert", "delete"]
    assert lines[0]["card"]["actorName"] == "Bo"
    assert lines[1]["messageId"] == lines[2]["messageId"] == 1
