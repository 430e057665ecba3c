import itertools
import json
import sys
from typing import Any, Protocol, TextIO

from .models import VeraCard


class NotificationSink(Protocol):
    async def send_entity_card(self, subscriber_id: str, card: VeraCard) -> None: ...

    async def send_alert(self, subscriber_id: str, text: str) -> Any: ...

    async def delete_alert(self, subscriber_id: str, message_id: Any) -> None: ...


def _json_default(obj: Any) -> Any:
    if isinstance(obj, (bytes, bytearray)):
        return "0x" + bytes(obj).hex()
    if isinstance(obj, set):
        return list(obj)
    return str(obj)


def json_dumps(obj: Any) -> str:
    return json.dumps(obj, default=_json_default, ensure_ascii=True)


class ConsoleSink:
    """Writes every notification as one JSON line; used by the CLI."""

    def __init__(self, out: TextIO = sys.stdout):
        self.out = out
        self._ids = itertools.count(1)

    def _emit(self, payload: Any) -> None:
        self.out.write(json_dumps(payload) + "\n")
        self.out.flush()

    async def send_entity_card(self, subscriber_id: str, card: VeraCard) -> None:
        self._emit({"type": "card", "subscriber": subscriber_id, "card": card.to_dict()})

    async def send_alert(self, subscriber_id: str, text: str) -> int:
        message_id = next(self._ids)
        self._emit({"type": "alert", "subscriber": subscriber_id, "messageId": message_id, "text": text})
        return message_id

    async def delete_alert(self, subscriber_id: str, message_id: Any) -> None:
        self._emit({"type": "delete", "subscriber": subscriber_id, "messageId": message_id})
