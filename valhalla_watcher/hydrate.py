import logging
from typing import Any, Optional

from .models import AttributionRecord, VeraCard

log = logging.getLogger(__name__)


def image_path(species_id: int) -> str:
    return f"assets/vera/{species_id}.png"


def unattributed_label(entity_id: int) -> str:
    return f"Unclaimed #{entity_id}"


def actor_label(actor_id: Optional[int], actor_name: Optional[str]) -> Optional[str]:
    if actor_name:
        return actor_name
    if actor_id:
        return f"Character #{actor_id}"
    return None


async def build_card(
    client: Any,
    family: str,
    vera_id: int,
    attribution: Optional[AttributionRecord] = None,
    actor_name: Optional[str] = None,
    actor_id: Optional[int] = None,
    block: Optional[int] = None,
    tx_hash: Optional[str] = None,
) -> VeraCard:
    """Read the Vera's detail and combine it with whatever actor identity is known.

    Raises ``RpcError`` when the detail read fails; no watcher state is touched.
    """
    detail = await client.get_vera(vera_id)
    if attribution is not None:
        actor_id = attribution.actor_id
        actor_name = attribution.actor_name or actor_name
    attributed = bool(actor_id or actor_name)
    label = actor_label(actor_id, actor_name) if attributed else unattributed_label(vera_id)
    return VeraCard(
        family=family,
        vera_id=vera_id,
        level=detail.level,
        species_id=detail.species_id,
        personality=detail.personality,
        innate=detail.innate,
        image_path=image_path(detail.species_id),
        actor_id=actor_id,
        actor_name=label,
        attributed=attributed,
        block=block,
        tx_hash=tx_hash,
    )


async def deliver_card(sink: Any, subscriber_id: str, card: VeraCard) -> bool:
    log.debug(
        "%s.send sub=%s vera=%s species=%s block=%s actor=%s",
        card.family, subscriber_id, card.vera_id, card.species_id, card.block, card.actor_name,
    )
    try:
        await sink.send_entity_card(subscriber_id, card)
        return True
    except Exception as exc:
        log.warning("sink failed sending vera=%s to %s: %s", card.vera_id, subscriber_id, exc)
        return False


async def deliver_alert(sink: Any, subscriber_id: str, text: str) -> Optional[Any]:
    try:
        return await sink.send_alert(subscriber_id, text)
    except Exception as exc:
        log.warning("sink failed sending alert to %s: %s", subscriber_id, exc)
        return None


async def retract_alert(sink: Any, subscriber_id: str, message_id: Any) -> None:
    try:
        await sink.delete_alert(subscriber_id, message_id)
    except Exception as exc:
        log.warning("sink failed deleting alert %s for %s: %s", message_id, subscriber_id, exc)
