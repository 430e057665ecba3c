import re
import unicodedata
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Iterable, List, Optional


HEAD_SENTINEL = 9_999_999


@dataclass(frozen=True, order=True)
class Cursor:
    block: int
    tx_index: int = 0
    log_index: int = 0

    @classmethod
    def head(cls, block: int) -> "Cursor":
        """Position past every log of ``block``; used as the live-only baseline."""
        return cls(block, HEAD_SENTINEL, HEAD_SENTINEL)

    def to_dict(self) -> Dict[str, int]:
        return {"block": self.block, "txIndex": self.tx_index, "logIndex": self.log_index}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["Cursor"]:
        if not data:
            return None
        return cls(
            int(data.get("block", data.get("bn", 0))),
            int(data.get("txIndex", data.get("txi", 0))),
            int(data.get("logIndex", data.get("li", 0))),
        )


@dataclass(frozen=True)
class LogRow:
    block: int
    tx_index: int
    log_index: int
    tx_hash: str
    subject_id: int
    payload: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @property
    def position(self) -> Cursor:
        return Cursor(self.block, self.tx_index, self.log_index)

    def sort_key(self):
        return (self.block, self.tx_index, self.log_index)


@dataclass
class AttributionRecord:
    entity_id: int
    actor_id: int
    actor_name: Optional[str]
    expires_at: float = 0.0


@dataclass
class PendingAttribution:
    subscriber_id: str
    entity_id: int
    row: LogRow
    attempts: int = 0
    first_seen_at: float = 0.0


def normalize_name(name: str) -> str:
    return unicodedata.normalize("NFC", name).strip()


def name_key(name: str) -> str:
    return normalize_name(name).casefold()


def normalize_filters(names: Iterable[str]) -> List[str]:
    out: List[str] = []
    keys = set()
    for raw in names:
        name = normalize_name(str(raw))
        if not name:
            continue
        key = name.casefold()
        if key in keys:
            continue
        keys.add(key)
        out.append(name)
    return out


def parse_filter_text(text: str) -> List[str]:
    return normalize_filters(re.split(r"[,;\n\r]+", unicodedata.normalize("NFC", text or "")))


@dataclass
class SubscriberState:
    subscriber_id: str
    enabled: bool = False
    pvp_enabled: bool = False
    filters: List[str] = field(default_factory=list)
    cursors: Dict[str, Cursor] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.subscriber_id:
            raise ValueError("subscriber_id is required")
        self.subscriber_id = str(self.subscriber_id)
        self.filters = normalize_filters(self.filters)

    def cursor(self, family: str) -> Optional[Cursor]:
        return self.cursors.get(family)

    def with_cursor(self, family: str, cursor: Cursor) -> "SubscriberState":
        cursors = dict(self.cursors)
        cursors[family] = cursor
        return replace(self, cursors=cursors)

    def has_filter(self, name: str) -> bool:
        key = name_key(name)
        return any(name_key(f) == key for f in self.filters)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subscriberId": self.subscriber_id,
            "enabled": self.enabled,
            "pvpEnabled": self.pvp_enabled,
            "filters": list(self.filters),
            "cursors": {family: c.to_dict() for family, c in self.cursors.items()},
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SubscriberState":
        cursors = {}
        for family, raw in (data.get("cursors") or {}).items():
            cursor = Cursor.from_dict(raw)
            if cursor is not None:
                cursors[family] = cursor
        return cls(
            subscriber_id=str(data.get("subscriberId") or data.get("subscriber_id") or ""),
            enabled=bool(data.get("enabled", False)),
            pvp_enabled=bool(data.get("pvpEnabled", False)),
            filters=list(data.get("filters") or []),
            cursors=cursors,
        )


@dataclass(frozen=True)
class InnateStats:
    strength: int
    dexterity: int
    vitality: int
    intellect: int
    wisdom: int
    charisma: int

    def total(self) -> int:
        return self.strength + self.dexterity + self.vitality + self.intellect + self.wisdom + self.charisma


@dataclass(frozen=True)
class VeraDetail:
    vera_id: int
    level: int
    species_id: int
    personality: Optional[int]
    innate: InnateStats


@dataclass(frozen=True)
class VeraCard:
    family: str
    vera_id: int
    level: int
    species_id: int
    personality: Optional[int]
    innate: InnateStats
    image_path: str
    actor_id: Optional[int]
    actor_name: Optional[str]
    attributed: bool
    block: Optional[int] = None
    tx_hash: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "family": self.family,
            "veraId": self.vera_id,
            "level": self.level,
            "speciesId": self.species_id,
            "personality": self.personality,
            "innate": {
                "strength": self.innate.strength,
                "dexterity": self.innate.dexterity,
                "vitality": self.innate.vitality,
                "intellect": self.innate.intellect,
                "wisdom": self.innate.wisdom,
                "charisma": self.innate.charisma,
            },
            "imagePath": self.image_path,
            "actorId": self.actor_id,
            "actorName": self.actor_name,
            "attributed": self.attributed,
            "block": self.block,
            "txHash": self.tx_hash,
        }
