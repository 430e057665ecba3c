"""ABI fragments for the Vera ERC-721, the MUD store events and the Valhalla entry point.

The entry-point fragment only covers the read calls the watchers make. A full ABI
(Hardhat artifact JSON with an ``abi`` field, or a raw ABI array) can be supplied
through ``abi_path`` and replaces it.
"""

import logging
import os
from typing import Any, Dict, List, Optional

from .config import load_json
from .errors import ConfigError

log = logging.getLogger(__name__)


def _event(name: str, inputs: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {"type": "event", "name": name, "anonymous": False, "inputs": inputs}


def _fn(name: str, inputs: List[Dict[str, Any]], outputs: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {
        "type": "function",
        "name": name,
        "stateMutability": "view",
        "inputs": inputs,
        "outputs": outputs,
    }


def _arg(name: str, typ: str, indexed: Optional[bool] = None, components=None) -> Dict[str, Any]:
    out: Dict[str, Any] = {"name": name, "type": typ}
    if indexed is not None:
        out["indexed"] = indexed
    if components is not None:
        out["components"] = components
    return out


TRANSFER_EVENT = _event(
    "Transfer",
    [
        _arg("from", "address", True),
        _arg("to", "address", True),
        _arg("tokenId", "uint256", True),
    ],
)

STORE_SET_RECORD_EVENT = _event(
    "Store_SetRecord",
    [
        _arg("tableId", "bytes32", True),
        _arg("keyTuple", "bytes32[]", False),
        _arg("staticData", "bytes", False),
        _arg("encodedLengths", "bytes32", False),
        _arg("dynamicData", "bytes", False),
    ],
)

STORE_DELETE_RECORD_EVENT = _event(
    "Store_DeleteRecord",
    [
        _arg("tableId", "bytes32", True),
        _arg("keyTuple", "bytes32[]", False),
    ],
)

INNATE_STATS_COMPONENTS = [
    _arg("strength", "uint8"),
    _arg("dexterity", "uint8"),
    _arg("vitality", "uint8"),
    _arg("intellect", "uint8"),
    _arg("wisdom", "uint8"),
    _arg("charisma", "uint8"),
]

ENTRY_POINT_ABI: List[Dict[str, Any]] = [
    _fn(
        "valhalla__getVera",
        [_arg("veraId", "uint256")],
        [
            _arg(
                "",
                "tuple",
                components=[
                    _arg("level", "uint32"),
                    _arg("species", "uint32"),
                    _arg("personality", "uint8"),
                    _arg("innateStats", "tuple", components=INNATE_STATS_COMPONENTS),
                ],
            )
        ],
    ),
    _fn("valhalla__getSelectedCharacterId", [_arg("player", "address")], [_arg("", "uint256")]),
    _fn(
        "valhalla__getSelectedCharacterIdByPlayerId",
        [_arg("playerId", "uint256")],
        [_arg("", "uint256")],
    ),
    _fn("valhalla__getOpponentVeraIds", [_arg("characterId", "uint256")], [_arg("", "uint256[]")]),
    _fn(
        "valhalla__getOpponentVerasInBattle",
        [_arg("characterId", "uint256")],
        [
            _arg(
                "",
                "tuple[]",
                components=[_arg("blockchainId", "uint256"), _arg("level", "uint32")],
            )
        ],
    ),
    _fn("valhalla__getCharacterBattleId", [_arg("characterId", "uint256")], [_arg("", "uint256")]),
    _fn(
        "valhalla__getOpponentVeraIdsByBattleId",
        [_arg("battleId", "uint256")],
        [_arg("", "uint256[]")],
    ),
    _fn(
        "valhalla__getQueuedCharacterIdsByBattleType",
        [_arg("battleType", "uint8")],
        [_arg("characterIds", "uint256[]"), _arg("elos", "uint256[]")],
    ),
    _fn(
        "valhalla__getPlayerBattleData",
        [_arg("characterId", "uint256"), _arg("battleType", "uint8")],
        [
            _arg(
                "",
                "tuple",
                components=[_arg("username", "string"), _arg("elo", "uint256")],
            )
        ],
    ),
    _fn("valhalla__getCharacterNameById", [_arg("characterId", "uint256")], [_arg("", "string")]),
    _fn("valhalla__getCharacterIdByName", [_arg("name", "string")], [_arg("", "uint256")]),
    _fn("valhalla__getPlayerIdByUsername", [_arg("username", "string")], [_arg("", "uint256")]),
    _fn("valhalla__getAddressByUsername", [_arg("username", "string")], [_arg("", "address")]),
]


def extract_abi(abi_json: Any) -> Optional[List[Dict[str, Any]]]:
    if isinstance(abi_json, list):
        return abi_json
    if isinstance(abi_json, dict) and "abi" in abi_json:
        return abi_json.get("abi")
    return None


def load_entry_point_abi(abi_path: Optional[str]) -> List[Dict[str, Any]]:
    if not abi_path:
        return ENTRY_POINT_ABI
    if not os.path.exists(abi_path):
        raise ConfigError(f"ABI path not found: {abi_path}")
    abi = extract_abi(load_json(abi_path))
    if not abi:
        log.warning("ABI file %s has no abi entries, using bundled entry point ABI", abi_path)
        return ENTRY_POINT_ABI
    return abi
