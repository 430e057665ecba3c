"""Raw log normalisation and decoding into typed rows."""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from eth_abi.abi import default_codec
from hexbytes import HexBytes
from web3 import Web3
from web3._utils.events import get_event_data

from .abi import STORE_DELETE_RECORD_EVENT, STORE_SET_RECORD_EVENT, TRANSFER_EVENT
from .models import Cursor, LogRow

log = logging.getLogger(__name__)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"
ZERO_TOPIC = HexBytes(b"\x00" * 32)

TOPIC_TRANSFER = HexBytes(Web3.keccak(text="Transfer(address,address,uint256)"))
TOPIC_STORE_SET_RECORD = HexBytes(Web3.keccak(text="Store_SetRecord(bytes32,bytes32[],bytes,bytes32,bytes)"))
TOPIC_STORE_DELETE_RECORD = HexBytes(Web3.keccak(text="Store_DeleteRecord(bytes32,bytes32[])"))

# tbvalhalla...VeraTokenBacklog
TABLE_VERA_TOKEN_BACKLOG = HexBytes("0x746276616c68616c6c6100000000000056657261546f6b656e4261636b6c6f67")

STORE_KINDS = {
    bytes(TOPIC_STORE_SET_RECORD): ("set", STORE_SET_RECORD_EVENT),
    bytes(TOPIC_STORE_DELETE_RECORD): ("delete", STORE_DELETE_RECORD_EVENT),
}


def to_hex(value: Any) -> str:
    """0x-prefixed lowercase hex, independent of the hexbytes major version."""
    return "0x" + bytes(HexBytes(value)).hex()


def _parse_int(value: Any) -> int:
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        if value.startswith("0x"):
            return int(value, 16)
        return int(value)
    return int(value)


def normalize_log(log_entry: Dict[str, Any]) -> Dict[str, Any]:
    out = dict(log_entry)
    for key in ("transactionHash", "blockHash", "data"):
        if isinstance(out.get(key), (str, bytes, bytearray)):
            out[key] = HexBytes(out[key])
    if isinstance(out.get("topics"), (list, tuple)):
        out["topics"] = [HexBytes(t) for t in out["topics"]]
    for key in ("blockNumber", "transactionIndex", "logIndex"):
        if out.get(key) is not None:
            out[key] = _parse_int(out[key])
    if "logIndex" not in out and "index" in out:
        out["logIndex"] = _parse_int(out["index"])
    if isinstance(out.get("address"), str):
        out["address"] = Web3.to_checksum_address(out["address"])
    return out


def _position(entry: Dict[str, Any]) -> Tuple[int, int, int]:
    return (
        int(entry["blockNumber"]),
        int(entry.get("transactionIndex") or 0),
        int(entry.get("logIndex") or 0),
    )


def _valid_tx_hash(entry: Dict[str, Any]) -> bool:
    tx_hash = entry.get("transactionHash")
    return isinstance(tx_hash, (bytes, bytearray)) and len(tx_hash) == 32


def decode_mint(raw: Dict[str, Any], codec=default_codec) -> Optional[LogRow]:
    """Decode an ERC-721 ``Transfer`` from the zero address; ``None`` for anything else."""
    try:
        entry = normalize_log(raw)
        topics = entry.get("topics") or []
        if len(topics) != 4 or topics[0] != TOPIC_TRANSFER or topics[1] != ZERO_TOPIC:
            return None
        if entry.get("blockNumber") is None or not _valid_tx_hash(entry):
            return None
        event = get_event_data(codec, TRANSFER_EVENT, entry)
    except Exception as exc:
        log.debug("skip undecodable transfer log: %s", exc)
        return None

    args = event["args"]
    block, tx_index, log_index = _position(entry)
    return LogRow(
        block=block,
        tx_index=tx_index,
        log_index=log_index,
        tx_hash=to_hex(entry["transactionHash"]),
        subject_id=int(args["tokenId"]),
        payload={"to": args["to"], "contract": entry.get("address")},
    )


@dataclass(frozen=True)
class StoreRecord:
    kind: str
    table_id: bytes
    key_tuple: Tuple[bytes, ...]
    position: Cursor
    tx_hash: str

    @property
    def table_name(self) -> str:
        return table_ascii(self.table_id)


def decode_store_record(raw: Dict[str, Any], codec=default_codec) -> Optional[StoreRecord]:
    try:
        entry = normalize_log(raw)
        topics = entry.get("topics") or []
        if len(topics) != 2:
            return None
        kind_event = STORE_KINDS.get(bytes(topics[0]))
        if kind_event is None:
            return None
        kind, event_abi = kind_event
        event = get_event_data(codec, event_abi, entry)
    except Exception as exc:
        log.debug("skip undecodable store log: %s", exc)
        return None

    args = event["args"]
    key_tuple = tuple(bytes(k) for k in args["keyTuple"])
    if any(len(k) != 32 for k in key_tuple):
        return None
    tx_hash = entry.get("transactionHash")
    block, tx_index, log_index = _position(entry)
    return StoreRecord(
        kind=kind,
        table_id=bytes(args["tableId"]),
        key_tuple=key_tuple,
        position=Cursor(block, tx_index, log_index),
        tx_hash=to_hex(tx_hash) if tx_hash is not None else "",
    )


def decode_encounter_row(raw: Dict[str, Any], codec=default_codec) -> Optional[LogRow]:
    """``Store_SetRecord`` on any encounter table, keyed by character id in the first key slot."""
    record = decode_store_record(raw, codec)
    if record is None or record.kind != "set" or not record.key_tuple:
        return None
    table = record.table_name
    if "encounter" not in table.lower():
        return None
    char_id = int.from_bytes(record.key_tuple[0], "big")
    if char_id <= 0:
        return None
    return LogRow(
        block=record.position.block,
        tx_index=record.position.tx_index,
        log_index=record.position.log_index,
        tx_hash=record.tx_hash,
        subject_id=char_id,
        payload={"table": table},
    )


def bytes32_to_address(key: Any) -> Optional[str]:
    """Address packed into a left-padded bytes32 key, or ``None``."""
    try:
        raw = bytes(HexBytes(key))
    except (TypeError, ValueError):
        return None
    if len(raw) != 32:
        return None
    head, tail = raw[:12], raw[12:]
    if any(head) or not any(tail):
        return None
    return Web3.to_checksum_address(tail)


def bytes32_to_int(key: Any) -> int:
    return int.from_bytes(bytes(HexBytes(key)), "big")


def table_ascii(table_id: Any) -> str:
    raw = bytes(HexBytes(table_id))
    return "".join(chr(b) for b in raw if 0x20 <= b <= 0x7E)
