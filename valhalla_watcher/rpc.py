"""Retry/backoff policy and the typed ledger client every remote read goes through."""

import asyncio
import logging
import random
import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar

from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import TransactionNotFound

from .abi import load_entry_point_abi
from .config import WatcherConfig
from .errors import ConfigError, RpcError, RpcRetryExhausted
from .events import to_hex
from .models import InnateStats, VeraDetail

log = logging.getLogger(__name__)

T = TypeVar("T")

RETRYABLE_MESSAGE = re.compile(
    r"limit exceeded|rate limit|too many requests|\b429\b|temporar|timeout|timed out|bad_data|bad data"
    r"|malformed|json|missing response|gateway|\b50[234]\b|econnreset|etimedout|econn"
    r"|connection reset|connection aborted|fetch failed",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class BackoffPolicy:
    attempts: int = 5
    base_delay: float = 0.25
    max_delay: float = 2.0
    multiplier: float = 2.0
    jitter: float = 0.1

    @classmethod
    def from_config(cls, config: WatcherConfig) -> "BackoffPolicy":
        return cls(
            attempts=config.rpc_attempts,
            base_delay=config.rpc_base_delay,
            max_delay=config.rpc_max_delay,
            jitter=config.rpc_jitter,
        )

    def delay(self, attempt: int, rng: Callable[[], float] = random.random) -> float:
        """Sleep before retry number ``attempt`` (0-based)."""
        base = min(self.base_delay * (self.multiplier ** attempt), self.max_delay)
        return base + rng() * self.jitter


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return True
    return bool(RETRYABLE_MESSAGE.search(f"{type(exc).__name__}: {exc}"))


async def call_with_retry(
    fn: Callable[[], Awaitable[T]],
    label: str,
    policy: BackoffPolicy,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> T:
    attempt = 0
    while True:
        attempt += 1
        try:
            return await fn()
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if not is_retryable(exc):
                log.warning("rpc fail %s: %s", label, exc)
                raise RpcError(label, exc, attempt) from exc
            if attempt >= policy.attempts:
                log.warning("rpc fail %s after %d attempts: %s", label, attempt, exc)
                raise RpcRetryExhausted(label, exc, attempt) from exc
            delay = policy.delay(attempt - 1)
            log.debug("rpc retry %s in %.2fs (%d/%d): %s", label, delay, attempt, policy.attempts, exc)
            await sleep(delay)


def _field(result: Any, name: str, index: int) -> Any:
    if isinstance(result, Mapping):
        return result.get(name)
    if hasattr(result, name):
        return getattr(result, name)
    if isinstance(result, (list, tuple)) and len(result) > index:
        return result[index]
    return None


def _int_list(values: Any) -> List[int]:
    if not isinstance(values, (list, tuple)):
        return []
    return [int(v) for v in values]


def vera_from_result(vera_id: int, result: Any) -> VeraDetail:
    innate = _field(result, "innateStats", 3)
    stats = [_field(innate, name, idx) for idx, name in enumerate(
        ("strength", "dexterity", "vitality", "intellect", "wisdom", "charisma")
    )]
    personality = _field(result, "personality", 2)
    return VeraDetail(
        vera_id=vera_id,
        level=int(_field(result, "level", 0) or 0),
        species_id=int(_field(result, "species", 1) or 0),
        personality=int(personality) if personality is not None else None,
        innate=InnateStats(*(int(s or 0) for s in stats)),
    )


class LedgerClient:
    """Read-only view of the chain and the Valhalla entry point.

    Each method is one remote operation (or a fixed sequence of fallbacks for
    ABI variants) and goes through :func:`call_with_retry`.
    """

    def __init__(
        self,
        w3: AsyncWeb3,
        entry_point: str,
        abi: Sequence[Dict[str, Any]],
        policy: BackoffPolicy,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.w3 = w3
        self.policy = policy
        self.sleep = sleep
        self.entry = w3.eth.contract(address=Web3.to_checksum_address(entry_point), abi=list(abi))

    @classmethod
    def from_config(cls, config: WatcherConfig) -> "LedgerClient":
        if not config.rpc_http:
            raise ConfigError("rpc_http (OPBNB_RPC_HTTP) is required")
        if not config.entry_point:
            raise ConfigError("entry_point (ENTRY_POINT) is required")
        w3 = AsyncWeb3(AsyncHTTPProvider(config.rpc_http))
        return cls(w3, config.entry_point, load_entry_point_abi(config.abi_path), BackoffPolicy.from_config(config))

    async def _call(self, fn: Callable[[], Awaitable[T]], label: str) -> T:
        return await call_with_retry(fn, label, self.policy, self.sleep)

    async def current_height(self) -> int:
        return int(await self._call(lambda: self.w3.eth.block_number, "getBlockNumber"))

    async def get_logs(
        self,
        from_block: int,
        to_block: int,
        address: Optional[str] = None,
        topics: Optional[Sequence[Any]] = None,
    ) -> List[Dict[str, Any]]:
        params: Dict[str, Any] = {"fromBlock": from_block, "toBlock": to_block}
        if address:
            params["address"] = Web3.to_checksum_address(address)
        if topics:
            params["topics"] = [to_hex(t) if t is not None else None for t in topics]
        logs = await self._call(lambda: self.w3.eth.get_logs(params), f"getLogs:{from_block}-{to_block}")
        return [dict(entry) for entry in logs]

    async def get_transaction_receipt(self, tx_hash: str) -> Optional[Dict[str, Any]]:
        async def fetch():
            try:
                return await self.w3.eth.get_transaction_receipt(tx_hash)
            except TransactionNotFound:
                # not yet indexed by the node
                return None

        receipt = await self._call(fetch, f"getTxReceipt:{tx_hash}")
        return dict(receipt) if receipt is not None else None

    async def get_vera(self, vera_id: int) -> VeraDetail:
        result = await self._call(
            lambda: self.entry.functions.valhalla__getVera(vera_id).call(), f"getVera:{vera_id}"
        )
        return vera_from_result(vera_id, result)

    async def get_selected_character_id(self, address: str) -> int:
        result = await self._call(
            lambda: self.entry.functions.valhalla__getSelectedCharacterId(Web3.to_checksum_address(address)).call(),
            f"selId:{address}",
        )
        return int(result or 0)

    async def get_opponent_vera_ids(self, char_id: int) -> List[int]:
        """Current opponent Vera ids of a character; first non-empty ABI variant wins."""
        try:
            ids = _int_list(await self._call(
                lambda: self.entry.functions.valhalla__getOpponentVeraIds(char_id).call(),
                f"getOpponentVeraIds:{char_id}",
            ))
            if ids:
                return ids
        except RpcError:
            pass

        try:
            res = await self._call(
                lambda: self.entry.functions.valhalla__getOpponentVerasInBattle(char_id).call(),
                f"getOpponentVerasInBattle:{char_id}",
            )
            ids = [int(_field(item, "blockchainId", 0) if isinstance(item, (tuple, list, Mapping)) else item)
                   for item in (res or [])]
            if ids:
                return ids
        except RpcError:
            pass

        try:
            battle_id = int(await self._call(
                lambda: self.entry.functions.valhalla__getCharacterBattleId(char_id).call(),
                f"getCharacterBattleId:{char_id}",
            ) or 0)
            if battle_id <= 0:
                return []
            return _int_list(await self._call(
                lambda: self.entry.functions.valhalla__getOpponentVeraIdsByBattleId(battle_id).call(),
                f"getOpponentVeraIdsByBattleId:{battle_id}",
            ))
        except RpcError:
            return []

    async def get_queued_characters(self, battle_type: int) -> Tuple[List[int], List[int]]:
        res = await self._call(
            lambda: self.entry.functions.valhalla__getQueuedCharacterIdsByBattleType(battle_type).call(),
            f"getQueuedCharacterIdsByBattleType:{battle_type}",
        )
        ids = _int_list(_field(res, "characterIds", 0))
        elos = _int_list(_field(res, "elos", 1))
        return ids, elos

    async def get_username(self, char_id: int, battle_type: int = 0) -> Optional[str]:
        try:
            pbd = await self._call(
                lambda: self.entry.functions.valhalla__getPlayerBattleData(char_id, battle_type).call(),
                f"pbd:{char_id}",
            )
            name = str(_field(pbd, "username", 0) or "").strip()
            if name:
                return name
        except RpcError:
            pass
        try:
            name = await self._call(
                lambda: self.entry.functions.valhalla__getCharacterNameById(char_id).call(),
                f"cname:{char_id}",
            )
            name = str(name or "").strip()
            return name or None
        except RpcError:
            return None

    async def get_character_id_by_name(self, name: str) -> Optional[int]:
        """Resolve a username to its character id: by name, via player id, then via address."""
        try:
            char_id = int(await self._call(
                lambda: self.entry.functions.valhalla__getCharacterIdByName(name).call(),
                f"getCharacterIdByName:{name}",
            ) or 0)
            if char_id > 0:
                return char_id
        except RpcError:
            pass

        try:
            player_id = int(await self._call(
                lambda: self.entry.functions.valhalla__getPlayerIdByUsername(name).call(),
                f"getPlayerIdByUsername:{name}",
            ) or 0)
            if player_id > 0:
                char_id = int(await self._call(
                    lambda: self.entry.functions.valhalla__getSelectedCharacterIdByPlayerId(player_id).call(),
                    f"getSelectedCharacterIdByPlayerId:{player_id}",
                ) or 0)
                if char_id > 0:
                    return char_id
        except RpcError:
            pass

        try:
            address = await self._call(
                lambda: self.entry.functions.valhalla__getAddressByUsername(name).call(),
                f"getAddressByUsername:{name}",
            )
            if not isinstance(address, str) or not address.startswith("0x") or int(address, 16) == 0:
                return None
            char_id = await self.get_selected_character_id(address)
            return char_id if char_id > 0 else None
        except RpcError:
            return None
