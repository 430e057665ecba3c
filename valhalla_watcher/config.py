import json
import logging
import os
import sys
import time
from dataclasses import dataclass, field, fields
from typing import Any, Dict, Mapping, Optional, Tuple

from dotenv import load_dotenv

from .errors import ConfigError


UNATTRIBUTED_POLICIES = ("deliver", "drop")


@dataclass
class WatcherConfig:
    rpc_http: Optional[str] = None
    entry_point: Optional[str] = None
    vera_erc721: Optional[str] = None
    abi_path: Optional[str] = None
    db_path: str = "./watcher.db"

    poll_interval: float = 2.0
    encounters_poll_interval: float = 2.5
    pvp_poll_interval: float = 2.5

    block_batch: int = 6000
    backfill_blocks: int = 2400
    backfill_limit: int = 1
    attrib_backscan_blocks: int = 8000

    event_dedup_ttl: int = 120
    sticky_dedup_ttl: int = 900
    dedup_max_entries: int = 6000

    attrib_ttl: float = 1800.0
    attrib_cache_max: int = 5000
    attrib_max_retries: int = 8
    attrib_retry_base_delay: float = 0.5
    unattributed_policy: str = "deliver"

    probe_max: int = 300
    battle_type: int = 0
    pvp_battle_types: Tuple[int, ...] = (3, 4, 5, 6)

    name_ttl: float = 300.0
    name_fail_ttl: float = 60.0

    rpc_attempts: int = 5
    rpc_base_delay: float = 0.25
    rpc_max_delay: float = 2.0
    rpc_jitter: float = 0.1
    receipt_attempts: int = 10

    debug: bool = False

    extra: Dict[str, Any] = field(default_factory=dict)

    def validate(self) -> "WatcherConfig":
        if self.block_batch < 1:
            raise ConfigError("block_batch must be >= 1")
        if self.poll_interval <= 0 or self.encounters_poll_interval <= 0 or self.pvp_poll_interval <= 0:
            raise ConfigError("poll intervals must be positive")
        if self.attrib_max_retries < 1:
            raise ConfigError("attrib_max_retries must be >= 1")
        if self.rpc_attempts < 1:
            raise ConfigError("rpc_attempts must be >= 1")
        if self.unattributed_policy not in UNATTRIBUTED_POLICIES:
            raise ConfigError(
                f"unattributed_policy must be one of {', '.join(UNATTRIBUTED_POLICIES)}, "
                f"got {self.unattributed_policy!r}"
            )
        return self


# env var -> (field, kind); "ms" values are converted to seconds
ENV_FIELDS: Dict[str, Tuple[str, str]] = {
    "OPBNB_RPC_HTTP": ("rpc_http", "str"),
    "ENTRY_POINT": ("entry_point", "str"),
    "VERA_ERC721": ("vera_erc721", "str"),
    "VALHALLA_ABI_PATH": ("abi_path", "str"),
    "VALHALLA_STATE_PATH": ("db_path", "str"),
    "VALHALLA_POLL_MS": ("poll_interval", "ms"),
    "VALHALLA_ENCOUNTERS_POLL_MS": ("encounters_poll_interval", "ms"),
    "VALHALLA_PVP_POLL_MS": ("pvp_poll_interval", "ms"),
    "VALHALLA_BLOCK_BATCH": ("block_batch", "int"),
    "VALHALLA_MINT_BACKSCAN_BLOCKS": ("backfill_blocks", "int"),
    "VALHALLA_BACKFILL_LIMIT": ("backfill_limit", "int"),
    "VALHALLA_ATTRIB_BACKSCAN_BLOCKS": ("attrib_backscan_blocks", "int"),
    "VALHALLA_EVENT_TTL": ("event_dedup_ttl", "int"),
    "VALHALLA_STICKY_TTL": ("sticky_dedup_ttl", "int"),
    "VALHALLA_DEDUP_MAX": ("dedup_max_entries", "int"),
    "VALHALLA_ATTRIB_TTL_MS": ("attrib_ttl", "ms"),
    "VALHALLA_ATTRIB_MAX_RETRIES": ("attrib_max_retries", "int"),
    "VALHALLA_ATTRIB_RETRY_BASE_MS": ("attrib_retry_base_delay", "ms"),
    "VALHALLA_UNATTRIBUTED_POLICY": ("unattributed_policy", "lower"),
    "VALHALLA_PROBE_MAX": ("probe_max", "int"),
    "VALHALLA_BATTLE_TYPE": ("battle_type", "int"),
    "VALHALLA_PVP_TYPES": ("pvp_battle_types", "int_list"),
    "VALHALLA_NAME_TTL_MS": ("name_ttl", "ms"),
    "VALHALLA_NAME_FAIL_TTL": ("name_fail_ttl", "ms"),
    "VALHALLA_RPC_ATTEMPTS": ("rpc_attempts", "int"),
    "VALHALLA_RPC_BASE_MS": ("rpc_base_delay", "ms"),
    "VALHALLA_RPC_MAX_MS": ("rpc_max_delay", "ms"),
    "VALHALLA_RECEIPT_ATTEMPTS": ("receipt_attempts", "int"),
    "VALHALLA_DEBUG": ("debug", "bool"),
}


def _convert(name: str, raw: Any, kind: str) -> Any:
    try:
        if kind == "str":
            value = str(raw).strip()
            return value or None
        if kind == "lower":
            return str(raw).strip().lower()
        if kind == "int":
            return int(str(raw).strip())
        if kind == "ms":
            return float(str(raw).strip()) / 1000.0
        if kind == "bool":
            return str(raw).strip().lower() in ("1", "true", "yes", "on")
        if kind == "int_list":
            if isinstance(raw, (list, tuple)):
                return tuple(int(x) for x in raw)
            return tuple(int(x) for x in str(raw).replace(";", ",").split(",") if x.strip())
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"invalid value for {name}: {raw!r}") from exc
    raise ConfigError(f"unknown conversion {kind} for {name}")


def load_json(path: str) -> Any:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def load_config(path: Optional[str] = None, env: Optional[Mapping[str, str]] = None) -> WatcherConfig:
    """Build the config from defaults, then the JSON file at ``path``, then the environment."""
    if env is None:
        load_dotenv()
        env = os.environ

    cfg = WatcherConfig()
    known = {f.name for f in fields(WatcherConfig)} - {"extra"}

    if path and os.path.exists(path):
        data = load_json(path)
        if not isinstance(data, dict):
            raise ConfigError(f"config file {path} must contain a JSON object")
        for key, value in data.items():
            if key in known:
                if key == "pvp_battle_types":
                    value = _convert(key, value, "int_list")
                setattr(cfg, key, value)
            else:
                cfg.extra[key] = value

    for env_name, (attr, kind) in ENV_FIELDS.items():
        if env_name in env and str(env[env_name]).strip() != "":
            setattr(cfg, attr, _convert(env_name, env[env_name], kind))

    return cfg.validate()


class _UtcFormatter(logging.Formatter):
    converter = time.gmtime


def configure_logging(debug: bool = False) -> None:
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(_UtcFormatter("[%(asctime)s UTC] %(message)s", datefmt="%Y-%m-%d %H:%M:%S"))
    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if debug else logging.INFO)
    # web3 / urllib3 debug output drowns the per-row traces
    for noisy in ("web3", "urllib3", "asyncio"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
