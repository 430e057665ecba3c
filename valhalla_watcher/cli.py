import argparse
import asyncio
import logging
import sys
from typing import Optional

from .attribution import AttributionCache, AttributionResolver, IdentityResolver
from .config import configure_logging, load_config
from .errors import ConfigError, WatcherError
from .events import TOPIC_TRANSFER, ZERO_TOPIC, decode_mint
from .models import SubscriberState, parse_filter_text
from .rpc import LedgerClient
from .scanner import LogScanner
from .service import build_service
from .sink import ConsoleSink, json_dumps
from .store import SqliteSubscriberStore

log = logging.getLogger(__name__)


def run_state(stored: Optional[SubscriberState], args) -> SubscriberState:
    """The state ``run`` enables: the stored one, unless flags on the command line override it."""
    state = stored
    if state is None or args.filters is not None or args.pvp or args.no_mints:
        filters = parse_filter_text(args.filters) if args.filters is not None else (state.filters if state else [])
        state = SubscriberState(
            subscriber_id=args.subscriber,
            enabled=not args.no_mints,
            pvp_enabled=args.pvp or bool(state and state.pvp_enabled),
            filters=filters,
        )
    if not state.enabled and not state.pvp_enabled:
        raise ConfigError(f"nothing to watch for {args.subscriber}: mints are off and pvp alerts are not enabled")
    return state


async def _run(cfg, args) -> None:
    store = SqliteSubscriberStore(cfg.db_path)
    try:
        state = run_state(await store.read(args.subscriber), args)
        service = build_service(cfg, ConsoleSink(), store=store)
        try:
            await service.enable(args.subscriber, state)
            log.info("watching sub=%s filters=%s pvp=%s", args.subscriber, state.filters, state.pvp_enabled)
            while True:
                await asyncio.sleep(3600)
        finally:
            await service.close()
    finally:
        store.close()


async def _scan(cfg, args) -> None:
    client = LedgerClient.from_config(cfg)
    scanner = LogScanner(client, cfg.block_batch)
    to_block = args.to_block
    if to_block is None:
        to_block = await client.current_height()
    rows = await scanner.scan(
        args.from_block,
        to_block,
        decode=decode_mint,
        address=cfg.vera_erc721,
        topics=[TOPIC_TRANSFER, ZERO_TOPIC],
        limit=args.limit,
    )
    print(json_dumps([
        {
            "block": r.block,
            "txIndex": r.tx_index,
            "logIndex": r.log_index,
            "txHash": r.tx_hash,
            "veraId": r.subject_id,
            "to": r.payload.get("to"),
        }
        for r in rows
    ]))


async def _resolve(cfg, args) -> None:
    client = LedgerClient.from_config(cfg)
    scanner = LogScanner(client, cfg.block_batch)
    cache = AttributionCache(cfg.attrib_ttl, cfg.attrib_cache_max)
    identity = IdentityResolver(client, name_ttl=cfg.name_ttl, fail_ttl=cfg.name_fail_ttl)
    resolver = AttributionResolver(client, scanner, cache, identity, cfg)
    block = args.block
    if block is None:
        block = await client.current_height()
    record = await resolver.resolve(args.vera, args.tx or "", block)
    if record is None:
        print(json_dumps({"veraId": args.vera, "attributed": False}))
        return
    print(json_dumps({
        "veraId": record.entity_id,
        "attributed": True,
        "characterId": record.actor_id,
        "name": record.actor_name,
    }))


async def _state(cfg, args) -> None:
    store = SqliteSubscriberStore(cfg.db_path)
    try:
        state = await store.read(args.subscriber)
    finally:
        store.close()
    print(json_dumps(state.to_dict() if state is not None else None))


async def _reset(cfg, args) -> None:
    store = SqliteSubscriberStore(cfg.db_path)
    try:
        await store.delete(args.subscriber)
    finally:
        store.close()
    log.info("reset sub=%s", args.subscriber)


COMMANDS = {
    "run": _run,
    "scan": _scan,
    "resolve": _resolve,
    "state": _state,
    "reset": _reset,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Valhalla Vera mint and encounter watcher")
    parser.add_argument("--config", default="config.json", help="Path to config JSON")
    parser.add_argument("--debug", action="store_true", help="Verbose per-row logging")

    sub = parser.add_subparsers(dest="command", required=True)

    run_parser = sub.add_parser("run", help="Watch for one subscriber and print notifications as JSON lines")
    run_parser.add_argument("--subscriber", default="console")
    run_parser.add_argument("--filters", default=None, help="Character names, comma or newline separated")
    run_parser.add_argument("--pvp", action="store_true", help="Also alert on PvP queue entries")
    run_parser.add_argument("--no-mints", action="store_true", help="Only watch PvP queues")

    scan_parser = sub.add_parser("scan", help="List Vera mints in a block range")
    scan_parser.add_argument("--from-block", type=int, required=True)
    scan_parser.add_argument("--to-block", type=int, default=None)
    scan_parser.add_argument("--limit", type=int, default=None)

    resolve_parser = sub.add_parser("resolve", help="Attribute a Vera to a character")
    resolve_parser.add_argument("--vera", type=int, required=True)
    resolve_parser.add_argument("--tx", type=str, default=None, help="Mint transaction hash")
    resolve_parser.add_argument("--block", type=int, default=None)

    state_parser = sub.add_parser("state", help="Show a subscriber's stored state")
    state_parser.add_argument("--subscriber", default="console")

    reset_parser = sub.add_parser("reset", help="Forget a subscriber's stored state")
    reset_parser.add_argument("--subscriber", default="console")
    return parser


def main(argv=None) -> None:
    args = build_parser().parse_args(argv)
    cfg = load_config(args.config)
    configure_logging(args.debug or cfg.debug)
    try:
        asyncio.run(COMMANDS[args.command](cfg, args))
    except KeyboardInterrupt:
        return
    except WatcherError as exc:
        log.error("%s", exc)
        sys.exit(1)


if __name__ == "__main__":
    main()
