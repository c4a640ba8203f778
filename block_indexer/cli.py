"""Blockchain -> Elasticsearch sync.

Usage:
  python -m block_indexer --config config.json run
  python -m block_indexer --config config.json run --once
  python -m block_indexer --config config.json backfill --from-block 100 --to-block 200
  python -m block_indexer --config config.json cursor
  python -m block_indexer --config config.json rewind --height 12345
  python -m block_indexer --config config.json show tx 0xabc...

Notes:
- ``run`` stops on SIGINT/SIGTERM after the batch in flight is committed.
- ``backfill`` re-indexes already committed heights and never moves the cursor.
"""

import argparse
import asyncio
import signal
import sys
from typing import Any, Dict, Optional

from .abi import AbiRegistry
from .chain import ChainReader
from .config import client_timeout, load_config
from .cursor import CursorStore
from .engine import SyncEngine
from .errors import SyncError
from .heads import HeadWatcher
from .index import IndexerClient, IndexManager, make_client
from .schema import BLOCK_INDEX, CONTRACT_INDEX, TX_INDEX
from .util import json_dumps, log

SHOW_INDICES = {"block": BLOCK_INDEX, "tx": TX_INDEX, "contract": CONTRACT_INDEX}


def build_engine(cfg: Dict[str, Any], store: Optional[CursorStore] = None) -> SyncEngine:
    es = make_client(cfg)
    if store is None:
        store = CursorStore(cfg["db_path"])
        store.open()
    return SyncEngine(
        reader=ChainReader.from_url(cfg["rpc_http"], timeout=client_timeout(cfg)),
        indexer=IndexerClient(es, refresh=bool(cfg["refresh"])),
        index_manager=IndexManager(es),
        store=store,
        config=cfg,
        abi_registry=AbiRegistry(cfg.get("abi_dir"), cfg.get("contracts")),
        head_watcher=HeadWatcher(cfg.get("rpc_ws"), int(cfg["reconnect_delay"])),
    )


async def _run(engine: SyncEngine, once: bool) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, engine.request_stop)
        except (NotImplementedError, RuntimeError):
            pass
    await engine.run(until_synced=once)


def _parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="block-indexer", description="Blockchain to Elasticsearch sync")
    parser.add_argument("--config", default="config.json", help="Path to config JSON")

    sub = parser.add_subparsers(dest="command", required=True)

    run_parser = sub.add_parser("run", help="Start syncing")
    run_parser.add_argument("--once", action="store_true", help="Exit once caught up with the node")

    backfill_parser = sub.add_parser("backfill", help="Re-index committed heights")
    backfill_parser.add_argument("--from-block", type=int, required=True)
    backfill_parser.add_argument("--to-block", type=int, default=None)

    sub.add_parser("cursor", help="Print the cursor and recorded reorgs")

    rewind_parser = sub.add_parser("rewind", help="Retract documents above a height and move the cursor there")
    rewind_parser.add_argument("--height", type=int, required=True)

    show_parser = sub.add_parser("show", help="Print an indexed document")
    show_parser.add_argument("kind", choices=sorted(SHOW_INDICES))
    show_parser.add_argument("id", help="block height, tx hash or contract creation tx hash")
    return parser


def main(argv: Optional[list] = None) -> int:
    args = _parser().parse_args(argv)
    try:
        cfg = load_config(args.config)
    except (OSError, ValueError) as exc:
        log(f"ERROR: {exc}")
        return 2

    store = CursorStore(cfg["db_path"])
    store.open()
    try:
        if args.command == "cursor":
            cursor = store.load()
            print(json_dumps({
                "height": cursor.height if cursor else None,
                "hash": cursor.hash if cursor else None,
                "reorgs": store.reorg_events(),
            }))
            return 0

        if args.command == "show":
            indexer = IndexerClient(make_client(cfg))
            doc = indexer.get_document(SHOW_INDICES[args.kind], args.id)
            if doc is None:
                log(f"{args.kind} {args.id} not indexed")
                return 1
            print(json_dumps(doc))
            return 0

        engine = build_engine(cfg, store)
        if args.command == "run":
            asyncio.run(_run(engine, args.once))
        elif args.command == "backfill":
            asyncio.run(engine.backfill(args.from_block, args.to_block))
        elif args.command == "rewind":
            asyncio.run(engine.rewind(args.height))
        return 0
    except SyncError as exc:
        log(f"ERROR: {exc}")
        return 1
    except ValueError as exc:
        log(f"ERROR: {exc}")
        return 2
    finally:
        store.close()


if __name__ == "__main__":
    sys.exit(main())
