#!/usr/bin/env python3
"""
keyshop-admin: operator tool for the key inventory

Talks to the same Redis as the server, using the same environment variables
(REDIS_URL, KEYS_FILE, PRODUCT_IDS).

Usage:
  keyshop-admin sync [--force]
  keyshop-admin stock
  keyshop-admin claim shadow-weekly
  keyshop-admin add new-keys.txt        # KEY|PRODUCT_ID lines
"""
import argparse
import asyncio
import sys
from typing import List, Optional

from . import config
from .errors import KeyshopError
from .model.inventory import InventoryService, Reconciler
from .model.keysource import read_source
from .model.keystore import connect, guarded, k_fingerprint


async def _run(args: argparse.Namespace) -> int:
    r = connect(args.redis_url)
    try:
        rec = Reconciler(r, source_path=args.keys_file,
                         product_ids=config.PRODUCT_IDS)
        inv = InventoryService(r, rec)

        if args.cmd == "sync":
            if args.force:
                # forget the stored fingerprint so the next sync reseeds
                async with guarded("cli.forget_fingerprint"):
                    await r.delete(k_fingerprint())
            reseeded = await rec.ensure_synced()
            print("reseeded" if reseeded else "already in sync")
            for pid, n in (await inv.get_all_stock()).items():
                print(f"  {pid:<24} {n}")
        elif args.cmd == "stock":
            for pid, n in (await inv.get_all_stock()).items():
                print(f"{pid:<24} {n}")
        elif args.cmd == "claim":
            key = await inv.claim_key(args.product_id)
            if key is None:
                print(f"no stock for {args.product_id}", file=sys.stderr)
                return 1
            print(key)
        elif args.cmd == "add":
            entries, _ = read_source(args.file)
            if not await inv.add_keys(entries):
                print("keys rejected (unknown product, empty key or "
                      "store error)", file=sys.stderr)
                return 1
            print(f"added {len(entries)} keys")
        return 0
    finally:
        await r.aclose()


def main(argv: Optional[List[str]] = None) -> int:
    ap = argparse.ArgumentParser(prog="keyshop-admin")
    ap.add_argument("--redis-url", default=config.REDIS_URL)
    ap.add_argument("--keys-file", default=config.KEYS_FILE)
    sub = ap.add_subparsers(dest="cmd", required=True)

    p_sync = sub.add_parser("sync", help="sync Redis with the key file")
    p_sync.add_argument("--force", action="store_true",
                        help="reseed even if the fingerprint matches")
    sub.add_parser("stock", help="print stock per product")
    p_claim = sub.add_parser("claim", help="claim one key")
    p_claim.add_argument("product_id")
    p_add = sub.add_parser("add", help="append keys from a KEY|PRODUCT file")
    p_add.add_argument("file")

    args = ap.parse_args(argv)
    config.configure_logging("WARNING")
    try:
        return asyncio.run(_run(args))
    except KeyshopError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
