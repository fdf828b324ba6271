# model/inventory.py
from __future__ import annotations
import asyncio
import logging
from typing import Dict, Iterable, List, Optional, Sequence

import redis.asyncio as redis
from redis.exceptions import WatchError

from ..errors import KeyshopError, StoreUnavailable
from ..infra.timings import perf_ts
from .keysource import KeyEntry, read_source
from .keystore import guarded, k_fingerprint, k_queue

logger = logging.getLogger(__name__)

# optimistic retries when another process reseeds at the same moment
RECONCILE_ATTEMPTS = 5


def group_by_product(
    entries: Iterable[KeyEntry], product_ids: Sequence[str]
) -> Dict[str, List[str]]:
    grouped: Dict[str, List[str]] = {pid: [] for pid in product_ids}
    for e in entries:
        if e.product_id in grouped:
            grouped[e.product_id].append(e.key)
    return grouped


class Reconciler:
    """
    Keeps the per-product key queues in Redis in line with the authoritative
    key file.

    The file's fingerprint is stored next to the queues. As long as it
    matches, the queues are left alone and claims survive redeploys. When it
    differs (or is missing) every queue is cleared and reseeded from the file.
    That reseed is blunt: keys claimed since the last seed come back if they
    are still listed in the file, since nothing ever writes claims back to it.

    Each process remembers a successful sync. With `recheck_seconds` > 0 the
    fingerprint is compared again once that much time has passed.
    """

    def __init__(self, r: redis.Redis, source_path: str,
                 product_ids: Sequence[str],
                 recheck_seconds: float = 0.0) -> None:
        self.r = r
        self.source_path = source_path
        self.product_ids = tuple(product_ids)
        self.recheck_seconds = recheck_seconds
        self._synced_at: Optional[float] = None
        self._lock = asyncio.Lock()

    @property
    def synced(self) -> bool:
        if self._synced_at is None:
            return False
        if self.recheck_seconds <= 0:
            return True
        return perf_ts() - self._synced_at < self.recheck_seconds

    def invalidate(self) -> None:
        self._synced_at = None

    async def ensure_synced(self) -> bool:
        """
        Returns True if this call reseeded the queues, False if they were
        already in sync. Raises SourceUnavailable / StoreUnavailable; on
        either, the stored fingerprint is untouched and a retry is safe.
        """
        if self.synced:
            return False
        async with self._lock:
            if self.synced:
                return False
            # file I/O off the event loop
            entries, fp = await asyncio.to_thread(
                read_source, self.source_path
            )
            reseeded = await self._reconcile(entries, fp)
            self._synced_at = perf_ts()
            return reseeded

    async def _reconcile(self, entries: List[KeyEntry], fp: str) -> bool:
        grouped = group_by_product(entries, self.product_ids)
        skipped = len(entries) - sum(len(v) for v in grouped.values())
        if skipped:
            logger.warning(
                "key source lists %d keys for unknown products; ignored",
                skipped,
            )

        async with guarded("inventory.reconcile"):
            async with self.r.pipeline(transaction=True) as pipe:
                for _ in range(RECONCILE_ATTEMPTS):
                    try:
                        await pipe.watch(k_fingerprint())
                        current = await pipe.get(k_fingerprint())
                        if current == fp:
                            return False
                        # clear + reseed + fingerprint in one MULTI/EXEC;
                        # aborts if somebody else moved the fingerprint
                        pipe.multi()
                        for pid in self.product_ids:
                            pipe.delete(k_queue(pid))
                        for pid, keys in grouped.items():
                            if keys:
                                pipe.rpush(k_queue(pid), *keys)
                        pipe.set(k_fingerprint(), fp)
                        await pipe.execute()
                    except WatchError:
                        logger.info("fingerprint moved during reseed; retry")
                        continue
                    logger.info(
                        "reseeded key queues from %s (fingerprint %s -> %s): %s",
                        self.source_path, current, fp,
                        {pid: len(v) for pid, v in grouped.items()},
                    )
                    return True
        raise StoreUnavailable("could not reseed key queues: too much contention")


class InventoryService:
    def __init__(self, r: redis.Redis, reconciler: Reconciler) -> None:
        self.r = r
        self.reconciler = reconciler

    @property
    def product_ids(self) -> Sequence[str]:
        return self.reconciler.product_ids

    def is_known(self, product_id: str) -> bool:
        return product_id in self.reconciler.product_ids

    async def get_stock(self, product_id: str) -> int:
        if not self.is_known(product_id):
            return 0
        await self.reconciler.ensure_synced()
        async with guarded("inventory.stock"):
            n = await self.r.llen(k_queue(product_id))
        return int(n)

    async def get_all_stock(self) -> Dict[str, int]:
        await self.reconciler.ensure_synced()
        async with guarded("inventory.stock_all"):
            pipe = self.r.pipeline()
            for pid in self.product_ids:
                pipe.llen(k_queue(pid))
            counts = await pipe.execute()
        return {pid: int(n) for pid, n in zip(self.product_ids, counts)}

    async def claim_key(self, product_id: str) -> Optional[str]:
        """
        Pop the oldest key for the product. LPOP is atomic, so two callers
        never get the same key. None means out of stock.
        """
        if not self.is_known(product_id):
            return None
        await self.reconciler.ensure_synced()
        async with guarded("inventory.claim"):
            key = await self.r.lpop(k_queue(product_id))
        if key is None:
            logger.info("claim for %s: out of stock", product_id)
            return None
        logger.info("claimed one key for %s", product_id)
        return key

    async def add_keys(self, entries: Iterable[KeyEntry]) -> bool:
        """
        Append keys to the tail of their product queues. The fingerprint is
        left alone, so an unchanged key file keeps these additions; a changed
        one wipes them with the next reseed.
        """
        entries = list(entries)
        if not entries:
            return False
        bad = [e for e in entries
               if not e.key.strip() or not self.is_known(e.product_id)]
        if bad:
            logger.warning(
                "add_keys rejected: %d entries with empty key or unknown "
                "product", len(bad),
            )
            return False

        grouped = group_by_product(entries, self.product_ids)
        try:
            # seed first, or the first reseed would drop what we add now
            await self.reconciler.ensure_synced()
            async with guarded("inventory.add"):
                pipe = self.r.pipeline(transaction=True)
                for pid, keys in grouped.items():
                    if keys:
                        pipe.rpush(k_queue(pid), *keys)
                await pipe.execute()
        except KeyshopError as e:
            logger.error("add_keys failed: %s", e)
            return False
        logger.info(
            "added keys: %s",
            {pid: len(v) for pid, v in grouped.items() if v},
        )
        return True
