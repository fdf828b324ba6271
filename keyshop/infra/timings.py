# keyshop/infra/timings.py
from __future__ import annotations
import logging
import os
import socket
import statistics
import time
from typing import Dict, List, Optional

import httpx
from fastapi import FastAPI

logger = logging.getLogger(__name__)

# ------------ hot path: append only ------------
# one list per kind; no locks, single-threaded event loop
_TIMINGS: Dict[str, List[float]] = {}


def perf_ts() -> float:
    # monotonic for durations
    return time.perf_counter()


def record_timing(kind: str, value: float) -> None:
    lst = _TIMINGS.get(kind)
    if lst is None:
        lst = []
        _TIMINGS[kind] = lst
    lst.append(float(value))


class timeit:
    """async usage:
        async with timeit("inventory.claim"):
            await r.lpop(...)
    """
    __slots__ = ("_kind", "_t0")

    def __init__(self, kind: str):
        self._kind = kind
        self._t0 = 0.0

    async def __aenter__(self):
        self._t0 = perf_ts()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        # failed calls are timed too; they cost the caller the same wait
        record_timing(self._kind, perf_ts() - self._t0)


# ------------ stats only on demand ------------

def snapshot() -> List[Dict[str, float]]:
    """One aggregate per kind: {"kind", "n", "mean_ms", "std_ms", "max_ms"}"""
    out = []
    for kind, vals in sorted(_TIMINGS.items()):
        if not vals:
            continue
        out.append({
            "kind": kind,
            "n": len(vals),
            "mean_ms": statistics.mean(vals) * 1000,
            "std_ms": (statistics.stdev(vals) if len(vals) > 1 else 0.0)
            * 1000,
            "max_ms": max(vals) * 1000,
        })
    return out


def reset() -> None:
    _TIMINGS.clear()


async def flush_to_collector(
    url: str,
    worker_id: Optional[str] = None,
    timeout: float = 5.0,
) -> int:
    """
    POST the current aggregates as JSON to a metrics collector and clear them.
    Returns the number of aggregates sent.
    """
    stats = snapshot()
    if not stats:
        return 0

    worker_id = worker_id or f"{os.getpid()}@{socket.gethostname()}"
    async with httpx.AsyncClient(timeout=timeout) as client:
        r = await client.post(
            url,
            json={"worker_id": worker_id, "timings": stats},
        )
        r.raise_for_status()

    reset()
    return len(stats)


def install_shutdown_flush(app: FastAPI, url_env: str = "BENCH_URL") -> None:
    """
    On shutdown, log the aggregates and, if BENCH_URL is set, push them there.
    """
    @app.on_event("shutdown")
    async def _flush_on_shutdown():
        for rec in snapshot():
            logger.info(
                "timing %-28s n=%-6d mean=%.2fms max=%.2fms",
                rec["kind"], rec["n"], rec["mean_ms"], rec["max_ms"],
            )
        url = os.getenv(url_env, "")
        if not url:
            return
        try:
            sent = await flush_to_collector(url)
            logger.info("flushed %d timing aggregates to %s", sent, url)
        except httpx.HTTPError as e:
            logger.warning("could not flush timings to %s: %s", url, e)
