# keyshop/infra/timings.py
from __future__ import annotations
import gzip
import json
import os
import socket
import time
from typing import Any, Dict, Optional, List
import statistics
from fastapi import FastAPI

import httpx

from .logs import get_logger

log = get_logger(__name__)

# ------------ hot path: append only ------------
# one list per kind; no locks, single-threaded event loop
_TIMINGS: Dict[str, List[float]] = {}


def now_ts() -> float:
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
        async with timeit("keys.hold"):
            await fn()
    """
    __slots__ = ("_kind", "_t0")

    def __init__(self, kind: str):
        self._kind = kind
        self._t0 = 0.0

    async def __aenter__(self):
        self._t0 = now_ts()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        record_timing(self._kind, now_ts() - self._t0)


def reset() -> None:
    _TIMINGS.clear()


# ------------ stats only when asked ------------

def _mean_std(values: list[float]) -> tuple[float, float]:
    if not values:
        return 0.0, 0.0
    return (
        statistics.mean(values),
        statistics.stdev(values) if len(values) > 1 else 0.0
    )


def snapshot() -> List[Dict[str, Any]]:
    """One aggregate per kind: {"kind","n","mean","std","max"}, seconds."""
    out = []
    for kind in sorted(_TIMINGS):
        vals = _TIMINGS[kind]
        mean, std = _mean_std(vals)
        out.append({
            "kind": kind,
            "n": len(vals),
            "mean": mean,
            "std": std,
            "max": max(vals) if vals else 0.0,
        })
    return out


def _to_ndjson_aggregates() -> bytes:
    lines = [
        json.dumps(rec, separators=(",", ":")) + "\n" for rec in snapshot()
    ]
    return ("".join(lines)).encode("utf-8")


async def flush(
    url: str,
    http: Optional[httpx.AsyncClient] = None,
    compress: bool = False,
    timeout: float = 10.0,
) -> int:
    """
    POST the aggregates as NDJSON (gzipped if compress=True) to `url`.
    Header x-worker-id identifies the process.
    Returns the number of kinds sent; timings are cleared afterwards.
    """
    if not _TIMINGS:
        return 0

    raw = _to_ndjson_aggregates()
    headers = {
        "content-type": "application/x-ndjson",
        "x-worker-id": f"{os.getpid()}@{socket.gethostname()}",
    }
    body = gzip.compress(raw) if compress else raw
    if compress:
        headers["content-encoding"] = "gzip"

    if http is None:
        async with httpx.AsyncClient(timeout=timeout) as client:
            r = await client.post(url, content=body, headers=headers)
    else:
        r = await http.post(url, content=body, headers=headers,
                            timeout=timeout)
    r.raise_for_status()

    sent = len(_TIMINGS)
    _TIMINGS.clear()
    return sent


def install_shutdown_flush(app: FastAPI, url_env: str = "TIMINGS_URL"):
    """
    Env:
      TIMINGS_URL = http://127.0.0.1:7071/v1/metric/flush
    Nothing is sent when unset.
    """
    @app.on_event("shutdown")
    async def _flush_on_shutdown():
        url = os.getenv(url_env, "")
        if not url:
            return
        try:
            sent = await flush(url)
            log.info("timings.flushed", url=url, kinds=sent)
        except httpx.HTTPError as e:
            log.warning("timings.flush_failed", url=url, error=str(e))
