# ticketflow/infra/timings.py
from __future__ import annotations
import gzip
import json
import logging
import os
import socket
import statistics
import time
from typing import Dict, List, Optional

import httpx

logger = logging.getLogger(__name__)


# ------------ hot path: append only ------------
# one list per kind; no locks, single-threaded event loop
class Timings:
    def __init__(self) -> None:
        self._values: Dict[str, List[float]] = {}

    def record(self, kind: str, value: float) -> None:
        lst = self._values.get(kind)
        if lst is None:
            lst = []
            self._values[kind] = lst
        lst.append(float(value))

    def timeit(self, kind: str) -> "timeit":
        return timeit(kind, self)

    def clear(self) -> None:
        self._values.clear()

    def __bool__(self) -> bool:
        return bool(self._values)

    # ------------ stats only when asked ------------
    def aggregates(self) -> List[dict]:
        out = []
        for kind, vals in sorted(self._values.items()):
            mean, std = _mean_std(vals)
            out.append({"kind": kind, "n": len(vals), "mean": mean,
                        "std": std})
        return out

    def to_ndjson(self) -> bytes:
        # one NDJSON line per kind: {"kind","n","mean","std"}
        lines = [
            json.dumps(rec, separators=(",", ":")) + "\n"
            for rec in self.aggregates()
        ]
        return "".join(lines).encode("utf-8")


class timeit:
    """async usage:
        async with timings.timeit("db.claim_order"):
            await fn()
    """
    __slots__ = ("_kind", "_t0", "_sink")

    def __init__(self, kind: str, sink: Timings):
        self._kind = kind
        self._sink = sink
        self._t0 = 0.0

    async def __aenter__(self):
        self._t0 = time.perf_counter()
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self._sink.record(self._kind, time.perf_counter() - self._t0)


def _mean_std(values: list[float]) -> tuple[float, float]:
    if not values:
        return 0.0, 0.0
    return (
        statistics.mean(values),
        statistics.stdev(values) if len(values) > 1 else 0.0
    )


async def flush_to_bench(
    timings: Timings,
    bench_url: str,
    run_id: str,
    worker_id: Optional[str] = None,
    compress: bool = False,
    timeout: float = 10.0,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> Dict[str, int]:
    """
    POST the aggregates to a bench collector.
    Body: NDJSON (gzipped if compress=True)
    Headers: x-run-id, x-worker-id
    Response expected: {"accepted": <int>}
    """
    if not timings:
        return {"accepted": 0}

    raw = timings.to_ndjson()
    worker_id = worker_id or f"{os.getpid()}@{socket.gethostname()}"
    headers = {
        "content-type": "application/x-ndjson",
        "x-run-id": run_id,
        "x-worker-id": worker_id,
    }

    body = gzip.compress(raw) if compress else raw
    if compress:
        headers["content-encoding"] = "gzip"

    async with httpx.AsyncClient(timeout=timeout,
                                 transport=transport) as client:
        r = await client.post(
            f"{bench_url.rstrip('/')}/v1/metric/flush",
            content=body,
            headers=headers,
        )
        r.raise_for_status()
        ack = r.json()

    # clear after successful send
    timings.clear()
    return {"accepted": int(ack.get("accepted", 0))}


async def flush_on_shutdown(timings: Timings, bench_url: str,
                            run_id: str) -> None:
    if not bench_url or not run_id:
        return
    try:
        res = await flush_to_bench(timings, bench_url=bench_url,
                                   run_id=run_id)
        logger.info("flushed timings to %s: %s", bench_url, res)
    except httpx.HTTPError:
        logger.exception("could not flush timings to %s", bench_url)
