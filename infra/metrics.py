"""Process-local counters and latency windows for the RPC pool.

Counters used by the pool:
  rpc_requests_total, rpc_rate_limited_total, rpc_circuit_resets_total,
  rpc_health_checks_total
Groups (name -> key -> count):
  rpc_requests_by_chain[chain], rpc_fail_by_reason[reason]
Latency windows are kept per chain plus an "all" window.
"""

from __future__ import annotations

from collections import Counter, defaultdict, deque
from typing import Any, Deque, Dict, List, Optional


def percentile(vals: List[float], pct: float) -> Optional[float]:
    if not vals:
        return None
    v = sorted(vals)
    k = max(0, min(len(v) - 1, int(round((pct / 100.0) * (len(v) - 1)))))
    return float(v[k])


class Metrics:
    def __init__(self, window: int = 2000) -> None:
        self.window = int(window)
        self._counters: Counter[str] = Counter()
        self._groups: Dict[str, Counter[str]] = defaultdict(Counter)
        self._latency: Dict[str, Deque[float]] = {}

    def reset(self) -> None:
        self._counters.clear()
        self._groups.clear()
        self._latency.clear()

    def inc(self, name: str, n: int = 1) -> None:
        self._counters[name] += n

    def inc_reason(self, group: str, key: str, n: int = 1) -> None:
        self._groups[group][key] += n

    def observe_latency(self, chain: str, latency_ms: float) -> None:
        if latency_ms != latency_ms:  # NaN
            return
        for key in ("all", chain):
            bucket = self._latency.get(key)
            if bucket is None:
                bucket = self._latency[key] = deque(maxlen=self.window)
            bucket.append(float(latency_ms))

    def counter(self, name: str) -> int:
        return self._counters[name]

    def reasons(self, group: str) -> Dict[str, int]:
        return dict(self._groups.get(group, {}))

    def latency(self, chain: str = "all") -> Dict[str, Any]:
        vals = list(self._latency.get(chain, ()))
        return {
            "count": len(vals),
            "p50_ms": percentile(vals, 50.0),
            "p95_ms": percentile(vals, 95.0),
            "max_ms": max(vals) if vals else None,
        }

    def snapshot(self) -> Dict[str, Any]:
        return {
            "counters": dict(self._counters),
            "groups": {group: dict(counts) for group, counts in self._groups.items()},
            "latency": {key: self.latency(key) for key in self._latency},
        }


METRICS = Metrics()
