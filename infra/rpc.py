# infra/rpc.py

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple, TypeVar

from web3 import Web3

from bot import config
from bot.chain_config import ChainConfig, EndpointConfig, health_check_interval_s as env_health_interval_s
from bot.chain_config import load_chain_configs, normalize_url
from infra.clients import AsyncRPC, make_client
from infra.errors import (
    INVALID,
    NETWORK,
    RATE_LIMITED,
    ChainNotConfigured,
    InvalidRequest,
    NetworkTransient,
    NoHealthyEndpoint,
    classify_error,
    suggested_wait_s,
)
from infra.health import HealthMonitor
from infra.metrics import METRICS, percentile
from infra.rate_limit import RateLimiter

logger = logging.getLogger(__name__)

T = TypeVar("T")
Operation = Callable[[Any], Awaitable[T]]
ClientFactory = Callable[[str, str], Any]


def _short_url(url: str, n: int = 50) -> str:
    return url if len(url) <= n else url[:n] + "..."


class EndpointHealth:
    """Rolling window of (latency_ms, ok, reason) samples for one endpoint."""

    def __init__(self, maxlen: int = 50) -> None:
        self._samples: deque[Tuple[float, bool, str]] = deque(maxlen=max(1, int(maxlen)))

    def record(self, ok: bool, latency_ms: float, reason: str) -> None:
        self._samples.append((float(latency_ms), bool(ok), str(reason)))

    def latencies(self) -> List[float]:
        return [lat for lat, _, _ in self._samples]

    def stats(self) -> Dict[str, Any]:
        if not self._samples:
            return {"count": 0, "success_rate": None, "avg_latency_ms": None, "p95_latency_ms": None}
        total = len(self._samples)
        oks = sum(1 for _, ok, _ in self._samples if ok)
        lats = self.latencies()
        return {
            "count": total,
            "success_rate": float(oks) / float(total),
            "avg_latency_ms": sum(lats) / float(total),
            "p95_latency_ms": percentile(lats, 95.0),
        }


@dataclass(eq=False)
class Endpoint:
    chain: str
    url: str
    priority: int
    max_requests_per_second: int
    connection: Any
    healthy: bool = True
    last_used: float = 0.0
    request_count: int = 0
    error_count: int = 0
    health: EndpointHealth = field(default_factory=lambda: EndpointHealth(config.RPC_HEALTH_WINDOW))


class RPCManager:
    """Per-chain RPC endpoint pool with rate-limited selection and retry.

    Selection picks the healthy, non-failed endpoint with the lowest
    (priority, request_count) that is still under its per-second cap.
    When every endpoint of a chain is in the failed set, the set is cleared
    once (circuit-breaker reset) before giving up with NoHealthyEndpoint.

    All bookkeeping runs synchronously between awaits, so the event loop
    serializes it; do not share one manager across threads.

    ``clock`` is monotonic and drives rate windows and health debounce;
    ``wall_clock`` only stamps last_used and last_health_check.
    """

    def __init__(
        self,
        chains: Optional[Dict[str, ChainConfig]] = None,
        *,
        client_factory: ClientFactory = make_client,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        attempt_timeout_s: Optional[float] = None,
        health_check_interval_s: Optional[float] = None,
    ) -> None:
        self._client_factory = client_factory
        self._wall_clock = wall_clock
        self._sleep = sleep
        self.attempt_timeout_s = float(
            attempt_timeout_s if attempt_timeout_s is not None else config.RPC_ATTEMPT_TIMEOUT_S
        )

        configs = chains if chains is not None else load_chain_configs()
        self.rpc_configs: Dict[str, List[EndpointConfig]] = {n: list(c.endpoints) for n, c in configs.items()}
        self._kinds: Dict[str, str] = {n: c.kind for n, c in configs.items()}

        self.rate_limiter = RateLimiter(clock=clock)
        self.failed: Set[str] = set()
        self.connections: Dict[str, List[Endpoint]] = {}
        self._retired: List[Any] = []
        self.last_health_check: Optional[float] = None
        self.initialized = False

        if health_check_interval_s is None:
            health_check_interval_s = env_health_interval_s()
        self.monitor = HealthMonitor(
            self,
            interval_s=health_check_interval_s,
            clock=clock,
            wall_clock=wall_clock,
            sleep=sleep,
        )
        self.initialize()

    # ------------------------------------------------------------------
    # Pool construction
    # ------------------------------------------------------------------

    def _open_endpoint(self, chain: str, cfg: EndpointConfig) -> Optional[Endpoint]:
        try:
            conn = self._client_factory(self._kinds.get(chain, "evm"), cfg.url)
        except Exception as e:
            logger.warning("Failed to initialize %s RPC %s: %s", chain, _short_url(cfg.url), e)
            self.failed.add(cfg.url)
            return None
        self.rate_limiter.register(cfg.url)
        return Endpoint(
            chain=chain,
            url=cfg.url,
            priority=int(cfg.priority),
            max_requests_per_second=int(cfg.max_requests_per_second),
            connection=conn,
        )

    def initialize(self) -> None:
        for chain, cfgs in self.rpc_configs.items():
            pool: List[Endpoint] = []
            for cfg in cfgs:
                ep = self._open_endpoint(chain, cfg)
                if ep is not None:
                    pool.append(ep)
                    logger.info("%s RPC initialized: %s", chain.upper(), _short_url(cfg.url))
            self.connections[chain] = pool
        self.initialized = True

        status = self.status()
        logger.info("RPC manager ready: %d/%d healthy connections", status["healthy_rpcs"], status["total_rpcs"])
        for chain, cs in status["chains"].items():
            logger.info("  %s: %d/%d healthy", chain.upper(), cs["healthy"], cs["total"])

    def chain_names(self) -> List[str]:
        return list(self.connections.keys())

    def endpoints(self, chain: str) -> List[Endpoint]:
        return list(self._pool(chain))

    def _pool(self, chain: str) -> List[Endpoint]:
        pool = self.connections.get(chain) if self.initialized else None
        if pool is None:
            raise ChainNotConfigured(f"RPC manager not initialized for chain: {chain}")
        return pool

    # ------------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------------

    def _candidates(self, pool: List[Endpoint]) -> List[Endpoint]:
        return [
            ep
            for ep in pool
            if ep.healthy
            and ep.url not in self.failed
            and self.rate_limiter.can_request(ep.url, ep.max_requests_per_second)
        ]

    def select_endpoint(self, chain: str) -> Endpoint:
        pool = self._pool(chain)
        candidates = self._candidates(pool)
        if not candidates and pool and len(self.failed) >= len(pool):
            logger.info("Resetting failed RPCs for %s (circuit breaker)", chain)
            METRICS.inc("rpc_circuit_resets_total", 1)
            self.failed.clear()
            candidates = self._candidates(pool)
        if not candidates:
            raise NoHealthyEndpoint(f"No healthy RPCs available for {chain}")

        candidates.sort(key=lambda ep: (ep.priority, ep.request_count))
        selected = candidates[0]
        selected.last_used = self._wall_clock()
        selected.request_count += 1
        self.rate_limiter.note_request(selected.url)
        return selected

    def get_best_rpc(self, chain: str) -> Any:
        return self.select_endpoint(chain).connection

    def get_rpc_url(self, chain: str) -> str:
        return self.select_endpoint(chain).url

    def get_web3(self, chain: str) -> Web3:
        """Synchronous web3 provider on the best endpoint (EVM chains only)."""
        if self._kinds.get(chain) == "solana":
            raise InvalidRequest(f"Invalid chain for web3 provider: {chain}")
        return Web3(Web3.HTTPProvider(self.get_rpc_url(chain)))

    def get_solana_connection(self) -> Any:
        return self.get_best_rpc("solana")

    def get_ethereum_provider(self) -> Any:
        return self.get_best_rpc("ethereum")

    def get_bsc_provider(self) -> Any:
        return self.get_best_rpc("bsc")

    def get_polygon_provider(self) -> Any:
        return self.get_best_rpc("polygon")

    def get_arbitrum_provider(self) -> Any:
        return self.get_best_rpc("arbitrum")

    def get_base_provider(self) -> Any:
        return self.get_best_rpc("base")

    # ------------------------------------------------------------------
    # Endpoint state
    # ------------------------------------------------------------------

    def reset_rpc_errors(self, endpoint: Endpoint) -> None:
        endpoint.error_count = 0
        endpoint.healthy = True
        self.failed.discard(endpoint.url)

    def mark_failed(self, endpoint: Endpoint) -> None:
        endpoint.healthy = False
        self.failed.add(endpoint.url)

    # ------------------------------------------------------------------
    # Retry executor
    # ------------------------------------------------------------------

    async def _run_attempt(self, operation: Operation, connection: Any) -> Any:
        if self.attempt_timeout_s <= 0:
            return await operation(connection)
        try:
            return await asyncio.wait_for(operation(connection), timeout=self.attempt_timeout_s)
        except asyncio.TimeoutError:
            raise NetworkTransient(f"timeout({self.attempt_timeout_s}s) waiting for RPC operation")

    async def handle_rate_limit(self, chain: str, err: BaseException) -> float:
        wait_s = suggested_wait_s(err)
        if wait_s is None:
            wait_s = float(config.RPC_RATE_LIMIT_WAIT_DEFAULT_S)
        wait_s = min(max(wait_s, float(config.RPC_RATE_LIMIT_WAIT_MIN_S)), float(config.RPC_RATE_LIMIT_WAIT_MAX_S))
        logger.info("Rate limited on %s, waiting %.1fs before retry", chain, wait_s)
        await self._sleep(wait_s)
        return wait_s

    async def execute_with_retry(self, chain: str, operation: Operation[T], max_retries: Optional[int] = None) -> T:
        """Run ``await operation(connection)`` on the best endpoint of ``chain``.

        Rate-limit errors park the endpoint in the failed set and wait 5-60s,
        network errors back off 1s * attempt, "Invalid"/"Not found" errors are
        raised at once, anything else backs off 0.5s * attempt. The last error
        is raised once ``max_retries`` attempts are used up.
        """
        if max_retries is None:
            max_retries = int(config.RPC_MAX_RETRIES)
        max_retries = max(1, int(max_retries))
        self._pool(chain)

        for attempt in range(1, max_retries + 1):
            endpoint: Optional[Endpoint] = None
            t0 = time.perf_counter()
            try:
                endpoint = self.select_endpoint(chain)
                METRICS.inc("rpc_requests_total", 1)
                METRICS.inc_reason("rpc_requests_by_chain", chain, 1)
                result = await self._run_attempt(operation, endpoint.connection)
            except Exception as e:
                reason = classify_error(e)
                METRICS.inc_reason("rpc_fail_by_reason", reason, 1)
                if endpoint is not None:
                    endpoint.health.record(False, (time.perf_counter() - t0) * 1000.0, reason)

                if reason == RATE_LIMITED:
                    METRICS.inc("rpc_rate_limited_total", 1)
                    logger.warning("Rate limit hit on %s, attempt %d/%d", chain, attempt, max_retries)
                    if endpoint is not None:
                        self.failed.add(endpoint.url)
                    await self.handle_rate_limit(chain, e)
                elif reason == NETWORK:
                    logger.warning("Network error on %s, attempt %d/%d: %s", chain, attempt, max_retries, e)
                    if attempt < max_retries:
                        await self._sleep(float(config.RPC_NETWORK_BACKOFF_S) * attempt)
                elif reason == INVALID:
                    raise
                elif attempt < max_retries:
                    await self._sleep(float(config.RPC_GENERIC_BACKOFF_S) * attempt)

                if attempt == max_retries:
                    raise
                continue

            dt_ms = (time.perf_counter() - t0) * 1000.0
            METRICS.observe_latency(chain, dt_ms)
            endpoint.health.record(True, dt_ms, "ok")
            self.reset_rpc_errors(endpoint)
            return result

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    def add_rpc(
        self,
        chain: str,
        url: str,
        priority: Optional[int] = None,
        max_requests_per_second: Optional[int] = None,
        kind: Optional[str] = None,
    ) -> Optional[Endpoint]:
        """Register a new endpoint; it is selectable as soon as this returns."""
        url = normalize_url(url)
        if not url:
            raise ValueError("url is required")
        if any(c.url == url for c in self.rpc_configs.get(chain, [])):
            raise ValueError(f"{url} already configured for {chain}")
        cfg = EndpointConfig(
            url=url,
            priority=int(priority if priority is not None else config.RPC_DEFAULT_ADD_PRIORITY),
            max_requests_per_second=int(max_requests_per_second or config.RPC_MAX_REQUESTS_PER_SECOND),
        )
        if chain not in self.rpc_configs:
            self.rpc_configs[chain] = []
            self._kinds[chain] = kind or "evm"
            self.connections[chain] = []
        self.rpc_configs[chain].append(cfg)

        ep = self._open_endpoint(chain, cfg)
        if ep is not None:
            self.connections[chain].append(ep)
        logger.info("Added RPC for %s: %s", chain, url)
        return ep

    def remove_rpc(self, chain: str, url: str) -> bool:
        url = normalize_url(url)
        cfgs = self.rpc_configs.get(chain)
        if not cfgs or not any(c.url == url for c in cfgs):
            return False
        pool = self.connections.get(chain, [])
        remaining = [ep for ep in pool if ep.url != url]
        if pool and not remaining:
            raise ValueError(f"cannot remove the last RPC for {chain}")

        self.rpc_configs[chain] = [c for c in cfgs if c.url != url]
        for ep in pool:
            if ep.url == url:
                self._retired.append(ep.connection)
        self.connections[chain] = remaining
        self.failed.discard(url)
        self.rate_limiter.forget(url)
        logger.info("Removed RPC for %s: %s", chain, url)
        return True

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def status(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "initialized": self.initialized,
            "chains": {},
            "failed_rpcs": sorted(self.failed),
            "total_rpcs": 0,
            "healthy_rpcs": 0,
            "supported_chains": list(self.rpc_configs.keys()),
        }
        for chain, pool in self.connections.items():
            healthy = [ep for ep in pool if ep.healthy and ep.url not in self.failed]
            out["chains"][chain] = {
                "total": len(pool),
                "healthy": len(healthy),
                "failed": len(pool) - len(healthy),
                "endpoints": [
                    {
                        "url": _short_url(ep.url),
                        "healthy": ep.healthy,
                        "priority": ep.priority,
                        "request_count": ep.request_count,
                    }
                    for ep in pool
                ],
            }
            out["total_rpcs"] += len(pool)
            out["healthy_rpcs"] += len(healthy)
        return out

    def chain_stats(self, chain: str) -> Optional[Dict[str, Any]]:
        pool = self.connections.get(chain)
        if pool is None:
            return None
        lats: List[float] = []
        for ep in pool:
            lats.extend(ep.health.latencies())
        last = None
        if self.last_health_check is not None:
            last = datetime.fromtimestamp(self.last_health_check, tz=timezone.utc).isoformat()
        return {
            "chain": chain,
            "total_endpoints": len(pool),
            "healthy_endpoints": sum(1 for ep in pool if ep.healthy),
            "total_requests": sum(ep.request_count for ep in pool),
            "average_response_time_ms": round(sum(lats) / len(lats), 1) if lats else None,
            "last_health_check": last,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        self.monitor.start()

    async def close(self) -> None:
        await self.monitor.stop()
        clients = [ep.connection for pool in self.connections.values() for ep in pool] + self._retired
        self._retired = []
        for c in clients:
            if isinstance(c, AsyncRPC):
                await c.close()
            elif hasattr(c, "close"):
                res = c.close()
                if asyncio.iscoroutine(res):
                    await res
