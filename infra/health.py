"""Background liveness probing for the RPC pool.

One representative endpoint per chain is probed per cycle (the first healthy
one, else the first configured) so a cycle costs at most one request per chain.
A single failed probe only bumps the endpoint's error count; it is demoted to
unhealthy and parked in the failed set after ``fail_threshold`` consecutive
failures, and restored by the next successful probe.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional

from bot import config
from infra.metrics import METRICS

if TYPE_CHECKING:
    from infra.rpc import Endpoint, RPCManager

logger = logging.getLogger(__name__)


class HealthMonitor:
    def __init__(
        self,
        manager: "RPCManager",
        *,
        interval_s: Optional[float] = None,
        timeout_s: Optional[float] = None,
        fail_threshold: Optional[int] = None,
        start_delay_s: Optional[float] = None,
        chain_pause_s: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.manager = manager
        self.interval_s = float(interval_s if interval_s is not None else config.RPC_HEALTH_CHECK_INTERVAL_S)
        self.timeout_s = float(timeout_s if timeout_s is not None else config.RPC_HEALTH_CHECK_TIMEOUT_S)
        self.fail_threshold = int(fail_threshold if fail_threshold is not None else config.RPC_HEALTH_FAIL_THRESHOLD)
        self.start_delay_s = float(start_delay_s if start_delay_s is not None else config.RPC_HEALTH_CHECK_START_DELAY_S)
        self.chain_pause_s = float(chain_pause_s if chain_pause_s is not None else config.RPC_HEALTH_CHECK_CHAIN_PAUSE_S)
        self._clock = clock
        self._wall_clock = wall_clock
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None
        self.last_check: Optional[float] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.get_running_loop().create_task(self._run(), name="rpc-health-monitor")

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None or task.done():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        await self._sleep(self.start_delay_s)
        while True:
            await self._sleep(self.interval_s)
            try:
                await self.check()
            except Exception:
                logger.exception("Health check error")

    def _target(self, chain: str) -> Optional["Endpoint"]:
        pool = self.manager.endpoints(chain)
        for ep in pool:
            if ep.healthy:
                return ep
        return pool[0] if pool else None

    async def probe(self, endpoint: "Endpoint") -> bool:
        """Probe one endpoint and apply the result. Never raises on probe failure."""
        METRICS.inc("rpc_health_checks_total", 1)
        try:
            await asyncio.wait_for(endpoint.connection.probe(), timeout=self.timeout_s)
        except Exception as e:
            endpoint.error_count += 1
            logger.debug("Health probe failed for %s (%d): %s", endpoint.url, endpoint.error_count, e)
            if endpoint.error_count >= self.fail_threshold:
                self.manager.mark_failed(endpoint)
                logger.warning(
                    "Marking %s RPC as unhealthy after %d failures: %s",
                    endpoint.chain,
                    endpoint.error_count,
                    endpoint.url,
                )
            return False
        self.manager.reset_rpc_errors(endpoint)
        return True

    async def check(self) -> bool:
        """Run one cycle over all chains. Returns False when debounced."""
        now = self._clock()
        if self.last_check is not None and now - self.last_check < self.interval_s / 2:
            return False
        self.last_check = now
        self.manager.last_health_check = self._wall_clock()

        chains = self.manager.chain_names()
        for i, chain in enumerate(chains):
            endpoint = self._target(chain)
            if endpoint is None:
                continue
            await self.probe(endpoint)
            if i < len(chains) - 1:
                await self._sleep(self.chain_pause_s)
        return True
