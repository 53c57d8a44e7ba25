from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional


PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from bot.artifacts import configure_logging, write_snapshot  # noqa: E402
from bot.chain_config import load_chain_configs  # noqa: E402
from infra import gas as gas_oracle  # noqa: E402
from infra.metrics import METRICS  # noqa: E402
from infra.rpc import RPCManager  # noqa: E402


async def _collect(manager: RPCManager, *, probe: bool, gas: bool, watch_s: float, logger: logging.Logger) -> Dict[str, Any]:
    if probe:
        await manager.monitor.check()
    if watch_s > 0:
        manager.start()
        logger.info("watching pool for %.0fs", watch_s)
        await asyncio.sleep(watch_s)

    fees: Dict[str, Any] = {}
    if gas:
        for chain in manager.chain_names():
            try:
                fees[chain] = await gas_oracle.get_fee_params(manager, chain)
            except Exception as e:
                logger.error("fee params failed for %s: %s", chain, e)
                fees[chain] = {"error": str(e)}

    return {
        "status": manager.status(),
        "chains": {c: manager.chain_stats(c) for c in manager.chain_names()},
        "fees": fees,
        "metrics": METRICS.snapshot(),
    }


async def _run(args: argparse.Namespace, logger: logging.Logger) -> Dict[str, Any]:
    chains = [c for c in str(args.chains or "").split(",") if c.strip()] or None
    manager = RPCManager(load_chain_configs(chains))
    try:
        return await _collect(manager, probe=args.probe, gas=args.gas, watch_s=float(args.watch), logger=logger)
    finally:
        await manager.close()


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Multi-chain RPC pool status")
    parser.add_argument("--chains", default="", help="comma separated chain names (default: all)")
    parser.add_argument("--probe", action="store_true", help="run one health check cycle first")
    parser.add_argument("--gas", action="store_true", help="fetch fee params per chain")
    parser.add_argument("--watch", type=float, default=0.0, help="run the health monitor for N seconds")
    parser.add_argument("--out", type=str, default="", help="write the snapshot JSON to this path")
    parser.add_argument("--log-level", default="INFO", help="logging level")
    args = parser.parse_args(argv)

    logger = configure_logging(args.log_level)
    try:
        snapshot = asyncio.run(_run(args, logger))
    except ValueError as e:
        logger.error("%s", e)
        return 2

    if args.out:
        path = write_snapshot(Path(args.out), snapshot)
        logger.info("snapshot written to %s", path)
    else:
        print(json.dumps(snapshot, indent=2, default=str))

    status = snapshot["status"]
    return 0 if status["healthy_rpcs"] > 0 else 1


if __name__ == "__main__":
    raise SystemExit(main())
