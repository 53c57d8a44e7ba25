from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict, Iterable, Optional

from bot import config
from infra.errors import InvalidRequest

if TYPE_CHECKING:
    from infra.rpc import RPCManager

logger = logging.getLogger(__name__)


def _to_hex(value: Optional[int]) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, str) and value.startswith("0x"):
        return value
    try:
        return hex(int(value))
    except (TypeError, ValueError):
        return None


def _median(values: Iterable[int]) -> int:
    vals = sorted(int(v) for v in values if v is not None)
    if not vals:
        return 0
    mid = len(vals) // 2
    if len(vals) % 2:
        return vals[mid]
    return int((vals[mid - 1] + vals[mid]) / 2)


def gas_multiplier(level: str) -> float:
    mult = config.GAS_LEVEL_MULTIPLIERS.get(str(level or "medium").lower())
    if mult is None:
        raise InvalidRequest(f"Invalid gas level: {level}")
    return float(mult)


def _scale(value: int, mult: float) -> int:
    return int(int(value) * int(round(mult * 100)) // 100)


def solana_compute_budget() -> Dict[str, int]:
    return {
        "compute_unit_limit": int(config.SOLANA_COMPUTE_UNIT_LIMIT),
        "compute_unit_price_microlamports": int(config.SOLANA_COMPUTE_UNIT_PRICE_MICROLAMPORTS),
    }


async def get_fee_params(
    manager: "RPCManager",
    chain: str,
    *,
    level: str = "medium",
    block_count: int = 10,
    reward_percentiles: Optional[list[int]] = None,
) -> Dict[str, int]:
    """Return EIP-1559 fee params from eth_feeHistory (fallback to eth_gasPrice).

    Values are scaled by the gas level multiplier. Solana chains return the
    compute budget instead. Calls go through execute_with_retry, so rate limits
    and transient failures are retried on other endpoints first.
    """
    mult = gas_multiplier(level)
    if chain == "solana":
        return solana_compute_budget()
    if reward_percentiles is None:
        reward_percentiles = [50, 75]

    try:
        res = await manager.execute_with_retry(
            chain, lambda c: c.fee_history(block_count, reward_percentiles)
        )
        base_fees = [int(x, 16) for x in (res.get("baseFeePerGas") or []) if isinstance(x, str)]
        idx = len(reward_percentiles) - 1
        priority_vals = []
        for row in res.get("reward") or []:
            if isinstance(row, (list, tuple)) and len(row) > idx and isinstance(row[idx], str):
                priority_vals.append(int(row[idx], 16))
        if not base_fees:
            raise ValueError("fee history without baseFeePerGas")
        max_priority = _scale(_median(priority_vals), mult) if priority_vals else 0
        base_fee = int(base_fees[-1])
        return {
            "base_fee_per_gas": base_fee,
            "max_priority_fee_per_gas": max_priority,
            "max_fee_per_gas": _scale(base_fee * 2, mult) + max_priority,
        }
    except InvalidRequest:
        raise
    except Exception as e:
        logger.info("eth_feeHistory unavailable on %s, using eth_gasPrice: %s", chain, e)

    gas_price = _scale(await manager.execute_with_retry(chain, lambda c: c.get_gas_price()), mult)
    return {
        "base_fee_per_gas": gas_price,
        "max_priority_fee_per_gas": gas_price,
        "max_fee_per_gas": gas_price,
    }


async def estimate_gas(manager: "RPCManager", chain: str, tx_params: Dict[str, Any]) -> int:
    """Estimate gas via eth_estimateGas; accepts int values and converts to hex.

    Falls back to GAS_LIMIT_FALLBACK when the node cannot estimate (e.g. the
    call would revert against current state).
    """
    if not isinstance(tx_params, dict):
        raise InvalidRequest("Invalid transaction params")
    payload = dict(tx_params)
    for key in ("value", "gas", "gasPrice", "maxFeePerGas", "maxPriorityFeePerGas", "nonce"):
        if key in payload:
            hx = _to_hex(payload.get(key))
            if hx is not None:
                payload[key] = hx
    try:
        return await manager.execute_with_retry(chain, lambda c: c.estimate_gas(payload))
    except InvalidRequest:
        raise
    except Exception as e:
        logger.info("eth_estimateGas failed on %s, using fallback limit: %s", chain, e)
        return int(config.GAS_LIMIT_FALLBACK)
