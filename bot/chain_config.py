from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from bot import config


@dataclass(frozen=True)
class EndpointConfig:
    url: str
    priority: int
    max_requests_per_second: int


@dataclass(frozen=True)
class ChainConfig:
    name: str
    kind: str
    chain_id: Optional[int]
    endpoints: List[EndpointConfig] = field(default_factory=list)

    @property
    def rpc_urls(self) -> list[str]:
        return [e.url for e in self.endpoints]


def normalize_url(url: str) -> str:
    u = str(url).strip()
    if not u:
        return u
    if "://" not in u:
        u = "https://" + u
    return u


def split_urls(raw: Optional[str]) -> List[str]:
    if not raw:
        return []
    # Accept comma or newline separated lists.
    parts: List[str] = []
    for chunk in str(raw).replace("\n", ",").split(","):
        u = normalize_url(chunk)
        if u:
            parts.append(u)
    return parts


def _env_float(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key)
    if raw is None or not str(raw).strip():
        return float(default)
    try:
        return float(raw)
    except ValueError:
        return float(default)


def health_check_interval_s(env: Optional[Mapping[str, str]] = None) -> float:
    env = os.environ if env is None else env
    val = _env_float(env, "RPC_HEALTH_CHECK_INTERVAL_S", config.RPC_HEALTH_CHECK_INTERVAL_S)
    return val if val > 0 else float(config.RPC_HEALTH_CHECK_INTERVAL_S)


def max_requests_per_second(env: Optional[Mapping[str, str]] = None) -> int:
    env = os.environ if env is None else env
    val = int(_env_float(env, "RPC_MAX_REQUESTS_PER_SECOND", config.RPC_MAX_REQUESTS_PER_SECOND))
    return val if val > 0 else int(config.RPC_MAX_REQUESTS_PER_SECOND)


def _build_chain(name: str, raw: Dict[str, Any], env: Mapping[str, str], capacity: int) -> ChainConfig:
    urls: List[str] = []
    env_key = raw.get("env")
    primary = env.get(env_key) if env_key else None
    urls.append(normalize_url(primary) if primary and primary.strip() else normalize_url(raw["rpc_url"]))
    urls.extend(split_urls(env.get(f"{name.upper()}_RPC_URLS")))

    # De-dupe while preserving order; priority follows position.
    endpoints: List[EndpointConfig] = []
    seen = set()
    for u in urls:
        if u in seen:
            continue
        seen.add(u)
        endpoints.append(EndpointConfig(url=u, priority=len(endpoints) + 1, max_requests_per_second=capacity))

    chain_id = raw.get("chain_id")
    return ChainConfig(
        name=name,
        kind=str(raw.get("kind") or "evm"),
        chain_id=int(chain_id) if chain_id is not None else None,
        endpoints=endpoints,
    )


def load_chain_configs(
    chains: Optional[List[str]] = None,
    env: Optional[Mapping[str, str]] = None,
) -> Dict[str, ChainConfig]:
    """Build per-chain endpoint lists from bot.config.CHAINS plus env overrides.

    For each chain the primary URL is the chain's env var (e.g. ALCHEMY_ETH_URL)
    or the public default, followed by <CHAIN>_RPC_URLS in listed order.
    """
    env = os.environ if env is None else env
    capacity = max_requests_per_second(env)
    wanted = [str(c).strip().lower() for c in chains] if chains else config.chain_names()
    out: Dict[str, ChainConfig] = {}
    for name in wanted:
        raw = config.CHAINS.get(name)
        if raw is None:
            raise ValueError(f"unsupported chain: {name}")
        out[name] = _build_chain(name, raw, env, capacity)
    return out
