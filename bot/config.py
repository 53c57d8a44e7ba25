# bot/config.py
# NOTE:
# RPC keys (Alchemy, QuickNode, ...) belong in env vars, not in the repo.
# Every URL below is a public fallback used when the env override is unset.

# Supported chains in display order. "kind" selects the client implementation.
CHAINS = {
    "solana": {
        "kind": "solana",
        "chain_id": None,
        "env": "ALCHEMY_SOLANA_URL",
        "rpc_url": "https://api.mainnet-beta.solana.com",
        "explorer": "https://solscan.io/tx/",
    },
    "ethereum": {
        "kind": "evm",
        "chain_id": 1,
        "env": "ALCHEMY_ETH_URL",
        "rpc_url": "https://ethereum.blockpi.network/v1/rpc/public",
        "explorer": "https://etherscan.io/tx/",
    },
    "bsc": {
        "kind": "evm",
        "chain_id": 56,
        "env": "ALCHEMY_BSC_URL",
        "rpc_url": "https://bsc-dataseed.binance.org/",
        "explorer": "https://bscscan.com/tx/",
    },
    "polygon": {
        "kind": "evm",
        "chain_id": 137,
        "env": "POLYGON_RPC_URL",
        "rpc_url": "https://polygon-rpc.com/",
        "explorer": "https://polygonscan.com/tx/",
    },
    "arbitrum": {
        "kind": "evm",
        "chain_id": 42161,
        "env": "ARBITRUM_RPC_URL",
        "rpc_url": "https://arb1.arbitrum.io/rpc",
        "explorer": "https://arbiscan.io/tx/",
    },
    "base": {
        "kind": "evm",
        "chain_id": 8453,
        "env": "BASE_RPC_URL",
        "rpc_url": "https://mainnet.base.org",
        "explorer": "https://basescan.org/tx/",
    },
}

# Per-endpoint capacity (requests/second). Selection uses only a safe share of it.
RPC_MAX_REQUESTS_PER_SECOND = 5
RPC_RATE_LIMIT_SAFETY = 0.8

# Priority given to endpoints added at runtime (lower == more preferred).
RPC_DEFAULT_ADD_PRIORITY = 10

# Retry executor
RPC_MAX_RETRIES = 3
RPC_ATTEMPT_TIMEOUT_S = 30.0
RPC_RATE_LIMIT_WAIT_DEFAULT_S = 5.0
RPC_RATE_LIMIT_WAIT_MIN_S = 5.0
RPC_RATE_LIMIT_WAIT_MAX_S = 60.0
RPC_NETWORK_BACKOFF_S = 1.0  # * attempt
RPC_GENERIC_BACKOFF_S = 0.5  # * attempt

# JSON-RPC client timeouts (seconds). Calls are clamped to this range.
RPC_TIMEOUT_MIN_S = 2.0
RPC_TIMEOUT_MAX_S = 15.0
RPC_DEFAULT_TIMEOUT_S = 8.0

# Health monitor: N consecutive probe failures -> endpoint unhealthy.
RPC_HEALTH_CHECK_INTERVAL_S = 120.0
RPC_HEALTH_CHECK_START_DELAY_S = 60.0
RPC_HEALTH_CHECK_TIMEOUT_S = 10.0
RPC_HEALTH_CHECK_CHAIN_PAUSE_S = 1.0
RPC_HEALTH_FAIL_THRESHOLD = 5

# Latency samples kept per endpoint for chain stats.
RPC_HEALTH_WINDOW = 50

# Gas helpers
GAS_LEVEL_MULTIPLIERS = {"low": 0.9, "medium": 1.0, "high": 1.2}
GAS_LIMIT_FALLBACK = 300000
SOLANA_COMPUTE_UNIT_LIMIT = 200000
SOLANA_COMPUTE_UNIT_PRICE_MICROLAMPORTS = 1000


def chain_names() -> list[str]:
    return list(CHAINS.keys())


def explorer_url(chain: str, tx_hash: str) -> str:
    """Return a block explorer link for tx_hash, or "" for unknown chains."""
    entry = CHAINS.get(str(chain or "").strip().lower())
    if not entry or not tx_hash:
        return ""
    return str(entry.get("explorer") or "") + str(tx_hash)
