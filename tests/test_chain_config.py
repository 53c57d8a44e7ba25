import pytest

from bot import config
from bot.chain_config import (
    health_check_interval_s,
    load_chain_configs,
    max_requests_per_second,
    split_urls,
)


def test_load_chain_configs_defaults() -> None:
    cfgs = load_chain_configs(env={})
    assert list(cfgs) == ["solana", "ethereum", "bsc", "polygon", "arbitrum", "base"]
    eth = cfgs["ethereum"]
    assert eth.kind == "evm"
    assert eth.chain_id == 1
    assert eth.rpc_urls == ["https://ethereum.blockpi.network/v1/rpc/public"]
    assert eth.endpoints[0].priority == 1
    assert eth.endpoints[0].max_requests_per_second == 5
    assert cfgs["solana"].kind == "solana"
    assert cfgs["solana"].chain_id is None


def test_primary_override_and_fallback_list() -> None:
    env = {
        "ALCHEMY_ETH_URL": "https://eth-mainnet.g.alchemy.com/v2/key",
        "ETHEREUM_RPC_URLS": "https://rpc.ankr.com/eth,\nllamarpc.com, https://eth-mainnet.g.alchemy.com/v2/key",
        "RPC_MAX_REQUESTS_PER_SECOND": "25",
    }
    eth = load_chain_configs(["ethereum"], env=env)["ethereum"]
    assert eth.rpc_urls == [
        "https://eth-mainnet.g.alchemy.com/v2/key",
        "https://rpc.ankr.com/eth",
        "https://llamarpc.com",
    ]
    assert [e.priority for e in eth.endpoints] == [1, 2, 3]
    assert all(e.max_requests_per_second == 25 for e in eth.endpoints)


def test_unsupported_chain() -> None:
    with pytest.raises(ValueError):
        load_chain_configs(["dogechain"], env={})


def test_numeric_env_fallbacks() -> None:
    assert health_check_interval_s({}) == config.RPC_HEALTH_CHECK_INTERVAL_S
    assert health_check_interval_s({"RPC_HEALTH_CHECK_INTERVAL_S": "30"}) == 30.0
    assert health_check_interval_s({"RPC_HEALTH_CHECK_INTERVAL_S": "soon"}) == 120.0
    assert max_requests_per_second({"RPC_MAX_REQUESTS_PER_SECOND": "0"}) == 5


def test_split_urls() -> None:
    assert split_urls(None) == []
    assert split_urls(" a.example , ,http://b.example\n") == ["https://a.example", "http://b.example"]


def test_explorer_url() -> None:
    assert config.explorer_url("base", "0xabc") == "https://basescan.org/tx/0xabc"
    assert config.explorer_url("dogechain", "0xabc") == ""
