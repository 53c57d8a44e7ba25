from typing import Optional

import pytest

from bot.chain_config import ChainConfig, EndpointConfig
from infra.errors import ChainNotConfigured, InvalidRequest, NoHealthyEndpoint
from infra.metrics import METRICS
from infra.rpc import RPCManager


class FakeClock:
    def __init__(self, t: float = 1000.0) -> None:
        self.t = t

    def __call__(self) -> float:
        return self.t

    def advance(self, dt: float) -> None:
        self.t += dt


class FakeClient:
    def __init__(self, kind: str, url: str) -> None:
        self.kind = kind
        self.url = url


def _chain(name: str, *endpoints, kind: str = "evm") -> ChainConfig:
    return ChainConfig(
        name=name,
        kind=kind,
        chain_id=None,
        endpoints=[EndpointConfig(url=u, priority=p, max_requests_per_second=cap) for u, p, cap in endpoints],
    )


def _manager(clock: FakeClock, *chains: ChainConfig, wall_clock: Optional[FakeClock] = None) -> RPCManager:
    return RPCManager(
        {c.name: c for c in chains},
        client_factory=FakeClient,
        clock=clock,
        wall_clock=wall_clock or clock,
    )


def test_burst_spills_to_secondary_after_rate_cap() -> None:
    clock = FakeClock()
    rpc = _manager(clock, _chain("ethereum", ("https://a.example", 1, 5), ("https://b.example", 2, 5)))

    picked = [rpc.get_best_rpc("ethereum").url for _ in range(5)]

    assert picked == ["https://a.example"] * 4 + ["https://b.example"]
    a, b = rpc.endpoints("ethereum")
    assert a.request_count == 4
    assert b.request_count == 1


def test_rate_cap_exhaustion_then_window_reset() -> None:
    clock = FakeClock()
    rpc = _manager(clock, _chain("ethereum", ("https://a.example", 1, 5), ("https://b.example", 2, 5)))

    for _ in range(8):
        rpc.get_best_rpc("ethereum")
    with pytest.raises(NoHealthyEndpoint):
        rpc.get_best_rpc("ethereum")

    clock.advance(0.5)
    with pytest.raises(NoHealthyEndpoint):
        rpc.get_best_rpc("ethereum")

    clock.advance(0.5)
    assert rpc.get_best_rpc("ethereum").url == "https://a.example"


def test_rate_cap_never_exceeded_within_window() -> None:
    clock = FakeClock()
    rpc = _manager(clock, _chain("bsc", ("https://a.example", 1, 10)))
    per_window = []
    for _ in range(3):
        n = 0
        for _ in range(20):
            try:
                rpc.get_best_rpc("bsc")
                n += 1
            except NoHealthyEndpoint:
                pass
            clock.advance(0.01)
        per_window.append(n)
        clock.advance(1.0)
    assert all(n <= 8 for n in per_window)
    assert per_window[0] == 8


def test_priority_wins_over_config_order() -> None:
    clock = FakeClock()
    rpc = _manager(clock, _chain("polygon", ("https://slow.example", 2, 100), ("https://paid.example", 1, 100)))
    for _ in range(5):
        assert rpc.get_best_rpc("polygon").url == "https://paid.example"


def test_equal_priority_balances_by_request_count() -> None:
    clock = FakeClock()
    rpc = _manager(clock, _chain("base", ("https://a.example", 1, 100), ("https://b.example", 1, 100)))
    picked = [rpc.get_rpc_url("base") for _ in range(4)]
    assert picked == ["https://a.example", "https://b.example", "https://a.example", "https://b.example"]


def test_selection_records_usage() -> None:
    clock, wall = FakeClock(t=5000.0), FakeClock(t=1_700_000_000.0)
    rpc = _manager(clock, _chain("arbitrum", ("https://a.example", 1, 100)), wall_clock=wall)
    ep = rpc.select_endpoint("arbitrum")
    assert ep.request_count == 1
    assert ep.last_used == 1_700_000_000.0
    assert rpc.rate_limiter.count("https://a.example") == 1


def test_wall_clock_jump_does_not_touch_rate_window() -> None:
    clock, wall = FakeClock(), FakeClock(t=1_700_000_000.0)
    rpc = _manager(clock, _chain("ethereum", ("https://a.example", 1, 5)), wall_clock=wall)
    for _ in range(4):
        rpc.get_best_rpc("ethereum")

    wall.advance(3600.0)
    with pytest.raises(NoHealthyEndpoint):
        rpc.get_best_rpc("ethereum")

    wall.advance(-7200.0)
    clock.advance(1.0)
    assert rpc.get_rpc_url("ethereum") == "https://a.example"


def test_unhealthy_and_failed_endpoints_are_skipped() -> None:
    clock = FakeClock()
    rpc = _manager(
        clock,
        _chain("ethereum", ("https://a.example", 1, 100), ("https://b.example", 2, 100), ("https://c.example", 3, 100)),
    )
    a, b, _ = rpc.endpoints("ethereum")
    a.healthy = False
    rpc.failed.add(b.url)
    assert rpc.get_rpc_url("ethereum") == "https://c.example"


def test_circuit_breaker_clears_failed_set_and_retries() -> None:
    METRICS.reset()
    clock = FakeClock()
    rpc = _manager(clock, _chain("ethereum", ("https://a.example", 1, 100), ("https://b.example", 2, 100)))
    rpc.failed.update({"https://a.example", "https://b.example"})

    assert rpc.get_rpc_url("ethereum") == "https://a.example"
    assert rpc.failed == set()
    assert METRICS.counter("rpc_circuit_resets_total") == 1


def test_circuit_breaker_gives_up_after_one_reset() -> None:
    clock = FakeClock()
    rpc = _manager(clock, _chain("ethereum", ("https://a.example", 1, 100), ("https://b.example", 2, 100)))
    for ep in rpc.endpoints("ethereum"):
        rpc.mark_failed(ep)

    with pytest.raises(NoHealthyEndpoint):
        rpc.get_best_rpc("ethereum")
    assert rpc.failed == set()


def test_failed_set_is_global_across_chains() -> None:
    clock = FakeClock()
    rpc = _manager(clock, _chain("ethereum", ("https://a.example", 1, 5)), _chain("bsc", ("https://b.example", 1, 5)))
    rpc.failed.add("https://b.example")
    for _ in range(4):
        rpc.get_best_rpc("ethereum")
    # One failed bsc url already covers the size of the ethereum pool.
    with pytest.raises(NoHealthyEndpoint):
        rpc.get_best_rpc("ethereum")
    assert rpc.failed == set()


def test_unknown_chain() -> None:
    rpc = _manager(FakeClock(), _chain("ethereum", ("https://a.example", 1, 5)))
    with pytest.raises(ChainNotConfigured):
        rpc.get_best_rpc("dogechain")


def test_chain_accessors_route_to_their_pool() -> None:
    clock = FakeClock()
    rpc = _manager(
        clock,
        _chain("solana", ("https://sol.example", 1, 100), kind="solana"),
        _chain("ethereum", ("https://eth.example", 1, 100)),
        _chain("bsc", ("https://bsc.example", 1, 100)),
        _chain("polygon", ("https://polygon.example", 1, 100)),
        _chain("arbitrum", ("https://arb.example", 1, 100)),
        _chain("base", ("https://base.example", 1, 100)),
    )
    assert rpc.get_solana_connection().kind == "solana"
    assert rpc.get_ethereum_provider().url == "https://eth.example"
    assert rpc.get_bsc_provider().url == "https://bsc.example"
    assert rpc.get_polygon_provider().url == "https://polygon.example"
    assert rpc.get_arbitrum_provider().url == "https://arb.example"
    assert rpc.get_base_provider().url == "https://base.example"


def test_get_web3_wraps_selected_url() -> None:
    rpc = _manager(
        FakeClock(),
        _chain("ethereum", ("https://eth.example", 1, 100)),
        _chain("solana", ("https://sol.example", 1, 100), kind="solana"),
    )
    w3 = rpc.get_web3("ethereum")
    assert w3.provider.endpoint_uri == "https://eth.example"
    with pytest.raises(InvalidRequest):
        rpc.get_web3("solana")
