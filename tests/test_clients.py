import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from infra.clients import AsyncRPC, EVMClient, SolanaClient, make_client
from infra.errors import InvalidRequest, NetworkTransient, NotFound, RateLimited, RPCError


def _app(responder) -> web.Application:
    async def handler(request: web.Request) -> web.Response:
        body = await request.json()
        return responder(body)

    app = web.Application()
    app.router.add_post("/", handler)
    return app


def _result(body, result):
    return web.json_response({"jsonrpc": "2.0", "id": body["id"], "result": result})


def _error(body, code, message):
    return web.json_response({"jsonrpc": "2.0", "id": body["id"], "error": {"code": code, "message": message}})


@pytest.mark.asyncio
async def test_evm_block_number_and_balance() -> None:
    seen = []

    def respond(body):
        seen.append(body)
        if body["method"] == "eth_blockNumber":
            return _result(body, "0x10")
        return _result(body, "0xde0b6b3a7640000")

    async with TestServer(_app(respond)) as server:
        client = EVMClient(str(server.make_url("/")))
        try:
            assert await client.probe() == 16
            bal = await client.get_balance("0xc02aaa39b223fe8d0a0e5c4f27ead9083c756cc2")
            assert bal == 10**18
        finally:
            await client.close()

    assert seen[1]["params"][0] == "0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2"
    assert seen[0]["jsonrpc"] == "2.0"


@pytest.mark.asyncio
async def test_http_429_maps_to_rate_limited_with_retry_after() -> None:
    def respond(body):
        return web.json_response({"error": "slow down"}, status=429, headers={"Retry-After": "7"})

    async with TestServer(_app(respond)) as server:
        client = EVMClient(str(server.make_url("/")))
        try:
            with pytest.raises(RateLimited) as exc:
                await client.get_block_number()
        finally:
            await client.close()
    assert exc.value.retry_after_s == 7.0
    assert exc.value.status == 429


@pytest.mark.parametrize(
    "code, message, expected",
    [
        (-32005, "daily request count exceeded", RateLimited),
        (-32000, "Rate limit reached", RateLimited),
        (-32602, "invalid argument 0", InvalidRequest),
        (-32601, "the method foo does not exist", NotFound),
        (-32000, "header not found", RPCError),
    ],
)
@pytest.mark.asyncio
async def test_jsonrpc_errors_are_typed(code, message, expected) -> None:
    async with TestServer(_app(lambda body: _error(body, code, message))) as server:
        client = EVMClient(str(server.make_url("/")))
        try:
            with pytest.raises(expected):
                await client.get_gas_price()
        finally:
            await client.close()


@pytest.mark.asyncio
async def test_http_5xx_is_rpc_error() -> None:
    async with TestServer(_app(lambda body: web.Response(status=503, text="upstream down"))) as server:
        client = EVMClient(str(server.make_url("/")))
        try:
            with pytest.raises(RPCError) as exc:
                await client.get_block_number()
        finally:
            await client.close()
    assert exc.value.status == 503


@pytest.mark.asyncio
async def test_connection_refused_is_network_transient() -> None:
    server = TestServer(web.Application())
    await server.start_server()
    url = str(server.make_url("/"))
    await server.close()

    client = EVMClient(url)
    try:
        with pytest.raises(NetworkTransient, match="fetch failed"):
            await client.get_block_number()
    finally:
        await client.close()


@pytest.mark.asyncio
async def test_invalid_evm_address_rejected_locally() -> None:
    client = EVMClient("http://127.0.0.1:1/")
    with pytest.raises(InvalidRequest, match="Invalid address"):
        await client.get_balance("0x1234")


@pytest.mark.asyncio
async def test_solana_slot_and_balance() -> None:
    def respond(body):
        if body["method"] == "getSlot":
            return _result(body, 250000000)
        return _result(body, {"context": {"slot": 1}, "value": 5000})

    async with TestServer(_app(respond)) as server:
        client = SolanaClient(str(server.make_url("/")))
        try:
            assert await client.probe() == 250000000
            assert await client.get_balance("So11111111111111111111111111111111111111112") == 5000
            with pytest.raises(InvalidRequest):
                await client.get_balance("0xnot-base58")
            # base58 alphabet but does not decode to 32 bytes
            with pytest.raises(InvalidRequest, match="Invalid address"):
                await client.get_balance("z" * 44)
        finally:
            await client.close()


def test_make_client_by_kind() -> None:
    assert isinstance(make_client("solana", "https://s.example"), SolanaClient)
    assert isinstance(make_client("evm", "https://e.example"), EVMClient)


def test_base_client_is_abstract() -> None:
    with pytest.raises(TypeError):
        AsyncRPC("https://x.example")
