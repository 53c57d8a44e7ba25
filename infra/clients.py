# infra/clients.py

from __future__ import annotations

import abc
import asyncio
from typing import Any, Dict, Optional

import aiohttp
from solders.pubkey import Pubkey
from web3 import Web3

from bot import config
from infra.errors import InvalidRequest, NetworkTransient, NotFound, RateLimited, RPCError

# JSON-RPC codes providers use for throttling (Infura/Alchemy/QuickNode style).
_RATE_LIMIT_CODES = {-32005, -32029, -32090, -32429, 429}


def _retry_after_s(headers: Any) -> Optional[float]:
    if not headers:
        return None
    raw = headers.get("Retry-After")
    if raw is None:
        return None
    try:
        return float(raw)
    except (TypeError, ValueError):
        return None


def _clamp_timeout(timeout_s: Optional[float], default_s: float) -> float:
    to_s = float(timeout_s) if timeout_s is not None else float(default_s)
    min_t = float(config.RPC_TIMEOUT_MIN_S)
    max_t = max(min_t, float(config.RPC_TIMEOUT_MAX_S))
    return max(min_t, min(max_t, to_s))


def _raise_for_rpc_error(err: Any, url: str) -> None:
    if isinstance(err, dict):
        code = err.get("code")
        message = str(err.get("message") or err)
    else:
        code = None
        message = str(err)
    low = message.lower()
    if code in _RATE_LIMIT_CODES or "rate limit" in low or "too many requests" in low:
        raise RateLimited(f"rpc_error: {message}", url=url)
    if code == -32601:
        raise NotFound(f"Not found: {message}", url=url)
    if code == -32602:
        raise InvalidRequest(f"Invalid params: {message}", url=url)
    raise RPCError(f"rpc_error: {message}", url=url)


class AsyncRPC(abc.ABC):
    """Async JSON-RPC client bound to a single endpoint url.

    - persistent aiohttp session, created lazily on the first call
    - per-call timeout, clamped to [RPC_TIMEOUT_MIN_S, RPC_TIMEOUT_MAX_S]
    - exactly one attempt per call; retries belong to RPCManager
    - failures surface as infra.errors types so the retry executor can classify them
    """

    kind = "generic"

    def __init__(self, url: str, *, default_timeout_s: Optional[float] = None) -> None:
        self.url = url
        if default_timeout_s is None:
            default_timeout_s = float(config.RPC_DEFAULT_TIMEOUT_S)
        self.default_timeout_s = float(default_timeout_s)
        self._id = 0
        self._session: Optional[aiohttp.ClientSession] = None
        self._connector: Optional[aiohttp.TCPConnector] = None

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.url!r})"

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session and not self._session.closed:
            return self._session
        # Public RPCs throttle hard; keep the socket count modest.
        self._connector = aiohttp.TCPConnector(limit=20, ttl_dns_cache=300)
        self._session = aiohttp.ClientSession(connector=self._connector)
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None
        if self._connector:
            await self._connector.close()
        self._connector = None

    async def call(self, method: str, params: Any, *, timeout_s: Optional[float] = None) -> Any:
        self._id += 1
        payload = {"jsonrpc": "2.0", "id": self._id, "method": method, "params": params}
        session = await self._get_session()
        to_s = _clamp_timeout(timeout_s, self.default_timeout_s)

        async def _do() -> Any:
            async with session.post(self.url, json=payload) as resp:
                if resp.status == 429:
                    raise RateLimited(
                        "http_429 rate limit",
                        retry_after_s=_retry_after_s(resp.headers),
                        url=self.url,
                    )
                if resp.status >= 400:
                    text = await resp.text()
                    raise RPCError(f"http_{resp.status}: {text[:200]}", status=resp.status, url=self.url)
                return await resp.json(content_type=None)

        try:
            data = await asyncio.wait_for(_do(), timeout=to_s)
        except asyncio.TimeoutError:
            raise NetworkTransient(f"timeout({to_s}s) calling {method}", url=self.url)
        except aiohttp.ClientConnectionError as e:
            raise NetworkTransient(f"fetch failed: {type(e).__name__}: {e}", url=self.url) from e
        except (aiohttp.ContentTypeError, ValueError) as e:
            raise RPCError(f"decode_error: {e}", url=self.url) from e

        if not isinstance(data, dict):
            raise RPCError("decode_error: response is not an object", url=self.url)
        if data.get("error") is not None:
            _raise_for_rpc_error(data["error"], self.url)
        return data.get("result")

    @abc.abstractmethod
    async def probe(self, *, timeout_s: Optional[float] = None) -> Any:
        """Cheapest liveness call for the chain."""


class EVMClient(AsyncRPC):
    kind = "evm"

    async def get_block_number(self, *, timeout_s: Optional[float] = None) -> int:
        res = await self.call("eth_blockNumber", [], timeout_s=timeout_s)
        return int(res, 16)

    async def get_gas_price(self, *, timeout_s: Optional[float] = None) -> int:
        res = await self.call("eth_gasPrice", [], timeout_s=timeout_s)
        return int(res, 16) if isinstance(res, str) else int(res)

    async def get_balance(self, address: str, block: str = "latest", *, timeout_s: Optional[float] = None) -> int:
        """Return the native balance in wei."""
        if not Web3.is_address(address):
            raise InvalidRequest(f"Invalid address: {address}", url=self.url)
        checksum = Web3.to_checksum_address(address)
        res = await self.call("eth_getBalance", [checksum, block], timeout_s=timeout_s)
        return int(res, 16)

    async def fee_history(
        self,
        block_count: int,
        reward_percentiles: list[int],
        *,
        timeout_s: Optional[float] = None,
    ) -> Dict[str, Any]:
        res = await self.call(
            "eth_feeHistory",
            [hex(int(block_count)), "latest", reward_percentiles],
            timeout_s=timeout_s,
        )
        return res if isinstance(res, dict) else {}

    async def estimate_gas(self, tx: Dict[str, Any], *, timeout_s: Optional[float] = None) -> int:
        res = await self.call("eth_estimateGas", [tx], timeout_s=timeout_s)
        return int(res, 16) if isinstance(res, str) else int(res)

    async def probe(self, *, timeout_s: Optional[float] = None) -> int:
        return await self.get_block_number(timeout_s=timeout_s)


class SolanaClient(AsyncRPC):
    kind = "solana"

    def __init__(self, url: str, *, default_timeout_s: Optional[float] = None, commitment: str = "confirmed") -> None:
        super().__init__(url, default_timeout_s=default_timeout_s)
        self.commitment = commitment

    async def get_slot(self, *, timeout_s: Optional[float] = None) -> int:
        res = await self.call("getSlot", [{"commitment": self.commitment}], timeout_s=timeout_s)
        return int(res)

    async def get_balance(self, pubkey: str, *, timeout_s: Optional[float] = None) -> int:
        """Return the balance in lamports."""
        try:
            Pubkey.from_string(str(pubkey or ""))
        except ValueError as e:
            raise InvalidRequest(f"Invalid address: {pubkey}", url=self.url) from e
        res = await self.call("getBalance", [pubkey, {"commitment": self.commitment}], timeout_s=timeout_s)
        return int(res["value"]) if isinstance(res, dict) else int(res)

    async def probe(self, *, timeout_s: Optional[float] = None) -> int:
        return await self.get_slot(timeout_s=timeout_s)


def make_client(kind: str, url: str) -> AsyncRPC:
    if kind == "solana":
        return SolanaClient(url)
    return EVMClient(url)
