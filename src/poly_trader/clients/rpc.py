from __future__ import annotations

import itertools
import json
from typing import Any

import httpx

from poly_trader.clients.abi import (
    ERC20_BALANCE_OF,
    ERC1155_BALANCE_OF,
    decode_uint,
    encode_address,
    encode_uint,
    to_hex,
)
from poly_trader.clients.http import RetryingHttpClient
from poly_trader.errors import RpcError


class PolygonRpc(RetryingHttpClient):
    def __init__(
        self,
        *,
        rpc_url: str = "https://polygon-rpc.com",
        timeout_seconds: float = 10.0,
        max_retries: int = 3,
        retry_base_seconds: float = 0.5,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(
            base_url=rpc_url,
            timeout_seconds=timeout_seconds,
            max_retries=max_retries,
            retry_base_seconds=retry_base_seconds,
            transport=transport,
        )
        self._ids = itertools.count(1)

    async def call(self, method: str, params: list[Any]) -> Any:
        body = json.dumps(
            {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}
        )
        data = await self._request("POST", "", body=body)
        if not isinstance(data, dict):
            raise RpcError(code=-1, message=f"unexpected response: {data!r}")
        error = data.get("error")
        if error:
            raise RpcError(code=int(error.get("code", -1)), message=str(error.get("message", "")))
        return data.get("result")

    async def chain_id(self) -> int:
        return decode_uint(await self.call("eth_chainId", []))

    async def get_code(self, address: str) -> str:
        return str(await self.call("eth_getCode", [address, "latest"]) or "0x")

    async def is_contract(self, address: str) -> bool:
        code = await self.get_code(address)
        return code not in ("", "0x", "0x0")

    async def eth_call(self, *, to: str, data: bytes) -> str:
        return str(await self.call("eth_call", [{"to": to, "data": to_hex(data)}, "latest"]))

    async def erc20_balance(self, *, token: str, owner: str) -> int:
        result = await self.eth_call(to=token, data=ERC20_BALANCE_OF + encode_address(owner))
        return decode_uint(result)

    async def erc1155_balance(self, *, contract: str, owner: str, token_id: str) -> int:
        data = ERC1155_BALANCE_OF + encode_address(owner) + encode_uint(int(token_id))
        return decode_uint(await self.eth_call(to=contract, data=data))
