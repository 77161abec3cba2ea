from __future__ import annotations

import asyncio
import base64
import hmac
import json
import time
from dataclasses import dataclass
from decimal import Decimal
from hashlib import sha256
from typing import Any, cast

import httpx

from poly_trader.clients.http import RetryingHttpClient
from poly_trader.errors import ClobApiError
from poly_trader.types import TICK_SIZES, Credentials, MarketParams, OrderType, TickSize, TypedData

CLOB_AUTH_MESSAGE = "This message attests that I control the given wallet"

_OPEN_ORDERS_END_CURSOR = "LTE="
_MAX_OPEN_ORDER_PAGES = 20


def clob_auth_typed_data(*, address: str, timestamp: int, nonce: int, chain_id: int) -> TypedData:
    return {
        "domain": {"name": "ClobAuthDomain", "version": "1", "chainId": chain_id},
        "types": {
            "ClobAuth": [
                {"name": "address", "type": "address"},
                {"name": "timestamp", "type": "string"},
                {"name": "nonce", "type": "uint256"},
                {"name": "message", "type": "string"},
            ],
        },
        "primaryType": "ClobAuth",
        "message": {
            "address": address,
            "timestamp": str(timestamp),
            "nonce": nonce,
            "message": CLOB_AUTH_MESSAGE,
        },
    }


def build_hmac_signature(
    *,
    secret: str,
    timestamp: int,
    method: str,
    request_path: str,
    body: str | None = None,
) -> str:
    message = f"{timestamp}{method.upper()}{request_path}"
    if body:
        message += body
    key = base64.urlsafe_b64decode(secret)
    digest = hmac.new(key, message.encode("utf-8"), sha256).digest()
    return base64.urlsafe_b64encode(digest).decode("utf-8")


def l1_headers(*, address: str, signature: str, timestamp: int, nonce: int) -> dict[str, str]:
    return {
        "POLY_ADDRESS": address,
        "POLY_SIGNATURE": signature,
        "POLY_TIMESTAMP": str(timestamp),
        "POLY_NONCE": str(nonce),
    }


def l2_headers(
    creds: Credentials,
    *,
    method: str,
    request_path: str,
    body: str | None = None,
    timestamp: int | None = None,
) -> dict[str, str]:
    ts = int(time.time()) if timestamp is None else timestamp
    # The auth address is the credential's signer, never the funder.
    return {
        "POLY_ADDRESS": creds.signer_address,
        "POLY_SIGNATURE": build_hmac_signature(
            secret=creds.api_secret,
            timestamp=ts,
            method=method,
            request_path=request_path,
            body=body,
        ),
        "POLY_TIMESTAMP": str(ts),
        "POLY_API_KEY": creds.api_key,
        "POLY_PASSPHRASE": creds.api_passphrase,
    }


@dataclass(frozen=True)
class BuilderCredentials:
    api_key: str
    api_secret: str
    api_passphrase: str


def builder_headers(
    builder: BuilderCredentials,
    *,
    method: str,
    request_path: str,
    body: str | None = None,
    timestamp: int | None = None,
) -> dict[str, str]:
    ts = int(time.time()) if timestamp is None else timestamp
    return {
        "POLY_BUILDER_API_KEY": builder.api_key,
        "POLY_BUILDER_PASSPHRASE": builder.api_passphrase,
        "POLY_BUILDER_SIGNATURE": build_hmac_signature(
            secret=builder.api_secret,
            timestamp=ts,
            method=method,
            request_path=request_path,
            body=body,
        ),
        "POLY_BUILDER_TIMESTAMP": str(ts),
    }


def _dumps(payload: Any) -> str:
    return json.dumps(payload, separators=(",", ":"))


def normalize_tick_size(value: Any) -> TickSize:
    text = format(Decimal(str(value)).normalize(), "f")
    if text not in TICK_SIZES:
        raise ValueError(f"unsupported tick size from exchange: {value!r}")
    return cast(TickSize, text)


class ClobClient(RetryingHttpClient):
    error_cls = ClobApiError

    def __init__(
        self,
        *,
        host: str = "https://clob.polymarket.com",
        chain_id: int = 137,
        timeout_seconds: float = 10.0,
        max_retries: int = 3,
        retry_base_seconds: float = 0.5,
        retry_max_seconds: float = 8.0,
        builder: BuilderCredentials | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(
            base_url=host,
            timeout_seconds=timeout_seconds,
            max_retries=max_retries,
            retry_base_seconds=retry_base_seconds,
            retry_max_seconds=retry_max_seconds,
            transport=transport,
        )
        self.chain_id = chain_id
        self._builder = builder

    # Auth (L1)

    async def derive_api_key(
        self,
        *,
        address: str,
        signature: str,
        timestamp: int,
        nonce: int,
    ) -> dict[str, Any]:
        data = await self._request(
            "GET",
            "/auth/derive-api-key",
            headers=l1_headers(address=address, signature=signature, timestamp=timestamp, nonce=nonce),
        )
        return cast(dict[str, Any], data or {})

    async def create_api_key(
        self,
        *,
        address: str,
        signature: str,
        timestamp: int,
        nonce: int,
    ) -> dict[str, Any]:
        data = await self._request(
            "POST",
            "/auth/api-key",
            headers=l1_headers(address=address, signature=signature, timestamp=timestamp, nonce=nonce),
            retry=False,
        )
        return cast(dict[str, Any], data or {})

    # Public market data

    async def server_time(self) -> int:
        data = await self._request("GET", "/time")
        return int(data)

    async def get_neg_risk(self, token_id: str) -> bool:
        data = await self._request("GET", "/neg-risk", params={"token_id": token_id})
        if not isinstance(data, dict) or "neg_risk" not in data:
            raise ClobApiError(status_code=200, payload=data)
        return bool(data["neg_risk"])

    async def get_tick_size(self, token_id: str) -> TickSize:
        data = await self._request("GET", "/tick-size", params={"token_id": token_id})
        if not isinstance(data, dict) or data.get("minimum_tick_size") is None:
            raise ClobApiError(status_code=200, payload=data)
        try:
            return normalize_tick_size(data["minimum_tick_size"])
        except (ValueError, ArithmeticError):
            raise ClobApiError(status_code=200, payload=data) from None

    async def get_market_params(self, token_id: str) -> MarketParams:
        neg_risk, tick_size = await asyncio.gather(
            self.get_neg_risk(token_id),
            self.get_tick_size(token_id),
        )
        return MarketParams(token_id=token_id, neg_risk=neg_risk, tick_size=tick_size)

    # Trading (L2)

    async def post_order(
        self,
        creds: Credentials,
        *,
        order: dict[str, Any],
        order_type: OrderType,
    ) -> dict[str, Any]:
        body = _dumps({"order": order, "owner": creds.api_key, "orderType": order_type})
        headers = l2_headers(creds, method="POST", request_path="/order", body=body)
        if self._builder is not None:
            headers.update(
                builder_headers(self._builder, method="POST", request_path="/order", body=body)
            )
        data = await self._request(
            "POST",
            "/order",
            body=body,
            headers=headers,
            retry=False,
        )
        return cast(dict[str, Any], data or {})

    async def get_balance_allowance(
        self,
        creds: Credentials,
        *,
        asset_type: str,
        token_id: str | None = None,
        signature_type: int = 0,
    ) -> dict[str, Any]:
        data = await self._request(
            "GET",
            "/balance-allowance",
            params={
                "asset_type": asset_type,
                "token_id": token_id,
                "signature_type": signature_type,
            },
            headers=l2_headers(creds, method="GET", request_path="/balance-allowance"),
        )
        return cast(dict[str, Any], data or {})

    async def get_open_orders(
        self,
        creds: Credentials,
        *,
        asset_id: str | None = None,
    ) -> list[dict[str, Any]]:
        orders: list[dict[str, Any]] = []
        cursor: str | None = None
        for _ in range(_MAX_OPEN_ORDER_PAGES):
            data = await self._request(
                "GET",
                "/data/orders",
                params={"asset_id": asset_id, "next_cursor": cursor},
                headers=l2_headers(creds, method="GET", request_path="/data/orders"),
            )
            if isinstance(data, list):
                orders.extend(o for o in data if isinstance(o, dict))
                break
            page = (data or {}).get("data", [])
            if isinstance(page, list):
                orders.extend(o for o in page if isinstance(o, dict))
            cursor = (data or {}).get("next_cursor")
            if not cursor or cursor == _OPEN_ORDERS_END_CURSOR:
                break
        return orders

    async def cancel_order(self, creds: Credentials, *, order_id: str) -> dict[str, Any]:
        body = _dumps({"orderID": order_id})
        data = await self._request(
            "DELETE",
            "/order",
            body=body,
            headers=l2_headers(creds, method="DELETE", request_path="/order", body=body),
        )
        return cast(dict[str, Any], data or {})
