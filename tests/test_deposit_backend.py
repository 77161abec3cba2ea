import asyncio
import json
from decimal import Decimal

import httpx
import pytest

from poly_trader.clients.deposit_backend import DepositBackendClient
from poly_trader.errors import DepositBackendError

FUNCTION_URL = "https://deposits.example.com/functions/v1/deposit"


def test_deposit_address_is_parsed_and_authorized() -> None:
    captured: dict[str, object] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        captured["auth"] = request.headers.get("Authorization")
        captured["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "depositAddress": "Vault111",
                "tokenMint": "Mint111",
                "creditsPerToken": 100,
            },
        )

    client = DepositBackendClient(
        function_url=FUNCTION_URL,
        auth_token="anon-key",
        transport=httpx.MockTransport(handler),
    )
    try:
        info = asyncio.run(client.get_deposit_address())
    finally:
        asyncio.run(client.aclose())

    assert info.deposit_address == "Vault111"
    assert info.credits_per_token == Decimal("100")
    assert captured["auth"] == "Bearer anon-key"
    assert captured["body"] == {"action": "get-deposit-address"}


def test_find_deposit_retries_and_omits_empty_fields() -> None:
    bodies: list[dict[str, object]] = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        if len(bodies) == 1:
            return httpx.Response(503, json={"error": "busy"})
        return httpx.Response(200, json={"found": True, "signature": "5sig", "amount": 10.5})

    client = DepositBackendClient(
        function_url=FUNCTION_URL,
        retry_base_seconds=0,
        transport=httpx.MockTransport(handler),
    )
    try:
        found = asyncio.run(client.find_deposit(wallet_address="Wallet111"))
    finally:
        asyncio.run(client.aclose())

    assert found.found is True
    assert found.signature == "5sig"
    assert len(bodies) == 2
    assert "minAmount" not in bodies[0]
    assert bodies[0]["lookbackMinutes"] == 30


def test_verify_deposit_is_sent_once() -> None:
    calls = {"n": 0}

    def handler(request: httpx.Request) -> httpx.Response:
        calls["n"] += 1
        return httpx.Response(502, json={"error": "bad gateway"})

    client = DepositBackendClient(
        function_url=FUNCTION_URL,
        max_retries=3,
        retry_base_seconds=0,
        transport=httpx.MockTransport(handler),
    )
    try:
        with pytest.raises(DepositBackendError) as excinfo:
            asyncio.run(
                client.verify_deposit(
                    tx_signature="5sig",
                    user_id="user-1",
                    wallet_address="Wallet111",
                    amount=Decimal("10.5"),
                )
            )
    finally:
        asyncio.run(client.aclose())

    assert calls["n"] == 1
    assert excinfo.value.status_code == 502


def test_verify_pending_status() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        assert body["action"] == "verify-deposit"
        assert body["txSignature"] == "5sig"
        assert body["amount"] == 10.5
        return httpx.Response(200, json={"success": False, "status": "pending"})

    client = DepositBackendClient(function_url=FUNCTION_URL, transport=httpx.MockTransport(handler))
    try:
        response = asyncio.run(
            client.verify_deposit(
                tx_signature="5sig",
                user_id="user-1",
                wallet_address="Wallet111",
                amount=Decimal("10.5"),
            )
        )
    finally:
        asyncio.run(client.aclose())

    assert response.is_pending() is True
    assert response.credits_added is None
