from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Optional, cast

import httpx

from poly_trader.clients.abi import (
    ZERO_ADDRESS,
    erc20_approve_call,
    erc1155_approval_call,
    multisend_call,
    to_hex,
)
from poly_trader.clients.clob import BuilderCredentials, builder_headers
from poly_trader.clients.http import RetryingHttpClient
from poly_trader.errors import RelayerApiError
from poly_trader.types import TypedData
from poly_trader.wallet import WalletSigner

logger = logging.getLogger("poly_trader.relayer")

DEFAULT_MULTISEND_ADDRESS = "0xA238CBeb142c10Ef7Ad8442C6D1f9E89e07e7761"

_DONE_STATES = ("STATE_MINED", "STATE_CONFIRMED")
_FAILED_STATES = ("STATE_FAILED", "STATE_INVALID")


class RelayerTransactionFailed(RuntimeError):
    def __init__(self, *, transaction_id: str, state: str):
        super().__init__(f"relayer transaction {transaction_id} ended in {state}")
        self.transaction_id = transaction_id
        self.state = state


@dataclass(frozen=True)
class RelayerReceipt:
    transaction_id: str
    state: str
    transaction_hash: Optional[str] = None
    proxy_address: Optional[str] = None


def safe_create_typed_data(*, chain_id: int, safe_factory: str) -> TypedData:
    return {
        "domain": {
            "name": "Polymarket Contract Proxy Factory",
            "chainId": chain_id,
            "verifyingContract": safe_factory,
        },
        "types": {
            "CreateProxy": [
                {"name": "paymentToken", "type": "address"},
                {"name": "payment", "type": "uint256"},
                {"name": "paymentReceiver", "type": "address"},
            ],
        },
        "primaryType": "CreateProxy",
        "message": {"paymentToken": ZERO_ADDRESS, "payment": 0, "paymentReceiver": ZERO_ADDRESS},
    }


def safe_tx_typed_data(
    *,
    chain_id: int,
    safe: str,
    to: str,
    data: str,
    operation: int,
    nonce: int,
) -> TypedData:
    return {
        "domain": {"chainId": chain_id, "verifyingContract": safe},
        "types": {
            "SafeTx": [
                {"name": "to", "type": "address"},
                {"name": "value", "type": "uint256"},
                {"name": "data", "type": "bytes"},
                {"name": "operation", "type": "uint8"},
                {"name": "safeTxGas", "type": "uint256"},
                {"name": "baseGas", "type": "uint256"},
                {"name": "gasPrice", "type": "uint256"},
                {"name": "gasToken", "type": "address"},
                {"name": "refundReceiver", "type": "address"},
                {"name": "nonce", "type": "uint256"},
            ],
        },
        "primaryType": "SafeTx",
        "message": {
            "to": to,
            "value": 0,
            "data": data,
            "operation": operation,
            "safeTxGas": 0,
            "baseGas": 0,
            "gasPrice": 0,
            "gasToken": ZERO_ADDRESS,
            "refundReceiver": ZERO_ADDRESS,
            "nonce": nonce,
        },
    }


def approval_batch(*, usdc: str, ctf: str, spenders: tuple[str, ...]) -> list[tuple[str, bytes]]:
    """Collateral approve plus outcome-token operator approval for every spender."""
    batch: list[tuple[str, bytes]] = []
    for spender in spenders:
        batch.append((usdc, erc20_approve_call(spender)))
        batch.append((ctf, erc1155_approval_call(spender)))
    return batch


class RelayerClient(RetryingHttpClient):
    error_cls = RelayerApiError

    def __init__(
        self,
        *,
        relayer_url: str = "https://relayer-v2.polymarket.com",
        chain_id: int = 137,
        safe_factory: str,
        multisend: str = DEFAULT_MULTISEND_ADDRESS,
        builder: BuilderCredentials | None = None,
        timeout_seconds: float = 10.0,
        max_retries: int = 3,
        retry_base_seconds: float = 0.5,
        poll_interval_seconds: float = 2.0,
        max_polls: int = 60,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(
            base_url=relayer_url,
            timeout_seconds=timeout_seconds,
            max_retries=max_retries,
            retry_base_seconds=retry_base_seconds,
            transport=transport,
        )
        self._chain_id = chain_id
        self._safe_factory = safe_factory
        self._multisend = multisend
        self._builder = builder
        self._poll_interval_seconds = float(max(0.0, poll_interval_seconds))
        self._max_polls = int(max(1, max_polls))

    async def get_deployed(self, address: str) -> bool:
        data = await self._request("GET", "/deployed", params={"address": address})
        return bool((data or {}).get("deployed", False))

    async def get_nonce(self, owner: str) -> int:
        data = await self._request("GET", "/nonce", params={"address": owner, "type": "SAFE"})
        return int((data or {}).get("nonce", 0))

    async def get_transaction(self, transaction_id: str) -> dict[str, Any]:
        data = await self._request("GET", "/transaction", params={"id": transaction_id})
        if isinstance(data, list):
            return cast(dict[str, Any], data[0]) if data else {}
        return cast(dict[str, Any], data or {})

    async def deploy(self, signer: WalletSigner, *, safe_address: str) -> RelayerReceipt:
        signature = await signer.sign_typed_data(
            safe_create_typed_data(chain_id=self._chain_id, safe_factory=self._safe_factory)
        )
        transaction_id = await self._submit(
            {
                "from": signer.address,
                "to": self._safe_factory,
                "proxyWallet": safe_address,
                "data": "0x",
                "signature": signature,
                "signatureParams": {
                    "paymentToken": ZERO_ADDRESS,
                    "payment": "0",
                    "paymentReceiver": ZERO_ADDRESS,
                },
                "type": "SAFE-CREATE",
            }
        )
        return await self.wait_for_transaction(transaction_id)

    async def set_allowances(
        self,
        signer: WalletSigner,
        *,
        safe_address: str,
        usdc: str,
        ctf: str,
        spenders: tuple[str, ...],
    ) -> RelayerReceipt:
        data = to_hex(multisend_call(approval_batch(usdc=usdc, ctf=ctf, spenders=spenders)))
        nonce = await self.get_nonce(signer.address)
        signature = await signer.sign_typed_data(
            safe_tx_typed_data(
                chain_id=self._chain_id,
                safe=safe_address,
                to=self._multisend,
                data=data,
                operation=1,
                nonce=nonce,
            )
        )
        transaction_id = await self._submit(
            {
                "from": signer.address,
                "to": self._multisend,
                "proxyWallet": safe_address,
                "data": data,
                "nonce": str(nonce),
                "signature": signature,
                "signatureParams": {
                    "gasPrice": "0",
                    "operation": "1",
                    "safeTxnGas": "0",
                    "baseGas": "0",
                    "gasToken": ZERO_ADDRESS,
                    "refundReceiver": ZERO_ADDRESS,
                },
                "type": "SAFE",
            }
        )
        return await self.wait_for_transaction(transaction_id)

    async def wait_for_transaction(self, transaction_id: str) -> RelayerReceipt:
        for attempt in range(self._max_polls):
            tx = await self.get_transaction(transaction_id)
            state = str(tx.get("state", ""))
            if state in _DONE_STATES:
                return RelayerReceipt(
                    transaction_id=transaction_id,
                    state=state,
                    transaction_hash=tx.get("transactionHash"),
                    proxy_address=tx.get("proxyAddress"),
                )
            if state in _FAILED_STATES:
                raise RelayerTransactionFailed(transaction_id=transaction_id, state=state)
            logger.debug(
                "relayer_transaction_pending",
                extra={"attempt": attempt, "tx_signature": transaction_id},
            )
            await asyncio.sleep(self._poll_interval_seconds)
        raise TimeoutError(f"relayer transaction {transaction_id} not mined after {self._max_polls} polls")

    async def _submit(self, payload: dict[str, Any]) -> str:
        body = json.dumps(payload, separators=(",", ":"))
        headers: dict[str, str] = {}
        if self._builder is not None:
            headers = builder_headers(self._builder, method="POST", request_path="/submit", body=body)
        data = await self._request("POST", "/submit", body=body, headers=headers, retry=False)
        transaction_id = str((data or {}).get("transactionID", ""))
        if not transaction_id:
            raise RelayerApiError(status_code=200, payload=data)
        return transaction_id
