from __future__ import annotations

import json
from decimal import Decimal
from typing import Literal, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field

from poly_trader.clients.http import RetryingHttpClient
from poly_trader.errors import DepositBackendError


class DepositAddressInfo(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    deposit_address: str = Field(alias="depositAddress")
    token_mint: str = Field(alias="tokenMint")
    credits_per_token: Decimal = Field(alias="creditsPerToken", gt=0)


class FoundDeposit(BaseModel):
    found: bool = False
    signature: Optional[str] = None
    amount: Optional[Decimal] = None
    timestamp: Optional[int] = None
    message: Optional[str] = None
    error: Optional[str] = None


class VerifyDepositResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    success: bool = False
    status: Optional[Literal["pending"]] = None
    credits_added: Optional[int] = Field(default=None, alias="creditsAdded")
    new_balance: Optional[Decimal] = Field(default=None, alias="newBalance")
    message: Optional[str] = None
    error: Optional[str] = None

    def is_pending(self) -> bool:
        return not self.success and self.status == "pending"


class DepositBackendClient(RetryingHttpClient):
    """Serverless deposit function; every call is a POST with an ``action`` field."""

    error_cls = DepositBackendError

    def __init__(
        self,
        *,
        function_url: str,
        auth_token: str = "",
        timeout_seconds: float = 15.0,
        max_retries: int = 2,
        retry_base_seconds: float = 0.5,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        super().__init__(
            base_url=function_url,
            timeout_seconds=timeout_seconds,
            max_retries=max_retries,
            retry_base_seconds=retry_base_seconds,
            headers={"Authorization": f"Bearer {auth_token}"} if auth_token else None,
            transport=transport,
        )

    async def get_deposit_address(self) -> DepositAddressInfo:
        data = await self._invoke({"action": "get-deposit-address"})
        return DepositAddressInfo.model_validate(data)

    async def find_deposit(
        self,
        *,
        wallet_address: str,
        min_amount: Decimal | None = None,
        lookback_minutes: int = 30,
    ) -> FoundDeposit:
        data = await self._invoke(
            {
                "action": "find-deposit",
                "walletAddress": wallet_address,
                "minAmount": float(min_amount) if min_amount is not None else None,
                "lookbackMinutes": lookback_minutes,
            }
        )
        return FoundDeposit.model_validate(data)

    async def verify_deposit(
        self,
        *,
        tx_signature: str,
        user_id: str,
        wallet_address: str,
        amount: Decimal,
    ) -> VerifyDepositResponse:
        # The only credit-mutating call: never retried automatically.
        data = await self._invoke(
            {
                "action": "verify-deposit",
                "txSignature": tx_signature,
                "userId": user_id,
                "walletAddress": wallet_address,
                "amount": float(amount),
            },
            retry=False,
        )
        return VerifyDepositResponse.model_validate(data)

    async def _invoke(self, payload: dict[str, object], *, retry: bool = True) -> dict[str, object]:
        body = json.dumps({k: v for k, v in payload.items() if v is not None})
        data = await self._request("POST", "", body=body, retry=retry)
        if not isinstance(data, dict):
            raise DepositBackendError(status_code=200, payload=data)
        return data
