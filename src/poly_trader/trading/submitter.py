from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import ROUND_DOWN, Decimal, InvalidOperation
from typing import Any, Optional, Union

import httpx
from pydantic import BaseModel, ConfigDict, Field

from poly_trader.clients.clob import ClobClient
from poly_trader.clients.rpc import PolygonRpc
from poly_trader.errors import (
    ClobApiError,
    InsufficientShares,
    OrderRejected,
    OrderTooSmall,
    RpcError,
    TradeError,
    UserRejectedSignature,
    classify_order_error,
    is_user_rejection,
)
from poly_trader.trading.orders import UnsignedOrder, build_order, order_typed_data
from poly_trader.trading.sizing import MIN_ORDER_SIZE, round_price
from poly_trader.types import Credentials, OrderResult, SizedOrder, TickSize
from poly_trader.wallet import WalletSigner

logger = logging.getLogger("poly_trader.submitter")

SHARE_DECIMALS = 6
_SHARE_QUANTUM = Decimal(1).scaleb(-SHARE_DECIMALS)


class ClobOrderResponse(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    success: Optional[bool] = None
    error_msg: Optional[str] = Field(default=None, alias="errorMsg")
    error: Optional[str] = None
    order_id: Optional[str] = Field(default=None, alias="orderID")
    id: Optional[str] = None
    status: Optional[Union[int, str]] = None
    making_amount: Optional[str] = Field(default=None, alias="makingAmount")
    taking_amount: Optional[str] = Field(default=None, alias="takingAmount")

    def error_text(self) -> str:
        return self.error_msg or self.error or ""

    def has_error(self) -> bool:
        if self.success is False or self.error_text():
            return True
        return isinstance(self.status, int) and self.status >= 400

    def resolved_order_id(self) -> Optional[str]:
        return self.order_id or self.id or None


@dataclass(frozen=True)
class PreparedOrder:
    order: UnsignedOrder
    signature: str
    size: Decimal
    # Dollars for a market BUY, shares otherwise.
    requested_amount: Decimal
    price: Decimal

    def payload(self) -> dict[str, Any]:
        return self.order.to_payload(self.signature)


def _to_decimal(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


def _failure(error: TradeError, raw: Any = None) -> OrderResult:
    return OrderResult(success=False, error=error, raw_response=raw, message=error.message)


class OrderSubmitter:
    def __init__(
        self,
        *,
        clob: ClobClient,
        rpc: PolygonRpc,
        chain_id: int,
        ctf_exchange_address: str,
        neg_risk_exchange_address: str,
        ctf_address: str,
        neg_risk_adapter_address: str,
        sell_balance_tolerance: Decimal = Decimal("0.01"),
    ) -> None:
        self._clob = clob
        self._rpc = rpc
        self._chain_id = chain_id
        self._ctf_exchange_address = ctf_exchange_address
        self._neg_risk_exchange_address = neg_risk_exchange_address
        self._ctf_address = ctf_address
        self._neg_risk_adapter_address = neg_risk_adapter_address
        self._tolerance = Decimal(str(sell_balance_tolerance))

    def exchange_for(self, neg_risk: bool) -> str:
        return self._neg_risk_exchange_address if neg_risk else self._ctf_exchange_address

    def apply_sell_tolerance(self, size: Decimal, balance: Decimal) -> Decimal:
        """Cap ``size`` to ``balance`` when it is short by at most the tolerance band."""
        if balance < size:
            shortfall = (size - balance) / size
            if shortfall > self._tolerance:
                raise InsufficientShares(
                    f"Not enough shares to sell. Have: {balance:.2f}, Need: {size:.2f}"
                )
            logger.info(
                "sell_size_capped",
                extra={"size": str(size), "context": f"balance={balance}"},
            )
            size = balance
        size = size.quantize(_SHARE_QUANTUM, rounding=ROUND_DOWN)
        if size < MIN_ORDER_SIZE:
            raise OrderTooSmall(f"Order size {size} is below minimum of {MIN_ORDER_SIZE} shares")
        return size

    async def check_sell_balance(
        self,
        sized: SizedOrder,
        *,
        creds: Credentials,
        funder_address: str,
        neg_risk: bool,
        size: Decimal,
    ) -> Decimal:
        # Negative-risk positions are held through the adapter, not the base CTF contract.
        contract = self._neg_risk_adapter_address if neg_risk else self._ctf_address
        try:
            raw = await self._rpc.erc1155_balance(
                contract=contract, owner=funder_address, token_id=sized.token_id
            )
        except (RpcError, httpx.HTTPError, ValueError):
            logger.warning(
                "share_balance_unavailable",
                extra={"token_id": sized.token_id, "funder": funder_address},
                exc_info=True,
            )
        else:
            size = self.apply_sell_tolerance(size, Decimal(raw).scaleb(-SHARE_DECIMALS))

        signature_type = 2 if funder_address.lower() != creds.signer_address.lower() else 0
        try:
            data = await self._clob.get_balance_allowance(
                creds,
                asset_type="CONDITIONAL",
                token_id=sized.token_id,
                signature_type=signature_type,
            )
        except (ClobApiError, httpx.HTTPError):
            logger.warning(
                "clob_balance_unavailable",
                extra={"token_id": sized.token_id, "funder": funder_address},
                exc_info=True,
            )
            return size
        balance_units = _to_decimal(data.get("balance"))
        if balance_units is not None:
            self.apply_sell_tolerance(size, balance_units.scaleb(-SHARE_DECIMALS))
        return size

    async def prepare(
        self,
        sized: SizedOrder,
        *,
        signer: WalletSigner,
        creds: Credentials,
        funder_address: str,
        neg_risk: Optional[bool] = None,
        tick_size: Optional[TickSize] = None,
    ) -> PreparedOrder:
        """Check balances, build and sign; raises taxonomy errors."""
        if neg_risk is None or tick_size is None:
            market = await self._clob.get_market_params(sized.token_id)
            neg_risk, tick_size = market.neg_risk, market.tick_size

        price = round_price(sized.price, tick_size)
        size = sized.size
        if sized.side == "SELL":
            size = await self.check_sell_balance(
                sized,
                creds=creds,
                funder_address=funder_address,
                neg_risk=neg_risk,
                size=size,
            )

        if sized.is_market_order:
            requested = size if sized.side == "SELL" else sized.target_cost
            order = build_order(
                token_id=sized.token_id,
                side=sized.side,
                price=price,
                tick_size=tick_size,
                signer_address=creds.signer_address,
                funder_address=funder_address,
                neg_risk=neg_risk,
                market_amount=requested,
            )
        else:
            requested = size
            order = build_order(
                token_id=sized.token_id,
                side=sized.side,
                price=price,
                tick_size=tick_size,
                signer_address=creds.signer_address,
                funder_address=funder_address,
                neg_risk=neg_risk,
                size=size,
            )

        typed_data = order_typed_data(
            order, chain_id=self._chain_id, exchange_address=self.exchange_for(neg_risk)
        )
        try:
            signature = await signer.sign_typed_data(typed_data)
        except TradeError:
            raise
        except Exception as exc:
            if is_user_rejection(exc):
                raise UserRejectedSignature() from exc
            raise OrderRejected(f"Failed to sign order: {exc}", raw=str(exc)) from exc

        return PreparedOrder(
            order=order,
            signature=signature,
            size=size,
            requested_amount=requested,
            price=price,
        )

    async def post(self, prepared: PreparedOrder, *, creds: Credentials) -> OrderResult:
        order = prepared.order
        log_extra = {"token_id": order.token_id, "side": order.side, "size": str(prepared.size)}
        try:
            data = await self._clob.post_order(
                creds, order=prepared.payload(), order_type=order.order_type
            )
        except ClobApiError as exc:
            if exc.status_code >= 500:
                logger.warning("order_post_ambiguous", extra=log_extra)
                return await self._reconcile(prepared, creds=creds, raw=exc.payload)
            error = classify_order_error(exc.error_message(), status_code=exc.status_code)
            logger.warning("order_rejected", extra={**log_extra, "context": error.code})
            return _failure(error, exc.payload)
        except httpx.HTTPError as exc:
            logger.warning("order_post_ambiguous", extra=log_extra, exc_info=True)
            return await self._reconcile(prepared, creds=creds, raw=str(exc))

        response = ClobOrderResponse.model_validate(data)
        if response.has_error():
            error = classify_order_error(response.error_text() or "Order failed")
            logger.warning("order_rejected", extra={**log_extra, "context": error.code})
            return _failure(error, data)

        order_id = response.resolved_order_id()
        if not order_id:
            return _failure(OrderRejected("Order submission failed - no order ID returned", raw=data), data)

        logger.info("order_submitted", extra={**log_extra, "order_id": order_id})
        return self._success(prepared, order_id=order_id, response=response, raw=data)

    async def submit(
        self,
        sized: SizedOrder,
        *,
        signer: WalletSigner,
        creds: Credentials,
        funder_address: str,
        neg_risk: Optional[bool] = None,
        tick_size: Optional[TickSize] = None,
    ) -> OrderResult:
        try:
            prepared = await self.prepare(
                sized,
                signer=signer,
                creds=creds,
                funder_address=funder_address,
                neg_risk=neg_risk,
                tick_size=tick_size,
            )
        except TradeError as exc:
            return _failure(exc)
        except ClobApiError as exc:
            return _failure(OrderRejected(exc.error_message(), raw=exc.payload), exc.payload)
        return await self.post(prepared, creds=creds)

    def _success(
        self,
        prepared: PreparedOrder,
        *,
        order_id: str,
        response: ClobOrderResponse,
        raw: Any,
    ) -> OrderResult:
        filled = _to_decimal(response.making_amount)
        partial = (
            prepared.order.order_type == "FAK"
            and filled is not None
            and Decimal(0) < filled < prepared.requested_amount
        )
        message = ""
        if partial:
            message = f"Partially filled: {filled:.2f} of {prepared.requested_amount:.2f}"
            logger.info("order_partially_filled", extra={"order_id": order_id, "size": str(filled)})
        return OrderResult(
            success=True,
            order_id=order_id,
            raw_response=raw,
            partial_fill=partial,
            filled_amount=filled,
            message=message,
        )

    async def _reconcile(self, prepared: PreparedOrder, *, creds: Credentials, raw: Any) -> OrderResult:
        """Look for the order among open orders before reporting an ambiguous failure."""
        order = prepared.order
        shares_units = order.taker_amount if order.side == "BUY" else order.maker_amount
        shares = Decimal(shares_units).scaleb(-SHARE_DECIMALS)
        try:
            open_orders = await self._clob.get_open_orders(creds, asset_id=order.token_id)
        except (ClobApiError, httpx.HTTPError):
            logger.warning("order_reconcile_failed", extra={"token_id": order.token_id}, exc_info=True)
            open_orders = []

        for candidate in open_orders:
            if str(candidate.get("side", "")).upper() != order.side:
                continue
            if _to_decimal(candidate.get("price")) != prepared.price:
                continue
            if _to_decimal(candidate.get("original_size")) != shares:
                continue
            order_id = str(candidate.get("id") or "")
            if order_id:
                logger.info(
                    "order_reconciled",
                    extra={"token_id": order.token_id, "order_id": order_id},
                )
                return OrderResult(success=True, order_id=order_id, raw_response=candidate)

        return _failure(
            OrderRejected("Order status unknown; no matching open order found", raw=raw),
            raw,
        )
