"""Exchange order construction: amounts in base units plus the EIP-712 payload."""

from __future__ import annotations

import random
import time
from dataclasses import dataclass
from decimal import ROUND_DOWN, ROUND_HALF_UP, ROUND_UP, Decimal
from typing import Any, Literal

from poly_trader.clients.abi import ZERO_ADDRESS
from poly_trader.trading.sizing import RoundingConfig, rounding_config
from poly_trader.types import OrderType, Side, TickSize, TypedData

TOKEN_DECIMALS = 6

SIGNATURE_TYPE_EOA = 0
SIGNATURE_TYPE_SAFE = 2

SignatureType = Literal[0, 2]

_SIDE_INDEX: dict[str, int] = {"BUY": 0, "SELL": 1}

ORDER_TYPES: dict[str, list[dict[str, str]]] = {
    "Order": [
        {"name": "salt", "type": "uint256"},
        {"name": "maker", "type": "address"},
        {"name": "signer", "type": "address"},
        {"name": "taker", "type": "address"},
        {"name": "tokenId", "type": "uint256"},
        {"name": "makerAmount", "type": "uint256"},
        {"name": "takerAmount", "type": "uint256"},
        {"name": "expiration", "type": "uint256"},
        {"name": "nonce", "type": "uint256"},
        {"name": "feeRateBps", "type": "uint256"},
        {"name": "side", "type": "uint8"},
        {"name": "signatureType", "type": "uint8"},
    ],
}


@dataclass(frozen=True)
class UnsignedOrder:
    salt: int
    maker: str
    signer: str
    taker: str
    token_id: str
    maker_amount: int
    taker_amount: int
    expiration: int
    nonce: int
    fee_rate_bps: int
    side: Side
    signature_type: SignatureType
    order_type: OrderType
    neg_risk: bool

    def message(self) -> dict[str, Any]:
        return {
            "salt": self.salt,
            "maker": self.maker,
            "signer": self.signer,
            "taker": self.taker,
            "tokenId": int(self.token_id),
            "makerAmount": self.maker_amount,
            "takerAmount": self.taker_amount,
            "expiration": self.expiration,
            "nonce": self.nonce,
            "feeRateBps": self.fee_rate_bps,
            "side": _SIDE_INDEX[self.side],
            "signatureType": self.signature_type,
        }

    def to_payload(self, signature: str) -> dict[str, Any]:
        """JSON body of ``order`` as the exchange expects it."""
        return {
            "salt": self.salt,
            "maker": self.maker,
            "signer": self.signer,
            "taker": self.taker,
            "tokenId": self.token_id,
            "makerAmount": str(self.maker_amount),
            "takerAmount": str(self.taker_amount),
            "expiration": str(self.expiration),
            "nonce": str(self.nonce),
            "feeRateBps": str(self.fee_rate_bps),
            "side": self.side,
            "signatureType": self.signature_type,
            "signature": signature,
        }


def order_typed_data(order: UnsignedOrder, *, chain_id: int, exchange_address: str) -> TypedData:
    return {
        "domain": {
            "name": "Polymarket CTF Exchange",
            "version": "1",
            "chainId": chain_id,
            "verifyingContract": exchange_address,
        },
        "types": ORDER_TYPES,
        "primaryType": "Order",
        "message": order.message(),
    }


def _decimals(value: Decimal) -> int:
    exponent = value.normalize().as_tuple().exponent
    return max(0, -int(exponent))


def _fit_amount(raw: Decimal, cfg: RoundingConfig) -> Decimal:
    # Round up within a few extra digits first so tiny float-like tails don't cost a unit.
    if _decimals(raw) > cfg.amount_decimals:
        raw = raw.quantize(Decimal(1).scaleb(-(cfg.amount_decimals + 4)), rounding=ROUND_UP)
        if _decimals(raw) > cfg.amount_decimals:
            raw = raw.quantize(Decimal(1).scaleb(-cfg.amount_decimals), rounding=ROUND_DOWN)
    return raw


def to_base_units(value: Decimal) -> int:
    return int((value * (10**TOKEN_DECIMALS)).to_integral_value(rounding=ROUND_DOWN))


def limit_order_amounts(
    *,
    side: Side,
    size: Decimal,
    price: Decimal,
    tick_size: TickSize,
) -> tuple[int, int]:
    """(makerAmount, takerAmount) in base units for a GTC order of ``size`` shares."""
    cfg = rounding_config(tick_size)
    raw_price = price.quantize(Decimal(1).scaleb(-cfg.price_decimals), rounding=ROUND_HALF_UP)
    shares = size.quantize(Decimal(1).scaleb(-cfg.size_decimals), rounding=ROUND_DOWN)
    notional = _fit_amount(shares * raw_price, cfg)
    if side == "BUY":
        return to_base_units(notional), to_base_units(shares)
    return to_base_units(shares), to_base_units(notional)


def market_order_amounts(
    *,
    side: Side,
    amount: Decimal,
    price: Decimal,
    tick_size: TickSize,
) -> tuple[int, int]:
    """Market orders give dollars to spend on BUY and shares to sell on SELL."""
    cfg = rounding_config(tick_size)
    raw_price = price.quantize(Decimal(1).scaleb(-cfg.price_decimals), rounding=ROUND_HALF_UP)
    maker = amount.quantize(Decimal(1).scaleb(-cfg.size_decimals), rounding=ROUND_DOWN)
    if side == "BUY":
        taker = _fit_amount(maker / raw_price, cfg)
    else:
        taker = _fit_amount(maker * raw_price, cfg)
    return to_base_units(maker), to_base_units(taker)


def generate_salt() -> int:
    return round(random.random() * int(time.time()))


def build_order(
    *,
    token_id: str,
    side: Side,
    price: Decimal,
    tick_size: TickSize,
    signer_address: str,
    funder_address: str,
    neg_risk: bool,
    size: Decimal | None = None,
    market_amount: Decimal | None = None,
    fee_rate_bps: int = 0,
) -> UnsignedOrder:
    if market_amount is not None:
        maker_amount, taker_amount = market_order_amounts(
            side=side, amount=market_amount, price=price, tick_size=tick_size
        )
        order_type: OrderType = "FAK"
    elif size is not None:
        maker_amount, taker_amount = limit_order_amounts(
            side=side, size=size, price=price, tick_size=tick_size
        )
        order_type = "GTC"
    else:
        raise ValueError("either size or market_amount is required")

    signature_type: SignatureType = (
        SIGNATURE_TYPE_SAFE if funder_address.lower() != signer_address.lower() else SIGNATURE_TYPE_EOA
    )
    return UnsignedOrder(
        salt=generate_salt(),
        maker=funder_address,
        signer=signer_address,
        taker=ZERO_ADDRESS,
        token_id=token_id,
        maker_amount=maker_amount,
        taker_amount=taker_amount,
        expiration=0,
        nonce=0,
        fee_rate_bps=fee_rate_bps,
        side=side,
        signature_type=signature_type,
        order_type=order_type,
        neg_risk=neg_risk,
    )
