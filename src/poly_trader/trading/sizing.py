from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal

from poly_trader.errors import OrderTooSmall
from poly_trader.types import SizedOrder, TickSize, TradeParams

MIN_ORDER_SIZE = Decimal("5")
# Exchange minimum notional for market orders.
MIN_MARKET_ORDER_COST = Decimal("1.00")

_CENT = Decimal("0.01")


@dataclass(frozen=True)
class RoundingConfig:
    price_decimals: int
    size_decimals: int
    amount_decimals: int


ROUNDING_CONFIG: dict[str, RoundingConfig] = {
    "0.1": RoundingConfig(price_decimals=1, size_decimals=2, amount_decimals=3),
    "0.01": RoundingConfig(price_decimals=2, size_decimals=2, amount_decimals=4),
    "0.001": RoundingConfig(price_decimals=3, size_decimals=2, amount_decimals=5),
    "0.0001": RoundingConfig(price_decimals=4, size_decimals=2, amount_decimals=6),
}


def rounding_config(tick_size: TickSize) -> RoundingConfig:
    try:
        return ROUNDING_CONFIG[tick_size]
    except KeyError:
        raise ValueError(f"unsupported tick size {tick_size!r}") from None


def _quantum(decimals: int) -> Decimal:
    return Decimal(1).scaleb(-decimals)


def round_price(price: Decimal, tick_size: TickSize) -> Decimal:
    cfg = rounding_config(tick_size)
    rounded = price.quantize(_quantum(cfg.price_decimals), rounding=ROUND_HALF_UP)
    # Keep the price strictly inside (0, 1) on the tick grid.
    tick = Decimal(tick_size)
    return min(max(rounded, tick), Decimal(1) - tick)


def size_order(params: TradeParams, *, min_order_size: Decimal = MIN_ORDER_SIZE) -> SizedOrder:
    """Turn a dollar intent into an exchange-legal (price, size) pair.

    The returned order always satisfies ``round(size * price, 2) >= target_cost``
    so the filled notional is never silently short of what the user asked for.
    Raises :class:`OrderTooSmall` when the size ends up under the exchange minimum.
    """
    cfg = rounding_config(params.tick_size)
    size_q = _quantum(cfg.size_decimals)

    price = round_price(params.price, params.tick_size)

    target_cost = params.amount.quantize(_CENT, rounding=ROUND_HALF_UP)
    if params.is_market_order and target_cost < MIN_MARKET_ORDER_COST:
        target_cost = MIN_MARKET_ORDER_COST

    # Never promise shares that may not be held on a market sell.
    rounding = ROUND_DOWN if params.is_market_order and params.side == "SELL" else ROUND_HALF_UP
    size = (target_cost / price).quantize(size_q, rounding=rounding)

    while (size * price).quantize(_CENT, rounding=ROUND_HALF_UP) < target_cost:
        size += size_q

    if size < min_order_size:
        raise OrderTooSmall(f"Order size {size} is below minimum of {min_order_size} shares")

    return SizedOrder(
        token_id=params.token_id,
        side=params.side,
        price=price,
        size=size,
        target_cost=target_cost,
        tick_size=params.tick_size,
        is_market_order=params.is_market_order,
    )
