from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Literal, Optional

if TYPE_CHECKING:
    from poly_trader.errors import TradeError

Side = Literal["BUY", "SELL"]
TickSize = Literal["0.1", "0.01", "0.001", "0.0001"]
CredentialContext = Literal["direct", "smart-wallet"]
OrderType = Literal["GTC", "FAK", "FOK"]

TICK_SIZES: tuple[str, ...] = ("0.1", "0.01", "0.001", "0.0001")

# EIP-712 payload handed to the wallet signer: domain, types, primaryType, message.
TypedData = dict[str, Any]


@dataclass(frozen=True)
class TradeParams:
    token_id: str
    side: Side
    # Dollar notional the user wants to spend (BUY) or receive (SELL).
    amount: Decimal
    price: Decimal
    is_market_order: bool = False
    tick_size: TickSize = "0.01"
    neg_risk: bool = False

    def __post_init__(self) -> None:
        if self.side not in ("BUY", "SELL"):
            raise ValueError(f"side must be BUY or SELL, got {self.side!r}")
        if self.amount <= 0:
            raise ValueError("amount must be > 0")
        if not (Decimal("0") < self.price < Decimal("1")):
            raise ValueError("price must be within (0, 1)")
        if self.tick_size not in TICK_SIZES:
            raise ValueError(f"unsupported tick size {self.tick_size!r}")


@dataclass(frozen=True)
class SizedOrder:
    token_id: str
    side: Side
    price: Decimal
    size: Decimal
    target_cost: Decimal
    tick_size: TickSize
    is_market_order: bool = False

    @property
    def cost(self) -> Decimal:
        return (self.size * self.price).quantize(Decimal("0.01"))


@dataclass(frozen=True)
class MarketParams:
    token_id: str
    neg_risk: bool
    tick_size: TickSize


@dataclass(frozen=True)
class Credentials:
    api_key: str
    api_secret: str
    api_passphrase: str
    signer_address: str
    context: CredentialContext = "direct"

    def is_complete(self) -> bool:
        return bool(self.api_key and self.api_secret and self.api_passphrase)

    def __repr__(self) -> str:
        return (
            f"Credentials(api_key={self.api_key!r}, signer_address={self.signer_address!r}, "
            f"context={self.context!r})"
        )


@dataclass
class SmartWalletState:
    owner: str
    address: str
    is_deployed: bool = False
    has_allowances: bool = False


@dataclass(frozen=True)
class OrderResult:
    success: bool
    order_id: Optional[str] = None
    error: Optional["TradeError"] = None
    raw_response: Any = None
    # FAK orders may fill only part of the requested amount; that is not a failure.
    partial_fill: bool = False
    filled_amount: Optional[Decimal] = None
    message: str = ""

    def __post_init__(self) -> None:
        if self.success and not self.order_id:
            raise ValueError("successful OrderResult requires an order_id")


@dataclass
class DepositSession:
    deposit_address: str
    token_mint: str
    credits_per_token: Decimal
    wallet_address: str = ""
    amount: Decimal = Decimal("0")
    tx_signature: Optional[str] = None
    credits_added: int = 0
    verified_signatures: set[str] = field(default_factory=set)
