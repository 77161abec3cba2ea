import asyncio
from decimal import Decimal
from typing import Any

import httpx

from poly_trader.errors import (
    ClobApiError,
    CredentialsExpired,
    InsufficientFunds,
    InsufficientShares,
    NoLiquidity,
    OrderRejected,
    OrderTooSmall,
    RpcError,
    UserRejectedSignature,
)
from poly_trader.settings import Settings
from poly_trader.trading.submitter import OrderSubmitter
from poly_trader.types import Credentials, MarketParams, SizedOrder

SIGNER = "0x1111111111111111111111111111111111111111"
SAFE = "0x2222222222222222222222222222222222222222"
SETTINGS = Settings()


class _FakeSigner:
    def __init__(self, *, reject: bool = False) -> None:
        self.reject = reject
        self.signed: list[dict[str, Any]] = []

    @property
    def address(self) -> str:
        return SIGNER

    async def chain_id(self) -> int:
        return 137

    async def switch_chain(self, chain_id: int) -> None:
        return

    async def sign_typed_data(self, typed_data: dict[str, Any]) -> str:
        if self.reject:
            raise RuntimeError("MetaMask Tx Signature: User denied transaction signature.")
        self.signed.append(typed_data)
        return "0xsig"


class _FakeClob:
    def __init__(
        self,
        *,
        response: Any = None,
        clob_balance: Any = None,
        open_orders: list[dict[str, Any]] | None = None,
        market: MarketParams | None = None,
    ) -> None:
        self.response = response if response is not None else {"success": True, "orderID": "0xorder"}
        self.clob_balance = clob_balance
        self.open_orders = open_orders or []
        self.market = market or MarketParams(token_id="123", neg_risk=False, tick_size="0.01")
        self.posted: list[dict[str, Any]] = []
        self.market_calls = 0

    async def get_market_params(self, token_id: str) -> MarketParams:
        self.market_calls += 1
        return self.market

    async def get_balance_allowance(self, creds: Credentials, **kwargs: Any) -> dict[str, Any]:
        if self.clob_balance is None:
            raise ClobApiError(status_code=500, payload="down")
        return {"balance": self.clob_balance, "allowance": "0"}

    async def post_order(self, creds: Credentials, *, order: dict[str, Any], order_type: str) -> dict[str, Any]:
        self.posted.append({"order": order, "order_type": order_type})
        if isinstance(self.response, Exception):
            raise self.response
        return self.response

    async def get_open_orders(self, creds: Credentials, *, asset_id: str | None = None) -> list[dict[str, Any]]:
        return self.open_orders


class _FakeRpc:
    def __init__(self, *, shares: Any) -> None:
        self.shares = shares
        self.contracts: list[str] = []

    async def erc1155_balance(self, *, contract: str, owner: str, token_id: str) -> int:
        self.contracts.append(contract)
        if isinstance(self.shares, Exception):
            raise self.shares
        return int(Decimal(self.shares) * 10**6)


def _creds() -> Credentials:
    return Credentials(
        api_key="key",
        api_secret="c2VjcmV0",
        api_passphrase="pass",
        signer_address=SIGNER,
        context="smart-wallet",
    )


def _submitter(clob: _FakeClob, rpc: _FakeRpc | None = None) -> OrderSubmitter:
    return OrderSubmitter(
        clob=clob,  # type: ignore[arg-type]
        rpc=rpc or _FakeRpc(shares="0"),  # type: ignore[arg-type]
        chain_id=137,
        ctf_exchange_address=SETTINGS.ctf_exchange_address,
        neg_risk_exchange_address=SETTINGS.neg_risk_exchange_address,
        ctf_address=SETTINGS.ctf_address,
        neg_risk_adapter_address=SETTINGS.neg_risk_adapter_address,
    )


def _sized(
    *,
    side: str = "BUY",
    size: str = "67.57",
    price: str = "0.37",
    target: str = "25.00",
    market: bool = False,
) -> SizedOrder:
    return SizedOrder(
        token_id="123",
        side=side,  # type: ignore[arg-type]
        price=Decimal(price),
        size=Decimal(size),
        target_cost=Decimal(target),
        tick_size="0.01",
        is_market_order=market,
    )


def _submit(submitter: OrderSubmitter, sized: SizedOrder, **kwargs: Any) -> Any:
    params: dict[str, Any] = {
        "signer": _FakeSigner(),
        "creds": _creds(),
        "funder_address": SAFE,
        "neg_risk": False,
        "tick_size": "0.01",
    }
    params.update(kwargs)
    return asyncio.run(submitter.submit(sized, **params))


def test_buy_is_signed_and_accepted() -> None:
    clob = _FakeClob()
    signer = _FakeSigner()

    result = _submit(_submitter(clob), _sized(), signer=signer)

    assert result.success is True
    assert result.order_id == "0xorder"
    assert clob.posted[0]["order_type"] == "GTC"
    order = clob.posted[0]["order"]
    assert order["maker"] == SAFE
    assert order["signer"] == SIGNER
    assert order["signatureType"] == 2
    assert order["makerAmount"] == "25000900"
    assert signer.signed[0]["domain"]["verifyingContract"] == SETTINGS.ctf_exchange_address


def test_missing_market_params_are_fetched_from_the_exchange() -> None:
    clob = _FakeClob(market=MarketParams(token_id="123", neg_risk=True, tick_size="0.01"))
    signer = _FakeSigner()

    result = _submit(_submitter(clob), _sized(), signer=signer, neg_risk=None, tick_size=None)

    assert result.success is True
    assert clob.market_calls == 1
    assert signer.signed[0]["domain"]["verifyingContract"] == SETTINGS.neg_risk_exchange_address


def test_sell_slightly_short_is_capped_to_balance() -> None:
    clob = _FakeClob(clob_balance="100000000")
    rpc = _FakeRpc(shares="100.0")

    result = _submit(
        _submitter(clob, rpc),
        _sized(side="SELL", size="100.3", price="0.50", target="50.15"),
    )

    assert result.success is True
    assert clob.posted[0]["order"]["makerAmount"] == "100000000"
    assert rpc.contracts == [SETTINGS.ctf_address]


def test_sell_far_short_fails_with_insufficient_shares() -> None:
    clob = _FakeClob(clob_balance="100000000")
    rpc = _FakeRpc(shares="100.0")

    result = _submit(
        _submitter(clob, rpc),
        _sized(side="SELL", size="110", price="0.50", target="55.00"),
    )

    assert result.success is False
    assert isinstance(result.error, InsufficientShares)
    assert "Have: 100.00" in result.message
    assert clob.posted == []


def test_neg_risk_sell_reads_balance_from_adapter() -> None:
    clob = _FakeClob(clob_balance="50000000")
    rpc = _FakeRpc(shares="50")

    _submit(
        _submitter(clob, rpc),
        _sized(side="SELL", size="20", price="0.50", target="10.00"),
        neg_risk=True,
    )

    assert rpc.contracts == [SETTINGS.neg_risk_adapter_address]


def test_unreadable_share_balance_does_not_block_sell() -> None:
    clob = _FakeClob(clob_balance=None)
    rpc = _FakeRpc(shares=RpcError(code=-32000, message="header not found"))

    result = _submit(
        _submitter(clob, rpc),
        _sized(side="SELL", size="20", price="0.50", target="10.00"),
    )

    assert result.success is True
    assert clob.posted[0]["order"]["makerAmount"] == "20000000"


def test_exchange_balance_is_a_secondary_check() -> None:
    clob = _FakeClob(clob_balance="10000000")
    rpc = _FakeRpc(shares=httpx.ConnectError("rpc down"))

    result = _submit(
        _submitter(clob, rpc),
        _sized(side="SELL", size="20", price="0.50", target="10.00"),
    )

    assert isinstance(result.error, InsufficientShares)


def test_no_match_is_no_liquidity() -> None:
    clob = _FakeClob(response={"success": False, "errorMsg": "no match"})

    result = _submit(_submitter(clob), _sized(market=True))

    assert isinstance(result.error, NoLiquidity)
    assert result.error.retryable is True


def test_unauthorized_is_credentials_expired() -> None:
    clob = _FakeClob(response=ClobApiError(status_code=401, payload={"error": "Unauthorized/Invalid api key"}))

    result = _submit(_submitter(clob), _sized())

    assert isinstance(result.error, CredentialsExpired)


def test_balance_wording_is_insufficient_funds() -> None:
    clob = _FakeClob(
        response=ClobApiError(
            status_code=400,
            payload={"error": "not enough balance / allowance"},
        )
    )

    result = _submit(_submitter(clob), _sized())

    assert isinstance(result.error, InsufficientFunds)


def test_unknown_error_keeps_raw_message() -> None:
    clob = _FakeClob(response={"success": False, "errorMsg": "order crosses book"})

    result = _submit(_submitter(clob), _sized())

    assert isinstance(result.error, OrderRejected)
    assert result.error.raw == "order crosses book"
    assert result.message == "order crosses book"


def test_missing_order_id_is_a_failure() -> None:
    clob = _FakeClob(response={"success": True})

    result = _submit(_submitter(clob), _sized())

    assert result.success is False
    assert isinstance(result.error, OrderRejected)


def test_partial_fak_fill_is_informational() -> None:
    clob = _FakeClob(response={"success": True, "orderID": "0xfak", "makingAmount": "10.5"})

    result = _submit(_submitter(clob), _sized(market=True))

    assert result.success is True
    assert result.error is None
    assert result.partial_fill is True
    assert result.filled_amount == Decimal("10.5")
    assert clob.posted[0]["order_type"] == "FAK"


def test_ambiguous_failure_is_reconciled_against_open_orders() -> None:
    clob = _FakeClob(
        response=httpx.ReadTimeout("timed out"),
        open_orders=[
            {"id": "0xother", "side": "SELL", "price": "0.37", "original_size": "67.57"},
            {"id": "0xfound", "side": "BUY", "price": "0.37", "original_size": "67.57"},
        ],
    )

    result = _submit(_submitter(clob), _sized())

    assert result.success is True
    assert result.order_id == "0xfound"


def test_ambiguous_failure_without_match_is_retryable_rejection() -> None:
    clob = _FakeClob(response=ClobApiError(status_code=502, payload="bad gateway"), open_orders=[])

    result = _submit(_submitter(clob), _sized())

    assert result.success is False
    assert isinstance(result.error, OrderRejected)
    assert result.error.retryable is True


def test_rejected_order_signature() -> None:
    clob = _FakeClob()

    result = _submit(_submitter(clob), _sized(), signer=_FakeSigner(reject=True))

    assert isinstance(result.error, UserRejectedSignature)
    assert clob.posted == []


def test_tolerance_band_is_configurable() -> None:
    submitter = OrderSubmitter(
        clob=_FakeClob(),  # type: ignore[arg-type]
        rpc=_FakeRpc(shares="0"),  # type: ignore[arg-type]
        chain_id=137,
        ctf_exchange_address=SETTINGS.ctf_exchange_address,
        neg_risk_exchange_address=SETTINGS.neg_risk_exchange_address,
        ctf_address=SETTINGS.ctf_address,
        neg_risk_adapter_address=SETTINGS.neg_risk_adapter_address,
        sell_balance_tolerance=Decimal("0.10"),
    )

    assert submitter.apply_sell_tolerance(Decimal("110"), Decimal("100")) == Decimal("100")
    assert submitter.apply_sell_tolerance(Decimal("12.3456789"), Decimal("50")) == Decimal("12.345678")


def test_capped_sell_below_minimum_is_not_posted() -> None:
    clob = _FakeClob(clob_balance="4990000")
    signer = _FakeSigner()

    result = _submit(
        _submitter(clob, _FakeRpc(shares="4.99")),
        _sized(side="SELL", size="5.04", price="0.50", target="2.52"),
        signer=signer,
    )

    assert result.success is False
    assert isinstance(result.error, OrderTooSmall)
    assert signer.signed == []
    assert clob.posted == []
