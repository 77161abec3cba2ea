import asyncio
from decimal import Decimal
from typing import Any, Optional

from poly_trader.errors import (
    ClobApiError,
    CredentialsExpired,
    DeploymentFailed,
    InsufficientFunds,
    NetworkMismatch,
    OrderRejected,
    OrderTooSmall,
    TradeBusy,
    TradeCancelled,
    WalletNotConnected,
)
from poly_trader.session_store import MemorySessionStore
from poly_trader.settings import Settings
from poly_trader.trading.machine import (
    STAGE_MESSAGES,
    TradeStage,
    TradeStageMachine,
    can_transition,
)
from poly_trader.trading.provisioning import SmartWalletProvisioner, forget_known_deployments
from poly_trader.types import Credentials, MarketParams, OrderResult, SmartWalletState, TradeParams

SIGNER = "0x1111111111111111111111111111111111111111"
SAFE = "0x2222222222222222222222222222222222222222"


class _FakeSigner:
    def __init__(self, *, chain: int = 137, address: str = SIGNER, switch_ok: bool = True) -> None:
        self.chain = chain
        self._address = address
        self.switch_ok = switch_ok

    @property
    def address(self) -> str:
        return self._address

    async def chain_id(self) -> int:
        return self.chain

    async def switch_chain(self, chain_id: int) -> None:
        if not self.switch_ok:
            raise RuntimeError("Unrecognized chain ID")
        self.chain = chain_id

    async def sign_typed_data(self, typed_data: dict[str, Any]) -> str:
        return "0xsig"


class _FakeClob:
    def __init__(self, *, market: Optional[MarketParams] = None) -> None:
        self.market = market or MarketParams(token_id="123", neg_risk=False, tick_size="0.01")

    async def get_market_params(self, token_id: str) -> MarketParams:
        return self.market

    async def get_open_orders(self, creds: Credentials, *, asset_id: Optional[str] = None) -> list[dict[str, Any]]:
        return [{"id": "0xopen", "asset_id": asset_id}]

    async def cancel_order(self, creds: Credentials, *, order_id: str) -> dict[str, Any]:
        return {"canceled": [order_id], "not_canceled": {}}


class _FakeRpc:
    def __init__(self, *, usdc: Decimal = Decimal("1000")) -> None:
        self.usdc = usdc

    async def erc20_balance(self, *, token: str, owner: str) -> int:
        return int(self.usdc * 10**6)


class _FakeLinker:
    def __init__(self, *, gate: Optional[asyncio.Event] = None) -> None:
        self.gate = gate
        self.links: list[Optional[str]] = []
        self.invalidated: list[str] = []

    async def link(self, signer: Any, funder_address: Optional[str] = None) -> Credentials:
        self.links.append(funder_address)
        if self.gate is not None:
            await self.gate.wait()
        return Credentials(
            api_key="key",
            api_secret="c2VjcmV0",
            api_passphrase="pass",
            signer_address=signer.address,
            context="smart-wallet" if funder_address else "direct",
        )

    def invalidate(self, signer_address: str, context: Any = None) -> None:
        self.invalidated.append(signer_address)


class _FakeSubmitter:
    def __init__(self, *, result: Optional[OrderResult] = None) -> None:
        self.result = result or OrderResult(success=True, order_id="0xorder")
        self.prepared: list[dict[str, Any]] = []
        self.posts = 0

    async def prepare(self, sized: Any, **kwargs: Any) -> Any:
        self.prepared.append({"sized": sized, **kwargs})
        return sized

    async def post(self, prepared: Any, *, creds: Credentials) -> OrderResult:
        self.posts += 1
        return self.result


class _FakeProvisioner:
    def __init__(self, *, deployed: bool, allowances: bool) -> None:
        self.state = SmartWalletState(
            owner=SIGNER, address=SAFE, is_deployed=deployed, has_allowances=allowances
        )
        self.deploys = 0
        self.allowance_sets = 0

    @property
    def address(self) -> str:
        return SAFE

    async def check_deployment(self) -> bool:
        return self.state.is_deployed

    async def deploy(self) -> SmartWalletState:
        self.deploys += 1
        self.state.is_deployed = True
        return self.state

    async def set_allowances(self) -> SmartWalletState:
        self.allowance_sets += 1
        self.state.has_allowances = True
        return self.state


def _machine(
    *,
    signer: Optional[_FakeSigner] = None,
    clob: Optional[_FakeClob] = None,
    rpc: Optional[_FakeRpc] = None,
    linker: Optional[_FakeLinker] = None,
    submitter: Optional[_FakeSubmitter] = None,
    provisioner: Optional[_FakeProvisioner] = None,
    reset_seconds: float = 0.01,
) -> TradeStageMachine:
    settings = Settings(STAGE_RESET_SECONDS=reset_seconds)
    return TradeStageMachine(
        settings=settings,
        signer=signer or _FakeSigner(),  # type: ignore[arg-type]
        clob=clob or _FakeClob(),  # type: ignore[arg-type]
        rpc=rpc or _FakeRpc(),  # type: ignore[arg-type]
        linker=linker or _FakeLinker(),  # type: ignore[arg-type]
        submitter=submitter or _FakeSubmitter(),  # type: ignore[arg-type]
        provisioner=provisioner,  # type: ignore[arg-type]
    )


def _buy(amount: str = "25", **overrides: Any) -> TradeParams:
    return TradeParams(
        token_id="123",
        side=overrides.pop("side", "BUY"),
        amount=Decimal(amount),
        price=Decimal(overrides.pop("price", "0.37")),
        **overrides,
    )


def _record(machine: TradeStageMachine) -> list[TradeStage]:
    stages: list[TradeStage] = []
    machine.subscribe(lambda stage, message: stages.append(stage))
    return stages


def test_transition_rules() -> None:
    assert can_transition(TradeStage.IDLE, TradeStage.CHECKING_BALANCE) is True
    assert can_transition(TradeStage.CHECKING_BALANCE, TradeStage.SWITCHING_NETWORK) is False
    assert can_transition(TradeStage.IDLE, TradeStage.COMPLETED) is False
    assert can_transition(TradeStage.SUBMITTING_ORDER, TradeStage.COMPLETED) is True
    assert can_transition(TradeStage.LINKING_WALLET, TradeStage.ERROR) is True
    assert can_transition(TradeStage.COMPLETED, TradeStage.SIGNING_ORDER) is False
    assert can_transition(TradeStage.ERROR, TradeStage.IDLE) is True


def test_direct_order_walks_the_stages_then_resets() -> None:
    machine = _machine()
    stages = _record(machine)

    async def _run() -> OrderResult:
        result = await machine.place_order(_buy())
        assert machine.stage == TradeStage.COMPLETED
        assert machine.message == "Order placed successfully!"
        await asyncio.sleep(0.05)
        return result

    result = asyncio.run(_run())

    assert result.success is True
    assert result.order_id == "0xorder"
    assert stages == [
        TradeStage.CHECKING_BALANCE,
        TradeStage.LINKING_WALLET,
        TradeStage.SIGNING_ORDER,
        TradeStage.SUBMITTING_ORDER,
        TradeStage.COMPLETED,
        TradeStage.IDLE,
    ]
    assert machine.stage == TradeStage.IDLE
    assert machine.is_placing_order is False


def test_network_switch_only_when_needed() -> None:
    machine = _machine(signer=_FakeSigner(chain=1))
    stages = _record(machine)

    result = asyncio.run(machine.place_order(_buy()))

    assert result.success is True
    assert stages[0] == TradeStage.SWITCHING_NETWORK
    assert STAGE_MESSAGES[TradeStage.SWITCHING_NETWORK] == "Switching to Polygon network..."


def test_failed_network_switch_is_network_mismatch() -> None:
    machine = _machine(signer=_FakeSigner(chain=1, switch_ok=False))

    result = asyncio.run(machine.place_order(_buy()))

    assert isinstance(result.error, NetworkMismatch)
    assert machine.stage == TradeStage.ERROR


def test_smart_wallet_setup_runs_only_when_needed() -> None:
    provisioner = _FakeProvisioner(deployed=False, allowances=False)
    linker = _FakeLinker()
    machine = _machine(provisioner=provisioner, linker=linker)
    stages = _record(machine)

    first = asyncio.run(machine.place_order(_buy()))
    second = asyncio.run(machine.place_order(_buy()))

    assert first.success and second.success
    assert provisioner.deploys == 1
    assert provisioner.allowance_sets == 1
    assert stages.count(TradeStage.DEPLOYING_SAFE) == 1
    assert stages.count(TradeStage.SETTING_ALLOWANCES) == 1
    assert linker.links == [SAFE, SAFE]


def test_second_concurrent_order_is_rejected_as_busy() -> None:
    gate = asyncio.Event()
    submitter = _FakeSubmitter()
    machine = _machine(linker=_FakeLinker(gate=gate), submitter=submitter)

    async def _run() -> tuple[OrderResult, OrderResult]:
        first = asyncio.create_task(machine.place_order(_buy()))
        await asyncio.sleep(0)
        second = await machine.place_order(_buy())
        gate.set()
        return await first, second

    first, second = asyncio.run(_run())

    assert first.success is True
    assert isinstance(second.error, TradeBusy)
    assert submitter.posts == 1


def test_cancel_reverts_to_idle() -> None:
    gate = asyncio.Event()
    submitter = _FakeSubmitter()
    machine = _machine(linker=_FakeLinker(gate=gate), submitter=submitter)

    async def _run() -> OrderResult:
        task = asyncio.create_task(machine.place_order(_buy()))
        await asyncio.sleep(0.01)
        assert machine.stage == TradeStage.LINKING_WALLET
        assert machine.cancel() is True
        return await task

    result = asyncio.run(_run())

    assert isinstance(result.error, TradeCancelled)
    assert machine.stage == TradeStage.IDLE
    assert machine.is_placing_order is False
    assert submitter.posts == 0


def test_credentials_expired_invalidates_cache() -> None:
    linker = _FakeLinker()
    submitter = _FakeSubmitter(
        result=OrderResult(success=False, error=CredentialsExpired(), message="expired")
    )
    machine = _machine(linker=linker, submitter=submitter)

    result = asyncio.run(machine.place_order(_buy()))

    assert isinstance(result.error, CredentialsExpired)
    assert linker.invalidated == [SIGNER]
    assert machine.stage == TradeStage.ERROR


def test_low_usdc_balance_fails_before_linking() -> None:
    linker = _FakeLinker()
    machine = _machine(rpc=_FakeRpc(usdc=Decimal("10")), linker=linker)

    result = asyncio.run(machine.place_order(_buy()))

    assert isinstance(result.error, InsufficientFunds)
    assert linker.links == []


def test_undersized_order_fails_before_any_prompt() -> None:
    linker = _FakeLinker()
    machine = _machine(linker=linker)

    result = asyncio.run(machine.place_order(_buy("1")))

    assert isinstance(result.error, OrderTooSmall)
    assert linker.links == []


def test_exchange_market_params_override_client_values() -> None:
    submitter = _FakeSubmitter()
    clob = _FakeClob(market=MarketParams(token_id="123", neg_risk=True, tick_size="0.001"))
    machine = _machine(clob=clob, submitter=submitter)

    asyncio.run(machine.place_order(_buy(price="0.3745")))

    prepared = submitter.prepared[0]
    assert prepared["neg_risk"] is True
    assert prepared["tick_size"] == "0.001"
    assert prepared["sized"].price == Decimal("0.375")


def test_disconnected_wallet_is_reported() -> None:
    machine = _machine(signer=_FakeSigner(address=""))

    result = asyncio.run(machine.place_order(_buy()))

    assert isinstance(result.error, WalletNotConnected)


def test_session_extras() -> None:
    linker = _FakeLinker()
    machine = _machine(linker=linker)

    orders = asyncio.run(machine.get_open_orders("123"))
    cancelled = asyncio.run(machine.cancel_order("0xopen"))
    machine.clear_session()

    assert orders[0]["asset_id"] == "123"
    assert cancelled is True
    assert linker.invalidated == [SIGNER]


class _DisconnectedRelayer:
    async def get_deployed(self, address: str) -> bool:
        return False

    async def deploy(self, signer: Any, *, safe_address: str) -> Any:
        raise RuntimeError("wallet connector disconnected")


def test_unexpected_wallet_failure_during_deploy_ends_in_error() -> None:
    forget_known_deployments()
    settings = Settings()
    provisioner = SmartWalletProvisioner(
        signer=_FakeSigner(),  # type: ignore[arg-type]
        relayer=_DisconnectedRelayer(),  # type: ignore[arg-type]
        rpc=_FakeRpc(),  # type: ignore[arg-type]
        store=MemorySessionStore(),
        safe_factory=settings.safe_factory_address,
        safe_init_code_hash=settings.safe_init_code_hash,
        usdc_address=settings.usdc_address,
        ctf_address=settings.ctf_address,
        spenders=settings.exchange_spenders(),
    )
    submitter = _FakeSubmitter()
    machine = _machine(provisioner=provisioner, submitter=submitter)  # type: ignore[arg-type]

    result = asyncio.run(machine.place_order(_buy()))

    assert isinstance(result.error, DeploymentFailed)
    assert machine.stage == TradeStage.ERROR
    assert machine.is_placing_order is False
    assert submitter.posts == 0


class _BrokenMarketClob(_FakeClob):
    async def get_market_params(self, token_id: str) -> MarketParams:
        raise ClobApiError(status_code=200, payload={"error": "market not found"})


def test_malformed_market_response_ends_in_error() -> None:
    linker = _FakeLinker()
    machine = _machine(clob=_BrokenMarketClob(), linker=linker)

    result = asyncio.run(machine.place_order(_buy()))

    assert isinstance(result.error, OrderRejected)
    assert machine.stage == TradeStage.ERROR
    assert linker.links == []
