from __future__ import annotations

import asyncio
import dataclasses
import logging
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Optional

import httpx

from poly_trader.clients.clob import BuilderCredentials, ClobClient
from poly_trader.clients.relayer import RelayerClient
from poly_trader.clients.rpc import PolygonRpc
from poly_trader.errors import (
    CredentialsExpired,
    InsufficientFunds,
    NetworkMismatch,
    OrderRejected,
    RpcError,
    TradeBusy,
    TradeCancelled,
    TradeError,
    UserRejectedSignature,
    WalletNotConnected,
    _HttpApiError,
    is_user_rejection,
)
from poly_trader.session_store import SessionStore, make_session_store
from poly_trader.settings import Settings
from poly_trader.trading.credentials import CredentialStore
from poly_trader.trading.linker import CredentialLinker
from poly_trader.trading.provisioning import SmartWalletProvisioner
from poly_trader.trading.sizing import size_order
from poly_trader.trading.submitter import OrderSubmitter
from poly_trader.types import MarketParams, OrderResult, SizedOrder, TradeParams
from poly_trader.wallet import WalletSigner

logger = logging.getLogger("poly_trader.machine")


class TradeStage(str, Enum):
    IDLE = "idle"
    SWITCHING_NETWORK = "switching-network"
    CHECKING_BALANCE = "checking-balance"
    LINKING_WALLET = "linking-wallet"
    DEPLOYING_SAFE = "deploying-safe"
    SETTING_ALLOWANCES = "setting-allowances"
    SIGNING_ORDER = "signing-order"
    SUBMITTING_ORDER = "submitting-order"
    COMPLETED = "completed"
    ERROR = "error"


STAGE_MESSAGES: dict[TradeStage, str] = {
    TradeStage.IDLE: "",
    TradeStage.SWITCHING_NETWORK: "Switching to Polygon network...",
    TradeStage.CHECKING_BALANCE: "Checking balances...",
    TradeStage.LINKING_WALLET: "Linking wallet to Polymarket...",
    TradeStage.DEPLOYING_SAFE: "Deploying Safe wallet...",
    TradeStage.SETTING_ALLOWANCES: "Setting token allowances...",
    TradeStage.SIGNING_ORDER: "Please sign the order in your wallet...",
    TradeStage.SUBMITTING_ORDER: "Submitting order to Polymarket...",
    TradeStage.COMPLETED: "Order placed successfully!",
    TradeStage.ERROR: "Order failed",
}

_PIPELINE: tuple[TradeStage, ...] = (
    TradeStage.IDLE,
    TradeStage.SWITCHING_NETWORK,
    TradeStage.CHECKING_BALANCE,
    TradeStage.LINKING_WALLET,
    TradeStage.DEPLOYING_SAFE,
    TradeStage.SETTING_ALLOWANCES,
    TradeStage.SIGNING_ORDER,
    TradeStage.SUBMITTING_ORDER,
)

_TERMINAL = (TradeStage.COMPLETED, TradeStage.ERROR)

StageObserver = Callable[[TradeStage, str], None]

_TRANSPORT_FAILURES = (_HttpApiError, RpcError, httpx.HTTPError)


def can_transition(current: TradeStage, target: TradeStage) -> bool:
    """Stages only move forward; error is reachable from anywhere and idle ends every run."""
    if target in (TradeStage.IDLE, TradeStage.ERROR):
        return True
    if current in _TERMINAL:
        return False
    if target == TradeStage.COMPLETED:
        return current == TradeStage.SUBMITTING_ORDER
    return _PIPELINE.index(target) > _PIPELINE.index(current)


def transition(current: TradeStage, target: TradeStage) -> TradeStage:
    if not can_transition(current, target):
        raise ValueError(f"illegal stage transition {current.value} -> {target.value}")
    return target


def _failure(error: TradeError) -> OrderResult:
    return OrderResult(success=False, error=error, message=error.message)


class TradeStageMachine:
    """Sequences one order at a time through network, balance, wallet setup and submission.

    ``place_order`` never raises for classified failures; the error is carried
    on the returned :class:`OrderResult`. Observers are called synchronously on
    every stage change with the stage and its display message.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        signer: WalletSigner,
        clob: ClobClient,
        rpc: PolygonRpc,
        linker: CredentialLinker,
        submitter: OrderSubmitter,
        provisioner: Optional[SmartWalletProvisioner] = None,
        relayer: Optional[RelayerClient] = None,
    ) -> None:
        self._settings = settings
        self._signer = signer
        self._clob = clob
        self._rpc = rpc
        self._linker = linker
        self._submitter = submitter
        self._provisioner = provisioner
        self._relayer = relayer

        self._stage = TradeStage.IDLE
        self._observers: list[StageObserver] = []
        self._in_flight = False
        self._run_task: Optional[asyncio.Task[OrderResult]] = None
        self._reset_task: Optional[asyncio.Task[None]] = None
        self._cancel_requested = False
        self.last_result: Optional[OrderResult] = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        signer: WalletSigner,
        *,
        store: Optional[SessionStore] = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> "TradeStageMachine":
        store = store if store is not None else make_session_store(settings)
        builder = None
        if settings.builder_enabled():
            builder = BuilderCredentials(
                api_key=settings.builder_api_key,
                api_secret=settings.builder_api_secret,
                api_passphrase=settings.builder_api_passphrase,
            )
        clob = ClobClient(
            host=settings.clob_host,
            chain_id=settings.chain_id,
            builder=builder,
            transport=transport,
        )
        rpc = PolygonRpc(rpc_url=settings.polygon_rpc_url, transport=transport)
        relayer = None
        provisioner = None
        if settings.wallet_mode == "smart-wallet":
            relayer = RelayerClient(
                relayer_url=settings.relayer_url,
                chain_id=settings.chain_id,
                safe_factory=settings.safe_factory_address,
                builder=builder,
                transport=transport,
            )
            provisioner = SmartWalletProvisioner(
                signer=signer,
                relayer=relayer,
                rpc=rpc,
                store=store,
                safe_factory=settings.safe_factory_address,
                safe_init_code_hash=settings.safe_init_code_hash,
                usdc_address=settings.usdc_address,
                ctf_address=settings.ctf_address,
                spenders=settings.exchange_spenders(),
            )
        linker = CredentialLinker(
            clob=clob,
            store=CredentialStore(store, ttl_seconds=settings.credential_ttl_seconds),
        )
        submitter = OrderSubmitter(
            clob=clob,
            rpc=rpc,
            chain_id=settings.chain_id,
            ctf_exchange_address=settings.ctf_exchange_address,
            neg_risk_exchange_address=settings.neg_risk_exchange_address,
            ctf_address=settings.ctf_address,
            neg_risk_adapter_address=settings.neg_risk_adapter_address,
            sell_balance_tolerance=Decimal(str(settings.sell_balance_tolerance)),
        )
        return cls(
            settings=settings,
            signer=signer,
            clob=clob,
            rpc=rpc,
            linker=linker,
            submitter=submitter,
            provisioner=provisioner,
            relayer=relayer,
        )

    # Observable state

    @property
    def stage(self) -> TradeStage:
        return self._stage

    @property
    def message(self) -> str:
        return STAGE_MESSAGES[self._stage]

    @property
    def is_placing_order(self) -> bool:
        return self._in_flight

    @property
    def funder_address(self) -> str:
        if self._provisioner is not None:
            return self._provisioner.address
        return self._signer.address

    def subscribe(self, observer: StageObserver) -> Callable[[], None]:
        self._observers.append(observer)
        return lambda: self.unsubscribe(observer)

    def unsubscribe(self, observer: StageObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    def _set_stage(self, stage: TradeStage) -> None:
        self._stage = transition(self._stage, stage)
        logger.info("trade_stage", extra={"stage": stage.value})
        for observer in list(self._observers):
            observer(stage, STAGE_MESSAGES[stage])

    # Entry points

    async def place_order(self, params: TradeParams) -> OrderResult:
        if self._in_flight:
            logger.warning("order_rejected_busy", extra={"token_id": params.token_id})
            return _failure(TradeBusy())

        self._in_flight = True
        self._cancel_requested = False
        self._cancel_reset()
        if self._stage != TradeStage.IDLE:
            self._set_stage(TradeStage.IDLE)
        try:
            self._run_task = asyncio.create_task(self._run(params))
            try:
                result = await self._run_task
            except asyncio.CancelledError:
                if not self._cancel_requested:
                    raise
                logger.info("order_cancelled", extra={"token_id": params.token_id})
                self._set_stage(TradeStage.IDLE)
                result = _failure(TradeCancelled())
        finally:
            self._run_task = None
            self._in_flight = False
        self.last_result = result
        return result

    def cancel(self) -> bool:
        """Abandon the in-flight order at its current suspension point."""
        if self._run_task is None or self._run_task.done():
            return False
        self._cancel_requested = True
        self._run_task.cancel()
        return True

    async def get_open_orders(self, token_id: Optional[str] = None) -> list[dict[str, Any]]:
        creds = await self._linker.link(self._signer, self._linked_funder())
        return await self._clob.get_open_orders(creds, asset_id=token_id)

    async def cancel_order(self, order_id: str) -> bool:
        creds = await self._linker.link(self._signer, self._linked_funder())
        data = await self._clob.cancel_order(creds, order_id=order_id)
        canceled = data.get("canceled") or []
        ok = order_id in canceled
        logger.info("order_cancel_requested", extra={"order_id": order_id, "context": str(ok)})
        return ok

    def clear_session(self) -> None:
        self._linker.invalidate(self._signer.address)

    async def aclose(self) -> None:
        self._cancel_reset()
        await self._clob.aclose()
        await self._rpc.aclose()
        if self._relayer is not None:
            await self._relayer.aclose()

    # Pipeline

    def _linked_funder(self) -> Optional[str]:
        return self._provisioner.address if self._provisioner is not None else None

    async def _run(self, params: TradeParams) -> OrderResult:
        try:
            result = await self._pipeline(params)
        except TradeError as exc:
            result = _failure(exc)
        except _TRANSPORT_FAILURES as exc:
            logger.warning("trade_transport_failure", extra={"token_id": params.token_id}, exc_info=True)
            result = _failure(OrderRejected(str(exc), raw=getattr(exc, "payload", None)))

        if result.success:
            self._set_stage(TradeStage.COMPLETED)
        else:
            if isinstance(result.error, CredentialsExpired):
                self._linker.invalidate(self._signer.address)
            logger.warning(
                "order_failed",
                extra={
                    "token_id": params.token_id,
                    "side": params.side,
                    "context": result.error.code if result.error else "",
                },
            )
            self._set_stage(TradeStage.ERROR)
        self._schedule_reset()
        return result

    async def _pipeline(self, params: TradeParams) -> OrderResult:
        signer = self._signer
        if not signer.address:
            raise WalletNotConnected()

        await self._ensure_network()

        self._set_stage(TradeStage.CHECKING_BALANCE)
        params, sized = await self._check_balance(params)

        self._set_stage(TradeStage.LINKING_WALLET)
        creds = await self._linker.link(signer, self._linked_funder())

        if self._provisioner is not None:
            if not self._provisioner.state.is_deployed:
                self._set_stage(TradeStage.DEPLOYING_SAFE)
                await self._provisioner.deploy()
            if not self._provisioner.state.has_allowances:
                self._set_stage(TradeStage.SETTING_ALLOWANCES)
                await self._provisioner.set_allowances()

        self._set_stage(TradeStage.SIGNING_ORDER)
        prepared = await self._submitter.prepare(
            sized,
            signer=signer,
            creds=creds,
            funder_address=self.funder_address,
            neg_risk=params.neg_risk,
            tick_size=params.tick_size,
        )

        self._set_stage(TradeStage.SUBMITTING_ORDER)
        return await self._submitter.post(prepared, creds=creds)

    async def _ensure_network(self) -> None:
        required = self._settings.chain_id
        if await self._signer.chain_id() == required:
            return
        self._set_stage(TradeStage.SWITCHING_NETWORK)
        try:
            await self._signer.switch_chain(required)
        except TradeError:
            raise
        except Exception as exc:
            if is_user_rejection(exc):
                raise UserRejectedSignature("Network switch rejected") from exc
            raise NetworkMismatch() from exc
        if await self._signer.chain_id() != required:
            raise NetworkMismatch()

    async def _check_balance(self, params: TradeParams) -> tuple[TradeParams, SizedOrder]:
        market_task = self._clob.get_market_params(params.token_id)
        if self._provisioner is not None:
            market, _ = await asyncio.gather(market_task, self._provisioner.check_deployment())
        else:
            market = await market_task
        params = self._with_market(params, market)
        sized = size_order(params)

        if params.side == "BUY":
            try:
                raw = await self._rpc.erc20_balance(
                    token=self._settings.usdc_address, owner=self.funder_address
                )
            except (RpcError, httpx.HTTPError):
                logger.warning(
                    "usdc_balance_unavailable",
                    extra={"funder": self.funder_address},
                    exc_info=True,
                )
            else:
                balance = Decimal(raw).scaleb(-6)
                if balance < sized.target_cost:
                    raise InsufficientFunds(
                        f"Insufficient USDC balance. Have: {balance:.2f}, Need: {sized.target_cost:.2f}"
                    )
        return params, sized

    def _with_market(self, params: TradeParams, market: MarketParams) -> TradeParams:
        if market.neg_risk != params.neg_risk or market.tick_size != params.tick_size:
            logger.info(
                "market_params_overridden",
                extra={
                    "token_id": params.token_id,
                    "context": f"neg_risk={market.neg_risk} tick_size={market.tick_size}",
                },
            )
        return dataclasses.replace(params, neg_risk=market.neg_risk, tick_size=market.tick_size)

    # Terminal display delay

    def _schedule_reset(self) -> None:
        self._cancel_reset()
        self._reset_task = asyncio.get_running_loop().create_task(self._reset_after_delay())

    def _cancel_reset(self) -> None:
        if self._reset_task is not None and not self._reset_task.done():
            self._reset_task.cancel()
        self._reset_task = None

    async def _reset_after_delay(self) -> None:
        await asyncio.sleep(self._settings.stage_reset_seconds)
        if self._stage in _TERMINAL:
            self._set_stage(TradeStage.IDLE)
