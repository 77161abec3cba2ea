from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from decimal import ROUND_FLOOR, Decimal
from enum import Enum
from typing import Callable, Literal, Optional

import httpx

from poly_trader.clients.deposit_backend import DepositBackendClient
from poly_trader.errors import DepositBackendError, TradeError, is_user_rejection
from poly_trader.settings import Settings
from poly_trader.types import DepositSession
from poly_trader.wallet import TokenTransferer

logger = logging.getLogger("poly_trader.deposit")


class DepositStage(str, Enum):
    AMOUNT = "amount"
    METHOD_SELECT = "method-select"
    QUICK_TRANSFER = "quick-transfer"
    MANUAL_SEND = "manual-send"
    DETECTING = "detecting"
    VERIFYING = "verifying"
    SUCCESS = "success"
    ERROR = "error"


_ALLOWED: dict[DepositStage, tuple[DepositStage, ...]] = {
    DepositStage.AMOUNT: (DepositStage.METHOD_SELECT,),
    DepositStage.METHOD_SELECT: (
        DepositStage.AMOUNT,
        DepositStage.QUICK_TRANSFER,
        DepositStage.MANUAL_SEND,
    ),
    DepositStage.QUICK_TRANSFER: (
        DepositStage.METHOD_SELECT,
        DepositStage.VERIFYING,
        DepositStage.ERROR,
    ),
    DepositStage.MANUAL_SEND: (
        DepositStage.METHOD_SELECT,
        DepositStage.DETECTING,
        DepositStage.VERIFYING,
    ),
    DepositStage.DETECTING: (
        DepositStage.METHOD_SELECT,
        DepositStage.MANUAL_SEND,
        DepositStage.VERIFYING,
        DepositStage.ERROR,
    ),
    DepositStage.VERIFYING: (
        DepositStage.SUCCESS,
        DepositStage.MANUAL_SEND,
        DepositStage.ERROR,
    ),
    DepositStage.SUCCESS: (),
    DepositStage.ERROR: (DepositStage.METHOD_SELECT, DepositStage.MANUAL_SEND),
}


def can_move(current: DepositStage, target: DepositStage) -> bool:
    return target == DepositStage.AMOUNT or target == current or target in _ALLOWED[current]


def credits_for(amount: Decimal, credits_per_token: Decimal) -> int:
    return int((amount * credits_per_token).to_integral_value(rounding=ROUND_FLOOR))


DepositStatus = Literal["success", "pending", "not_found", "error"]


@dataclass(frozen=True)
class DepositResult:
    status: DepositStatus
    tx_signature: Optional[str] = None
    credits_added: int = 0
    message: str = ""

    @property
    def success(self) -> bool:
        return self.status == "success"


DepositObserver = Callable[[DepositStage, str], None]


class DepositVerifier:
    """Turns a token transfer to the deposit address into account credit.

    Only an explicit ``success`` from the backend counts as credited. A
    ``pending`` answer leaves the flow on the manual step so it can be retried,
    and a signature already credited in this session is never sent again.
    """

    def __init__(
        self,
        *,
        backend: DepositBackendClient,
        user_id: str,
        wallet_address: str,
        transferer: Optional[TokenTransferer] = None,
        poll_attempts: int = 24,
        poll_interval_seconds: float = 5.0,
        lookback_minutes: int = 30,
    ) -> None:
        self._backend = backend
        self._user_id = user_id
        self._wallet_address = wallet_address
        self._transferer = transferer
        self._poll_attempts = int(max(1, poll_attempts))
        self._poll_interval_seconds = float(max(0.0, poll_interval_seconds))
        self._lookback_minutes = lookback_minutes

        self._stage = DepositStage.AMOUNT
        self._message = ""
        self._observers: list[DepositObserver] = []
        self._detect_task: Optional[asyncio.Task[DepositResult]] = None
        self._verifying = False
        self.session: Optional[DepositSession] = None

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        user_id: str,
        wallet_address: str,
        transferer: Optional[TokenTransferer] = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> "DepositVerifier":
        if not settings.deposit_function_url.strip():
            raise ValueError("DEPOSIT_FUNCTION_URL is not configured")
        backend = DepositBackendClient(
            function_url=settings.deposit_function_url,
            auth_token=settings.deposit_auth_token,
            transport=transport,
        )
        return cls(
            backend=backend,
            user_id=user_id,
            wallet_address=wallet_address,
            transferer=transferer,
            poll_attempts=settings.deposit_poll_attempts,
            poll_interval_seconds=settings.deposit_poll_interval_seconds,
        )

    @property
    def stage(self) -> DepositStage:
        return self._stage

    @property
    def message(self) -> str:
        return self._message

    def subscribe(self, observer: DepositObserver) -> Callable[[], None]:
        self._observers.append(observer)
        return lambda: self.unsubscribe(observer)

    def unsubscribe(self, observer: DepositObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    def _set_stage(self, stage: DepositStage, message: str = "") -> None:
        if not can_move(self._stage, stage):
            raise ValueError(f"illegal deposit transition {self._stage.value} -> {stage.value}")
        self._stage = stage
        self._message = message
        logger.info("deposit_stage", extra={"stage": stage.value})
        for observer in list(self._observers):
            observer(stage, message)

    def _require_session(self) -> DepositSession:
        if self.session is None:
            raise RuntimeError("call start() before using the deposit flow")
        return self.session

    # Steps

    async def start(self) -> DepositSession:
        info = await self._backend.get_deposit_address()
        self.session = DepositSession(
            deposit_address=info.deposit_address,
            token_mint=info.token_mint,
            credits_per_token=info.credits_per_token,
            wallet_address=self._wallet_address,
        )
        self._set_stage(DepositStage.AMOUNT)
        return self.session

    def set_amount(self, amount: Decimal) -> int:
        """Record the amount to deposit and return the credits it will buy."""
        session = self._require_session()
        if amount <= 0:
            raise ValueError("amount must be > 0")
        session.amount = amount
        self._set_stage(DepositStage.METHOD_SELECT)
        return self.expected_credits()

    def expected_credits(self) -> int:
        session = self._require_session()
        return credits_for(session.amount, session.credits_per_token)

    def choose_manual(self) -> str:
        session = self._require_session()
        self._set_stage(DepositStage.MANUAL_SEND)
        return session.deposit_address

    def back(self) -> None:
        self.cancel_detection()
        if self._stage == DepositStage.METHOD_SELECT:
            self._set_stage(DepositStage.AMOUNT)
        else:
            self._set_stage(DepositStage.METHOD_SELECT)

    def reset(self) -> None:
        self.cancel_detection()
        if self.session is not None:
            self.session.amount = Decimal("0")
            self.session.tx_signature = None
            self.session.credits_added = 0
        self._set_stage(DepositStage.AMOUNT)

    async def quick_transfer(self) -> DepositResult:
        session = self._require_session()
        if self._transferer is None:
            raise RuntimeError("quick transfer needs a token transferer")
        self._set_stage(DepositStage.QUICK_TRANSFER, "Confirm the transfer in your wallet...")
        try:
            signature = await self._transferer.transfer(
                amount=session.amount,
                destination=session.deposit_address,
                token_mint=session.token_mint,
            )
        except TradeError as exc:
            self._set_stage(DepositStage.ERROR, exc.message)
            return DepositResult(status="error", message=exc.message)
        except Exception as exc:
            if not is_user_rejection(exc):
                raise
            self._set_stage(DepositStage.METHOD_SELECT, "Transfer cancelled")
            return DepositResult(status="error", message="Transfer cancelled")

        session.tx_signature = signature
        logger.info("deposit_transfer_sent", extra={"tx_signature": signature})

        result = DepositResult(status="pending", tx_signature=signature)
        for attempt in range(self._poll_attempts):
            result = await self.verify(signature)
            if result.status != "pending":
                return result
            logger.info("deposit_verify_pending", extra={"tx_signature": signature, "attempt": attempt})
            await asyncio.sleep(self._poll_interval_seconds)
        return result

    def start_auto_detect(self) -> asyncio.Task[DepositResult]:
        """Begin polling for the deposit; returns the running poll if one exists."""
        if self._detect_task is not None and not self._detect_task.done():
            return self._detect_task
        self._detect_task = asyncio.get_running_loop().create_task(self.auto_detect())
        return self._detect_task

    def cancel_detection(self) -> bool:
        task = self._detect_task
        self._detect_task = None
        if task is None or task.done():
            return False
        task.cancel()
        logger.info("deposit_detection_cancelled")
        return True

    async def auto_detect(self) -> DepositResult:
        session = self._require_session()
        self._set_stage(DepositStage.DETECTING, "Looking for your deposit...")
        try:
            for attempt in range(self._poll_attempts):
                try:
                    found = await self._backend.find_deposit(
                        wallet_address=session.wallet_address,
                        min_amount=session.amount,
                        lookback_minutes=self._lookback_minutes,
                    )
                except (DepositBackendError, httpx.HTTPError):
                    logger.warning("deposit_lookup_failed", extra={"attempt": attempt}, exc_info=True)
                else:
                    fresh = found.signature not in session.verified_signatures
                    if found.found and found.signature and fresh:
                        logger.info(
                            "deposit_detected",
                            extra={"tx_signature": found.signature, "attempt": attempt},
                        )
                        return await self.verify(found.signature)
                if attempt + 1 < self._poll_attempts:
                    await asyncio.sleep(self._poll_interval_seconds)
        except asyncio.CancelledError:
            # Cancellation can land during the lookup or the verify call.
            if self._stage in (DepositStage.DETECTING, DepositStage.VERIFYING):
                self._set_stage(DepositStage.MANUAL_SEND)
            raise

        message = "Deposit not detected yet. Paste your transaction signature to verify it."
        self._set_stage(DepositStage.MANUAL_SEND, message)
        return DepositResult(status="not_found", message=message)

    async def verify(self, tx_signature: str) -> DepositResult:
        session = self._require_session()
        tx_signature = tx_signature.strip()
        if not tx_signature:
            raise ValueError("transaction signature is required")
        if tx_signature in session.verified_signatures:
            return DepositResult(
                status="success",
                tx_signature=tx_signature,
                credits_added=session.credits_added,
                message="Deposit already credited",
            )
        if self._verifying:
            return DepositResult(
                status="pending", tx_signature=tx_signature, message="Verification in progress"
            )

        self._verifying = True
        self._set_stage(DepositStage.VERIFYING, "Verifying deposit...")
        try:
            response = await self._backend.verify_deposit(
                tx_signature=tx_signature,
                user_id=self._user_id,
                wallet_address=session.wallet_address,
                amount=session.amount,
            )
        except DepositBackendError as exc:
            message = exc.error_message()
            logger.warning("deposit_verify_rejected", extra={"tx_signature": tx_signature})
            self._set_stage(DepositStage.ERROR, message)
            return DepositResult(status="error", tx_signature=tx_signature, message=message)
        except httpx.HTTPError:
            # The ledger dedupes by signature, so an unanswered call is safe to repeat.
            logger.warning("deposit_verify_unreachable", extra={"tx_signature": tx_signature}, exc_info=True)
            message = "Could not reach the deposit service. Please try again in a moment."
            self._set_stage(DepositStage.MANUAL_SEND, message)
            return DepositResult(status="pending", tx_signature=tx_signature, message=message)
        finally:
            self._verifying = False

        if response.success:
            credits = response.credits_added
            if credits is None:
                credits = self.expected_credits()
            session.verified_signatures.add(tx_signature)
            session.tx_signature = tx_signature
            session.credits_added = credits
            logger.info("deposit_credited", extra={"tx_signature": tx_signature, "size": credits})
            self._set_stage(DepositStage.SUCCESS, f"{credits} credits added")
            return DepositResult(status="success", tx_signature=tx_signature, credits_added=credits)

        if response.is_pending():
            message = response.message or "Transaction pending confirmation. Please try again in a moment."
            self._set_stage(DepositStage.MANUAL_SEND, message)
            return DepositResult(status="pending", tx_signature=tx_signature, message=message)

        message = response.error or response.message or "Verification failed"
        self._set_stage(DepositStage.ERROR, message)
        return DepositResult(status="error", tx_signature=tx_signature, message=message)

    async def aclose(self) -> None:
        self.cancel_detection()
        await self._backend.aclose()
