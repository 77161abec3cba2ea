"""Error taxonomy for the trade and deposit pipelines.

Components raise subclasses of :class:`TradeError`; the orchestration layer
catches them and hands them back inside an :class:`~poly_trader.types.OrderResult`.
Transport adapters raise the ``*ApiError`` types, which never cross a
component boundary unclassified.
"""

from __future__ import annotations

import re
from typing import Any, Optional


class TradeError(Exception):
    code = "trade_error"
    default_message = "Trade failed"
    retryable = True

    def __init__(self, message: Optional[str] = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class WalletNotConnected(TradeError):
    code = "wallet_not_connected"
    default_message = "Please connect your wallet first"


class NetworkMismatch(TradeError):
    code = "network_mismatch"
    default_message = "Please switch to the Polygon network"


class InsufficientFunds(TradeError):
    code = "insufficient_funds"
    default_message = "Insufficient balance or token allowance. Please check your wallet."


class InsufficientShares(TradeError):
    code = "insufficient_shares"
    default_message = "Not enough shares to sell"


class OrderTooSmall(TradeError):
    code = "order_too_small"
    default_message = "Order is below the minimum order size"
    retryable = False


class NoLiquidity(TradeError):
    code = "no_liquidity"
    default_message = "No buyers available at current price. Try a limit order instead."


class CredentialsExpired(TradeError):
    code = "credentials_expired"
    default_message = "Trading session expired. Please link your wallet again."


class CredentialAcquisitionFailed(TradeError):
    code = "credential_acquisition_failed"
    default_message = "Failed to create or derive exchange API credentials"


class DeploymentFailed(TradeError):
    code = "deployment_failed"
    default_message = "Failed to deploy smart wallet"


class AllowanceFailed(TradeError):
    code = "allowance_failed"
    default_message = "Failed to set token allowances"


class UserRejectedSignature(TradeError):
    code = "user_rejected_signature"
    default_message = "Signature rejected"
    retryable = False


class OrderRejected(TradeError):
    code = "order_rejected"
    default_message = "Order failed"

    def __init__(self, message: Optional[str] = None, *, raw: Any = None) -> None:
        super().__init__(message)
        self.raw = raw


class TradeBusy(TradeError):
    code = "busy"
    default_message = "An order is already being placed"
    retryable = False


class TradeCancelled(TradeError):
    code = "cancelled"
    default_message = "Cancelled"
    retryable = False


class _HttpApiError(RuntimeError):
    service = "HTTP"

    def __init__(self, *, status_code: int, payload: Any):
        super().__init__(f"{self.service} API error: status={status_code} payload={payload!r}")
        self.status_code = status_code
        self.payload = payload

    def error_message(self) -> str:
        if isinstance(self.payload, dict):
            for key in ("errorMsg", "error", "message", "msg"):
                value = self.payload.get(key)
                if value:
                    return str(value)
        return str(self.payload)


class ClobApiError(_HttpApiError):
    service = "CLOB"


class RelayerApiError(_HttpApiError):
    service = "Relayer"


class DepositBackendError(_HttpApiError):
    service = "Deposit backend"


class RpcError(RuntimeError):
    def __init__(self, *, code: int, message: str):
        super().__init__(f"RPC error: code={code} message={message}")
        self.code = code
        self.rpc_message = message


_REJECTION_MARKERS = (
    "user rejected",
    "user denied",
    "rejected by user",
    "denied by user",
    "cancelled by user",
    "canceled by user",
)


def is_user_rejection(error: BaseException) -> bool:
    if isinstance(error, UserRejectedSignature):
        return True
    if getattr(error, "code", None) == 4001:
        return True
    text = str(error).lower()
    return any(marker in text for marker in _REJECTION_MARKERS)


_NO_FILL = re.compile(r"couldn't be fully filled|\b(?:fok|fak)\b")
_AUTH_FAILURE = re.compile(r"\b401\b|\bunauthorized\b|\binvalid api key\b|\bapi credentials\b")
_NO_FUNDS = re.compile(r"not enough balance|\ballowance\b|\binsufficient\b")


def classify_order_error(message: str, *, status_code: int | None = None) -> TradeError:
    """Map an exchange error to the taxonomy.

    The exchange reports most failures as free text, so this is pattern
    matching on upstream wording and will drift if that wording changes.
    Patterns are word-bounded so numbers and identifiers inside a message
    (prices like ``0.401``) do not match.
    """
    text = (message or "").strip()
    lowered = text.lower()
    if "no match" in lowered:
        return NoLiquidity("No buyers available at this price. Try a limit order instead.")
    if _NO_FILL.search(lowered):
        return NoLiquidity()
    if status_code == 401 or _AUTH_FAILURE.search(lowered):
        return CredentialsExpired()
    if _NO_FUNDS.search(lowered):
        return InsufficientFunds()
    return OrderRejected(text or None, raw=message)
