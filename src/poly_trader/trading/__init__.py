__all__ = [
    "CredentialLinker",
    "CredentialStore",
    "OrderSubmitter",
    "SmartWalletProvisioner",
    "TradeStage",
    "TradeStageMachine",
    "size_order",
]

from poly_trader.trading.credentials import CredentialStore
from poly_trader.trading.linker import CredentialLinker
from poly_trader.trading.machine import TradeStage, TradeStageMachine
from poly_trader.trading.provisioning import SmartWalletProvisioner
from poly_trader.trading.sizing import size_order
from poly_trader.trading.submitter import OrderSubmitter
