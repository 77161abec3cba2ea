__all__ = ["ClobClient", "DepositBackendClient", "PolygonRpc", "RelayerClient"]

from poly_trader.clients.clob import ClobClient
from poly_trader.clients.deposit_backend import DepositBackendClient
from poly_trader.clients.relayer import RelayerClient
from poly_trader.clients.rpc import PolygonRpc
