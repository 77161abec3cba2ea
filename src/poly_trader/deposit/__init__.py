__all__ = ["DepositResult", "DepositStage", "DepositVerifier"]

from poly_trader.deposit.verifier import DepositResult, DepositStage, DepositVerifier
