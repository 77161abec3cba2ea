"""Boundary to the user's wallet. This package never touches private keys."""

from __future__ import annotations

from decimal import Decimal
from typing import Protocol

from poly_trader.types import TypedData


class WalletSigner(Protocol):
    @property
    def address(self) -> str: ...

    async def chain_id(self) -> int: ...

    async def switch_chain(self, chain_id: int) -> None: ...

    async def sign_typed_data(self, typed_data: TypedData) -> str:
        """Return a 0x-prefixed signature; raise on user rejection."""
        ...


class TokenTransferer(Protocol):
    async def transfer(self, *, amount: Decimal, destination: str, token_mint: str) -> str:
        """Send ``amount`` tokens and return the confirmed transaction signature."""
        ...
