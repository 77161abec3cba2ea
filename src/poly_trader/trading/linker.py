from __future__ import annotations

import logging
import time
from typing import Any, Optional

import httpx

from poly_trader.clients.clob import ClobClient, clob_auth_typed_data
from poly_trader.errors import (
    ClobApiError,
    CredentialAcquisitionFailed,
    TradeError,
    UserRejectedSignature,
    is_user_rejection,
)
from poly_trader.trading.credentials import CONTEXTS, CredentialStore
from poly_trader.types import CredentialContext, Credentials
from poly_trader.wallet import WalletSigner

logger = logging.getLogger("poly_trader.linker")


def credential_context(signer: str, funder_address: Optional[str]) -> CredentialContext:
    if funder_address and funder_address.lower() != signer.lower():
        return "smart-wallet"
    return "direct"


def _parse_credentials(
    data: dict[str, Any],
    *,
    signer: str,
    context: CredentialContext,
) -> Optional[Credentials]:
    creds = Credentials(
        api_key=str(data.get("apiKey") or data.get("key") or ""),
        api_secret=str(data.get("secret") or data.get("apiSecret") or ""),
        api_passphrase=str(data.get("passphrase") or data.get("apiPassphrase") or ""),
        signer_address=signer,
        context=context,
    )
    return creds if creds.is_complete() else None


class CredentialLinker:
    """Obtains exchange API credentials for a signer: cache, then derive, then create."""

    def __init__(self, *, clob: ClobClient, store: CredentialStore) -> None:
        self._clob = clob
        self._store = store

    async def link(self, signer: WalletSigner, funder_address: Optional[str] = None) -> Credentials:
        address = signer.address
        context = credential_context(address, funder_address)

        cached = self._store.get(address, context)
        if cached is not None:
            return cached

        creds = await self._derive(signer, context=context)
        if creds is None:
            creds = await self._create(signer, context=context)
        if creds is None:
            raise CredentialAcquisitionFailed()

        # Credentials cached for the other context no longer match the auth semantics in use.
        for other in CONTEXTS:
            if other != context and self._store.get(address, other) is not None:
                logger.info(
                    "credential_context_switch",
                    extra={"signer": address, "context": f"{other}->{context}"},
                )
                self._store.invalidate(address, other)

        self._store.put(creds)
        logger.info("credentials_linked", extra={"signer": address, "context": context})
        return creds

    def invalidate(self, signer_address: str, context: Optional[CredentialContext] = None) -> None:
        self._store.invalidate(signer_address, context)

    async def _sign_auth(self, signer: WalletSigner) -> tuple[str, int, int]:
        timestamp = int(time.time())
        # A fresh timestamp doubles as the nonce for every attempt.
        nonce = timestamp
        typed_data = clob_auth_typed_data(
            address=signer.address,
            timestamp=timestamp,
            nonce=nonce,
            chain_id=self._clob.chain_id,
        )
        try:
            signature = await signer.sign_typed_data(typed_data)
        except TradeError:
            raise
        except Exception as exc:
            if is_user_rejection(exc):
                raise UserRejectedSignature() from exc
            raise CredentialAcquisitionFailed(f"Wallet could not sign: {exc}") from exc
        return signature, timestamp, nonce

    async def _derive(
        self,
        signer: WalletSigner,
        *,
        context: CredentialContext,
    ) -> Optional[Credentials]:
        signature, timestamp, nonce = await self._sign_auth(signer)
        try:
            data = await self._clob.derive_api_key(
                address=signer.address,
                signature=signature,
                timestamp=timestamp,
                nonce=nonce,
            )
        except (ClobApiError, httpx.HTTPError):
            logger.info("credentials_derive_failed", extra={"signer": signer.address}, exc_info=True)
            return None
        creds = _parse_credentials(data, signer=signer.address, context=context)
        if creds is not None:
            logger.info("credentials_derived", extra={"signer": signer.address, "context": context})
        return creds

    async def _create(
        self,
        signer: WalletSigner,
        *,
        context: CredentialContext,
    ) -> Optional[Credentials]:
        signature, timestamp, nonce = await self._sign_auth(signer)
        try:
            data = await self._clob.create_api_key(
                address=signer.address,
                signature=signature,
                timestamp=timestamp,
                nonce=nonce,
            )
        except (ClobApiError, httpx.HTTPError):
            logger.warning("credentials_create_failed", extra={"signer": signer.address}, exc_info=True)
            return None
        creds = _parse_credentials(data, signer=signer.address, context=context)
        if creds is not None:
            logger.info("credentials_created", extra={"signer": signer.address, "context": context})
        return creds
