from __future__ import annotations

import logging
import time
from typing import Any, Optional, get_args

from poly_trader.session_store import SessionStore, session_key
from poly_trader.types import CredentialContext, Credentials

logger = logging.getLogger("poly_trader.credentials")

DEFAULT_TTL_SECONDS = 7 * 24 * 60 * 60

CONTEXTS: tuple[CredentialContext, ...] = get_args(CredentialContext)

_STORE_NAMES: dict[str, str] = {
    "direct": "clob_creds.direct",
    "smart-wallet": "clob_creds.smart-wallet",
}


def _now_ms() -> int:
    return int(time.time() * 1000)


def _to_record(creds: Credentials) -> dict[str, Any]:
    return {
        "apiKey": creds.api_key,
        "apiSecret": creds.api_secret,
        "apiPassphrase": creds.api_passphrase,
        "signerAddress": creds.signer_address,
        "context": creds.context,
        "timestamp": _now_ms(),
    }


def _from_record(record: dict[str, Any], *, context: CredentialContext) -> Optional[Credentials]:
    creds = Credentials(
        api_key=str(record.get("apiKey", "")),
        api_secret=str(record.get("apiSecret", "")),
        api_passphrase=str(record.get("apiPassphrase", "")),
        signer_address=str(record.get("signerAddress", "")),
        context=context,
    )
    return creds if creds.is_complete() else None


class CredentialStore:
    """Exchange API credentials keyed by (signer address, context), with expiry.

    Secrets are stored as plaintext in the backing :class:`SessionStore`; swap in
    an encrypted store with the same interface where that matters.
    """

    def __init__(self, store: SessionStore, *, ttl_seconds: int = DEFAULT_TTL_SECONDS) -> None:
        self._store = store
        self._ttl_ms = int(ttl_seconds) * 1000

    def get(self, signer: str, context: CredentialContext) -> Optional[Credentials]:
        key = session_key(_STORE_NAMES[context], signer)
        record = self._store.get(key)
        if record is None:
            return None
        try:
            written_ms = int(record.get("timestamp", 0))
        except (TypeError, ValueError):
            written_ms = 0
        if _now_ms() - written_ms >= self._ttl_ms:
            logger.info("credentials_expired", extra={"signer": signer, "context": context})
            self._store.invalidate(key)
            return None
        return _from_record(record, context=context)

    def put(self, creds: Credentials) -> None:
        if not creds.is_complete():
            raise ValueError("refusing to cache incomplete credentials")
        key = session_key(_STORE_NAMES[creds.context], creds.signer_address)
        self._store.put(key, _to_record(creds))

    def invalidate(self, signer: str, context: Optional[CredentialContext] = None) -> None:
        targets = CONTEXTS if context is None else (context,)
        for ctx in targets:
            self._store.invalidate(session_key(_STORE_NAMES[ctx], signer))
        logger.info(
            "credentials_invalidated",
            extra={"signer": signer, "context": context or "all"},
        )

    def cached_contexts(self, signer: str) -> list[CredentialContext]:
        return [ctx for ctx in CONTEXTS if self.get(signer, ctx) is not None]
