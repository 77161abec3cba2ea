from __future__ import annotations

import logging
from functools import lru_cache

import httpx
from eth_utils import keccak

from poly_trader.clients.abi import create2_address, encode_address
from poly_trader.clients.relayer import RelayerClient, RelayerTransactionFailed
from poly_trader.clients.rpc import PolygonRpc
from poly_trader.errors import (
    AllowanceFailed,
    DeploymentFailed,
    RelayerApiError,
    RpcError,
    TradeError,
    UserRejectedSignature,
    is_user_rejection,
)
from poly_trader.session_store import SessionStore, session_key
from poly_trader.types import SmartWalletState
from poly_trader.wallet import WalletSigner

logger = logging.getLogger("poly_trader.provisioning")

_DEPLOYED_STORE = "safe_deployed"
_ALLOWANCES_STORE = "safe_allowances"

# Deployment is irreversible, so a positive answer is shared by every session in the process.
_KNOWN_DEPLOYED: set[str] = set()

_RELAYER_FAILURES = (RelayerApiError, RelayerTransactionFailed, TimeoutError, httpx.HTTPError)


@lru_cache(maxsize=256)
def derive_safe_address(owner: str, *, factory: str, init_code_hash: str) -> str:
    """CREATE2 address of the owner's Safe; a pure function of its inputs."""
    salt = keccak(encode_address(owner))
    return create2_address(deployer=factory, salt=salt, init_code_hash=init_code_hash)


def forget_known_deployments() -> None:
    _KNOWN_DEPLOYED.clear()


class SmartWalletProvisioner:
    def __init__(
        self,
        *,
        signer: WalletSigner,
        relayer: RelayerClient,
        rpc: PolygonRpc,
        store: SessionStore,
        safe_factory: str,
        safe_init_code_hash: str,
        usdc_address: str,
        ctf_address: str,
        spenders: tuple[str, ...],
    ) -> None:
        self._signer = signer
        self._relayer = relayer
        self._rpc = rpc
        self._store = store
        self._usdc_address = usdc_address
        self._ctf_address = ctf_address
        self._spenders = spenders
        owner = signer.address
        self.state = SmartWalletState(
            owner=owner,
            address=derive_safe_address(
                owner, factory=safe_factory, init_code_hash=safe_init_code_hash
            ),
        )
        self._load_persisted()

    @property
    def address(self) -> str:
        return self.state.address

    def _load_persisted(self) -> None:
        key = self.state.address.lower()
        if key in _KNOWN_DEPLOYED:
            self.state.is_deployed = True
        if self._store.get(session_key(_DEPLOYED_STORE, self.state.address)):
            self.state.is_deployed = True
        if self._store.get(session_key(_ALLOWANCES_STORE, self.state.address)):
            self.state.has_allowances = True

    def _mark_deployed(self) -> None:
        self.state.is_deployed = True
        _KNOWN_DEPLOYED.add(self.state.address.lower())
        self._store.put(
            session_key(_DEPLOYED_STORE, self.state.address),
            {"deployed": True, "owner": self.state.owner},
        )

    def _mark_allowances(self) -> None:
        self.state.has_allowances = True
        self._store.put(
            session_key(_ALLOWANCES_STORE, self.state.address),
            {"allowances": True, "spenders": list(self._spenders)},
        )

    async def check_deployment(self) -> bool:
        if self.state.is_deployed:
            return True
        try:
            deployed = await self._relayer.get_deployed(self.state.address)
        except _RELAYER_FAILURES:
            logger.warning(
                "relayer_deployed_check_failed",
                extra={"funder": self.state.address},
                exc_info=True,
            )
            try:
                deployed = await self._rpc.is_contract(self.state.address)
            except (RpcError, httpx.HTTPError):
                logger.warning("rpc_code_check_failed", extra={"funder": self.state.address})
                return False
        if deployed:
            self._mark_deployed()
        return deployed

    async def deploy(self) -> SmartWalletState:
        """Deploy the Safe through the relayer; a no-op once it is deployed."""
        if await self.check_deployment():
            return self.state
        logger.info(
            "safe_deploy_started",
            extra={"signer": self.state.owner, "funder": self.state.address},
        )
        try:
            receipt = await self._relayer.deploy(self._signer, safe_address=self.state.address)
        except _RELAYER_FAILURES as exc:
            raise DeploymentFailed(f"Failed to deploy smart wallet: {exc}") from exc
        except TradeError:
            raise
        except Exception as exc:
            if is_user_rejection(exc):
                raise UserRejectedSignature() from exc
            raise DeploymentFailed(f"Failed to deploy smart wallet: {exc}") from exc
        if receipt.proxy_address and receipt.proxy_address.lower() != self.state.address.lower():
            logger.warning(
                "safe_address_mismatch",
                extra={"funder": self.state.address, "context": receipt.proxy_address},
            )
        self._mark_deployed()
        logger.info(
            "safe_deployed",
            extra={"funder": self.state.address, "tx_signature": receipt.transaction_hash},
        )
        return self.state

    async def set_allowances(self) -> SmartWalletState:
        if not self.state.is_deployed:
            raise AllowanceFailed("Smart wallet must be deployed before setting allowances")
        logger.info("safe_allowances_started", extra={"funder": self.state.address})
        try:
            receipt = await self._relayer.set_allowances(
                self._signer,
                safe_address=self.state.address,
                usdc=self._usdc_address,
                ctf=self._ctf_address,
                spenders=self._spenders,
            )
        except _RELAYER_FAILURES as exc:
            raise AllowanceFailed(f"Failed to set token allowances: {exc}") from exc
        except TradeError:
            raise
        except Exception as exc:
            if is_user_rejection(exc):
                raise UserRejectedSignature() from exc
            raise AllowanceFailed(f"Failed to set token allowances: {exc}") from exc
        self._mark_allowances()
        logger.info(
            "safe_allowances_set",
            extra={"funder": self.state.address, "tx_signature": receipt.transaction_hash},
        )
        return self.state
