from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Endpoints
    clob_host: str = Field(default="https://clob.polymarket.com", validation_alias="CLOB_HOST")
    relayer_url: str = Field(
        default="https://relayer-v2.polymarket.com",
        validation_alias="RELAYER_URL",
    )
    polygon_rpc_url: str = Field(default="https://polygon-rpc.com", validation_alias="POLYGON_RPC_URL")
    deposit_function_url: str = Field(default="", validation_alias="DEPOSIT_FUNCTION_URL")
    deposit_auth_token: str = Field(default="", validation_alias="DEPOSIT_AUTH_TOKEN")
    chain_id: int = Field(default=137, validation_alias="CHAIN_ID")

    # Contracts (Polygon mainnet)
    usdc_address: str = Field(
        default="0x2791Bca1f2de4661ED88A30C99A7a9449Aa84174",
        validation_alias="USDC_ADDRESS",
    )
    ctf_address: str = Field(
        default="0x4D97DCd97eC945f40cF65F87097ACe5EA0476045",
        validation_alias="CTF_ADDRESS",
    )
    ctf_exchange_address: str = Field(
        default="0x4bFb41d5B3570DeFd03C39a9A4D8dE6Bd8B8982E",
        validation_alias="CTF_EXCHANGE_ADDRESS",
    )
    neg_risk_exchange_address: str = Field(
        default="0xC5d563A36AE78145C45a50134d48A1215220f80a",
        validation_alias="NEG_RISK_EXCHANGE_ADDRESS",
    )
    neg_risk_adapter_address: str = Field(
        default="0xd91E80cF2E7be2e162c6513ceD06f1dD0dA35296",
        validation_alias="NEG_RISK_ADAPTER_ADDRESS",
    )
    safe_factory_address: str = Field(
        default="0xaacFeEa03eb1561C4e67d661e40682Bd20E3541b",
        validation_alias="SAFE_FACTORY_ADDRESS",
    )
    safe_init_code_hash: str = Field(
        default="0x2bce2127ff07fb632d16c8347c4ebf501f4841168bed00d9e6ef715ddb6fcecf",
        validation_alias="SAFE_INIT_CODE_HASH",
    )

    # Trading
    wallet_mode: Literal["smart-wallet", "direct"] = Field(
        default="smart-wallet",
        validation_alias="WALLET_MODE",
    )
    sell_balance_tolerance: float = Field(
        default=0.01,
        ge=0,
        lt=1,
        validation_alias="SELL_BALANCE_TOLERANCE",
    )
    stage_reset_seconds: float = Field(default=2.0, ge=0, validation_alias="STAGE_RESET_SECONDS")

    # Session persistence
    credential_ttl_seconds: int = Field(
        default=7 * 24 * 60 * 60,
        gt=0,
        validation_alias="CREDENTIAL_TTL_SECONDS",
    )
    session_store_path: str = Field(default="", validation_alias="SESSION_STORE_PATH")

    # Deposits
    deposit_poll_attempts: int = Field(default=24, ge=1, validation_alias="DEPOSIT_POLL_ATTEMPTS")
    deposit_poll_interval_seconds: float = Field(
        default=5.0,
        ge=0,
        validation_alias="DEPOSIT_POLL_INTERVAL_SECONDS",
    )

    # Builder attribution (optional)
    builder_api_key: str = Field(default="", validation_alias="BUILDER_API_KEY")
    builder_api_secret: str = Field(default="", validation_alias="BUILDER_API_SECRET")
    builder_api_passphrase: str = Field(default="", validation_alias="BUILDER_API_PASSPHRASE")

    # Logging
    log_level: str = Field(default="INFO", validation_alias="LOG_LEVEL")

    def builder_enabled(self) -> bool:
        return bool(
            self.builder_api_key.strip()
            and self.builder_api_secret.strip()
            and self.builder_api_passphrase.strip()
        )

    def exchange_spenders(self) -> tuple[str, str, str]:
        return (
            self.ctf_exchange_address,
            self.neg_risk_exchange_address,
            self.neg_risk_adapter_address,
        )
