from __future__ import annotations

import asyncio
import logging
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Optional

import typer

from poly_trader.clients.clob import ClobClient
from poly_trader.errors import OrderTooSmall
from poly_trader.logging_utils import configure_logging
from poly_trader.session_store import JsonFileSessionStore
from poly_trader.settings import Settings
from poly_trader.trading.credentials import CONTEXTS, CredentialStore
from poly_trader.trading.provisioning import derive_safe_address
from poly_trader.trading.sizing import size_order
from poly_trader.types import TICK_SIZES, TradeParams

app = typer.Typer(no_args_is_help=True, add_completion=False)
logger = logging.getLogger("poly_trader")


def _decimal(value: str, *, name: str) -> Decimal:
    try:
        return Decimal(value)
    except InvalidOperation:
        raise typer.BadParameter(f"{name} must be a decimal number") from None


@app.command()
def size(
    amount: str = typer.Argument(..., help="Dollar amount to spend (BUY) or receive (SELL)."),
    price: str = typer.Argument(..., help="Limit price between 0 and 1."),
    side: str = typer.Option("BUY", help="BUY or SELL."),
    tick_size: str = typer.Option("0.01", help="Market tick size."),
    market: bool = typer.Option(False, "--market", help="Size as a market (FAK) order."),
) -> None:
    """
    Preview the exchange-legal order for a dollar intent.
    """
    if tick_size not in TICK_SIZES:
        raise typer.BadParameter(f"tick size must be one of {', '.join(TICK_SIZES)}")
    try:
        params = TradeParams(
            token_id="0",
            side=side.upper(),  # type: ignore[arg-type]
            amount=_decimal(amount, name="amount"),
            price=_decimal(price, name="price"),
            is_market_order=market,
            tick_size=tick_size,  # type: ignore[arg-type]
        )
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from None

    try:
        sized = size_order(params)
    except OrderTooSmall as exc:
        typer.echo({"ok": False, "error": exc.code, "message": exc.message})
        raise typer.Exit(code=1) from None

    typer.echo(
        {
            "ok": True,
            "side": sized.side,
            "price": str(sized.price),
            "size": str(sized.size),
            "target_cost": str(sized.target_cost),
            "cost": str(sized.cost),
            "order_type": "FAK" if sized.is_market_order else "GTC",
        }
    )


@app.command()
def safe_address(owner: str = typer.Argument(..., help="Owner (signer) address.")) -> None:
    """
    Print the deterministic smart-wallet address for an owner.
    """
    settings = Settings()
    try:
        address = derive_safe_address(
            owner,
            factory=settings.safe_factory_address,
            init_code_hash=settings.safe_init_code_hash,
        )
    except ValueError as exc:
        raise typer.BadParameter(str(exc)) from None
    typer.echo({"owner": owner, "safe_address": address})


@app.command()
def clear_credentials(
    signer: str = typer.Argument(..., help="Signer address whose cached credentials to drop."),
    store_path: Optional[Path] = typer.Option(
        None,
        help="Session store file (defaults to SESSION_STORE_PATH).",
    ),
) -> None:
    settings = Settings()
    configure_logging(settings.log_level)
    path = store_path
    if path is None and settings.session_store_path.strip():
        path = Path(settings.session_store_path).expanduser()
    if path is None:
        typer.echo({"ok": False, "error": "no session store configured"})
        raise typer.Exit(code=2)

    store = CredentialStore(JsonFileSessionStore(path), ttl_seconds=settings.credential_ttl_seconds)
    cached = store.cached_contexts(signer)
    store.invalidate(signer)
    typer.echo({"ok": True, "signer": signer, "cleared": cached, "contexts": list(CONTEXTS)})


@app.command()
def show_config() -> None:
    settings = Settings()
    configure_logging(settings.log_level)
    redacted = settings.model_dump()
    redacted["builder_api_secret"] = "***" if redacted["builder_api_secret"] else ""
    redacted["builder_api_passphrase"] = "***" if redacted["builder_api_passphrase"] else ""
    redacted["deposit_auth_token"] = "***" if redacted["deposit_auth_token"] else ""
    logger.info("loaded_config", extra={"context": settings.wallet_mode})
    typer.echo(redacted)


@app.command()
def health() -> None:
    """
    Ping the exchange and print its server time.
    """
    settings = Settings()
    configure_logging(settings.log_level)

    async def _run() -> None:
        client = ClobClient(host=settings.clob_host, chain_id=settings.chain_id)
        try:
            server_time = await client.server_time()
            typer.echo({"ok": True, "server_time": server_time, "host": settings.clob_host})
        finally:
            await client.aclose()

    asyncio.run(_run())

