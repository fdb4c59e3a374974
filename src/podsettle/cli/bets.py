"""Bets subcommand: show, list, pending, resubmit."""

from __future__ import annotations

import asyncio
from pathlib import Path

import typer

from podsettle.errors import ChainConfigError
from podsettle.models import Bet
from podsettle.storage.bets import BetStore

app = typer.Typer(help="Inspect stored bets and resubmit failed settlements")


def _open_read_only(db_path: str) -> BetStore:
    if not Path(db_path).exists():
        typer.echo(f"No database at {db_path}. Run: podsettle serve")
        raise typer.Exit(1)
    return BetStore.open(db_path, read_only=True)


def _fmt(value: object) -> str:
    return "-" if value is None else str(value)


def _echo_row(bet: Bet) -> None:
    outcome = bet.outcome.value if bet.outcome else "-"
    typer.echo(
        f"  {bet.bet_id:>8}  {bet.state.value:<22} {outcome:<10} "
        f"{_fmt(bet.initial_price):>14} -> {_fmt(bet.final_price):<14}  {bet.token_address}"
    )


@app.command("show")
def show(ctx: typer.Context, bet_id: int = typer.Argument(..., help="On-chain bet ID")) -> None:
    """Show one bet record."""
    settings = ctx.obj["settings"]
    store = _open_read_only(settings.db_path)
    try:
        bet = store.get(bet_id)
    finally:
        store.close()
    if bet is None:
        typer.echo(f"Bet {bet_id} not found.")
        raise typer.Exit(1)
    for key, value in bet.model_dump().items():
        typer.echo(f"{key:>18}: {_fmt(getattr(value, 'value', value))}")
    typer.echo(f"{'state':>18}: {bet.state.value}")


@app.command("list")
def list_bets(
    ctx: typer.Context,
    limit: int = typer.Option(20, "--limit", "-n", help="Max bets to show (newest first)"),
) -> None:
    """List the most recent bets."""
    settings = ctx.obj["settings"]
    store = _open_read_only(settings.db_path)
    try:
        rows = store.list_bets(limit=limit)
    finally:
        store.close()
    for bet in rows:
        _echo_row(bet)
    typer.echo(f"Total: {len(rows)} bets")


@app.command("pending")
def pending(ctx: typer.Context) -> None:
    """List unsettled bets that already have both price samples."""
    settings = ctx.obj["settings"]
    store = _open_read_only(settings.db_path)
    try:
        rows = store.list_pending_settlement()
    finally:
        store.close()
    for bet in rows:
        _echo_row(bet)
        if bet.settlement_error:
            typer.echo(f"           last error: {bet.settlement_error}")
    typer.echo(f"Pending settlement: {len(rows)}")


@app.command("resubmit")
def resubmit(ctx: typer.Context, bet_id: int = typer.Argument(..., help="On-chain bet ID")) -> None:
    """Resubmit the settlement of a bet left unsettled by a failed submission.
    Needs write access to the database, so stop 'podsettle serve' first."""
    from podsettle.service import build_orchestrator

    settings = ctx.obj["settings"]
    store = BetStore.open(settings.db_path)
    try:
        try:
            orchestrator, oracle, _contract, _abi = build_orchestrator(settings, store)
        except ChainConfigError as e:
            typer.echo(f"Cannot build settlement client: {e}")
            raise typer.Exit(2)

        async def _run() -> bool:
            try:
                return await orchestrator.resubmit(bet_id)
            finally:
                await oracle.aclose()

        settled = asyncio.run(_run())
        bet = store.get(bet_id)
    finally:
        store.close()
    if settled:
        typer.echo(f"Bet {bet_id} settled: {bet.settlement_tx if bet else '-'}")
        return
    typer.echo(f"Bet {bet_id} not settled ({bet.state.value if bet else 'not found'}).")
    if bet is not None and bet.settlement_error:
        typer.echo(f"Last error: {bet.settlement_error}")
    raise typer.Exit(1)
