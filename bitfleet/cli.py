"""CLI entry point for the bitfleet trading bot.

Commands:
  bitfleet investor              Index the chain and generate proposals
  bitfleet gofer                 Execute proposals (simulated unless live)
  bitfleet pnl                   Profit and loss per fleet address
  bitfleet dump-store            Print the position ledger as JSON
  bitfleet export-fleet PATH     Write fleet addresses to a JSON file
  bitfleet verify-rules          Parse and bind both rule files
  bitfleet export-schema         Print the rule file JSON Schema
  bitfleet wipe-store            Delete chain-derived data
  bitfleet halt buy|sell         Stop a gofer from executing
  bitfleet resume buy|sell       Let it execute again
  bitfleet status                Fleet, pending orders, proposals
"""

from __future__ import annotations

import asyncio
import json
import sys
import time
from typing import Any

import click
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table

from bitfleet.config import BotConfig, is_simulation, load_config
from bitfleet.errors import BitfleetError, FatalIndexerError
from bitfleet.observability.logger import configure_logging, get_logger

load_dotenv()

console = Console()
log = get_logger(__name__)

_SIDES = click.Choice(["buy", "sell"], case_sensitive=False)


def _run(coro: Any) -> Any:
    """Run an async coroutine from sync CLI."""
    return asyncio.run(coro)


def _services(cfg: BotConfig) -> Any:
    from bitfleet.engine.investor import Services

    return Services.build(cfg)


@click.group()
@click.option("--config", "config_path", default=None, help="Path to config.yaml")
@click.pass_context
def cli(ctx: click.Context, config_path: str | None) -> None:
    """Bonding-curve trading bot for a fleet of signing keys."""
    ctx.ensure_object(dict)
    cfg = load_config(config_path)
    ctx.obj["config"] = cfg
    obs = cfg.observability
    configure_logging(
        level=obs.log_level,
        fmt=obs.log_format,
        log_dir=obs.log_dir,
        max_bytes=obs.log_file_max_bytes,
        backup_count=obs.log_backup_count,
        force=True,
    )


# ─── PROCESSES ───────────────────────────────────────────────────────

@cli.command()
@click.pass_context
def investor(ctx: click.Context) -> None:
    """Index trade events, then poll the gamer feed and sweep positions."""
    from bitfleet.engine.investor import Investor

    cfg: BotConfig = ctx.obj["config"]
    console.print("[bold cyan]Starting investor[/bold cyan]")
    console.print(f"  Network: {cfg.chain.network}")
    console.print(f"  Data dir: {cfg.storage.data_path}")

    try:
        _run(Investor(_services(cfg)).run())
    except FatalIndexerError as e:
        delay = cfg.chain.restart_delay_secs
        console.print(f"[red]Indexer stopped: {e}[/red]")
        console.print(f"Exiting in {delay}s; the supervisor restarts from the ledger.")
        time.sleep(delay)
        sys.exit(1)
    except KeyboardInterrupt:
        console.print("\n[yellow]Investor stopped by user.[/yellow]")


@cli.command()
@click.pass_context
def gofer(ctx: click.Context) -> None:
    """Execute proposed buy and sell orders."""
    from bitfleet.engine.investor import Executor

    cfg: BotConfig = ctx.obj["config"]
    if is_simulation(cfg):
        console.print("[yellow]Simulation mode: no transactions will be sent.[/yellow]")
    else:
        console.print("[bold red]LIVE TRADING MODE[/bold red]")

    try:
        _run(Executor(_services(cfg)).run())
    except KeyboardInterrupt:
        console.print("\n[yellow]Gofer stopped by user.[/yellow]")


# ─── REPORTS ─────────────────────────────────────────────────────────

@cli.command()
@click.option("--start-block", type=int, default=None, help="Ignore lots bought before this block")
@click.option("--output-dir", default=None, help="Also write the report JSON here")
@click.pass_context
def pnl(ctx: click.Context, start_block: int | None, output_dir: str | None) -> None:
    """Show realized profit and loss per fleet address."""
    from bitfleet.fleet.key_fleet import load_keys_from_env
    from bitfleet.reports.pnl import compute_pnl, write_pnl_report
    from bitfleet.storage.ledger import PositionLedger

    cfg: BotConfig = ctx.obj["config"]
    ledger = PositionLedger(cfg.storage.data_path)
    snapshot = ledger.get_full_snapshot(load_keys_from_env().keys() or None)
    result = compute_pnl(snapshot, start_block)

    table = Table(title=f"P&L ({cfg.chain.network})")
    table.add_column("Holder", style="cyan")
    table.add_column("Profit (ETH)", justify="right")
    table.add_column("Profit %", justify="right")
    table.add_column("Adj. Investment (ETH)", justify="right")
    for holder, row in result["holders"].items():
        table.add_row(
            holder, row["absoluteProfit"], row["percentProfit"],
            row["adjustedInitialInvestment"],
        )
    total = result["total"]
    table.add_row("[bold]TOTAL[/bold]", total["absoluteProfit"], total["percentProfit"], "")
    console.print(table)
    console.print_json(json.dumps(result))

    if output_dir:
        path = write_pnl_report(result, output_dir)
        console.print(f"Report written to {path}")


@cli.command("dump-store")
@click.option("--holder", "holders", multiple=True, help="Limit to these holders")
@click.pass_context
def dump_store(ctx: click.Context, holders: tuple[str, ...]) -> None:
    """Print the position ledger as JSON."""
    from bitfleet.storage.ledger import PositionLedger

    cfg: BotConfig = ctx.obj["config"]
    ledger = PositionLedger(cfg.storage.data_path)
    console.print_json(json.dumps(ledger.get_full_snapshot(holders or None)))


# ─── FLEET & RULES ───────────────────────────────────────────────────

@cli.command("export-fleet")
@click.argument("path", type=click.Path(dir_okay=False, writable=True))
@click.pass_context
def export_fleet(ctx: click.Context, path: str) -> None:
    """Write the fleet's addresses (never keys) to PATH."""
    from bitfleet.connectors.chain import ChainClient
    from bitfleet.fleet.key_fleet import KeyFleet

    cfg: BotConfig = ctx.obj["config"]
    fleet = KeyFleet(ChainClient(cfg.chain, cfg.feeds), cfg.chain)
    fleet.export_addresses(path)
    console.print(f"[green]Wrote {len(fleet.get_all_addresses())} addresses to {path}[/green]")


@cli.command("verify-rules")
@click.option("--role", default=None, help="Only rules invoked by this trigger source")
@click.pass_context
def verify_rules(ctx: click.Context, role: str | None) -> None:
    """Parse both rule files and bind every expression to the registry."""
    from bitfleet.rules.engine import load_rules

    cfg: BotConfig = ctx.obj["config"]
    services = _services(cfg)
    failed = False
    for label, raw in (("buy", cfg.rules.buy_rules_path), ("sell", cfg.rules.sell_rules_path)):
        path = cfg.rules.resolve(raw)
        try:
            rules = load_rules(path, role, services.registry)
        except BitfleetError as e:
            failed = True
            console.print(f"[red]{label} rules ({path}) invalid: {e}[/red]")
            continue
        console.print(f"[bold]{label} rules[/bold] ({path}): {len(rules)} rule(s)")
        for rule in rules:
            console.print_json(json.dumps(rule.describe()))
    _run(services.close())
    if failed:
        sys.exit(1)


@cli.command("export-schema")
def export_schema() -> None:
    """Print the JSON Schema for rule files."""
    from bitfleet.rules.parser import rule_json_schema

    click.echo(json.dumps(rule_json_schema(), indent=2))


# ─── OPERATOR CONTROLS ───────────────────────────────────────────────

@cli.command("wipe-store")
@click.option("--yes", is_flag=True, help="Skip the confirmation prompt")
@click.pass_context
def wipe_store_cmd(ctx: click.Context, yes: bool) -> None:
    """Delete ledger, orders and transaction history for a full re-index."""
    from bitfleet.storage.ledger import wipe_store

    cfg: BotConfig = ctx.obj["config"]
    data_dir = cfg.storage.data_path
    if not yes and not click.confirm(
        f"Stop both processes first. Wipe chain-derived data under {data_dir}?"
    ):
        console.print("Aborted.")
        return
    removed = wipe_store(data_dir)
    for path in removed:
        console.print(f"Deleted: {path}")
    console.print(f"[green]Wiped {len(removed)} director{'y' if len(removed) == 1 else 'ies'}.[/green]")


@cli.command()
@click.argument("side", type=_SIDES)
@click.pass_context
def halt(ctx: click.Context, side: str) -> None:
    """Stop the gofer from executing SIDE orders."""
    from bitfleet.fleet.proposals import ProposalStore

    cfg: BotConfig = ctx.obj["config"]
    ProposalStore(cfg.storage.data_path).set_halt(side)
    console.print(f"[red]{side.upper()} orders halted.[/red]")


@cli.command()
@click.argument("side", type=_SIDES)
@click.pass_context
def resume(ctx: click.Context, side: str) -> None:
    """Allow the gofer to execute SIDE orders again."""
    from bitfleet.fleet.proposals import ProposalStore

    cfg: BotConfig = ctx.obj["config"]
    ProposalStore(cfg.storage.data_path).clear_halt(side)
    console.print(f"[green]{side.upper()} orders resumed.[/green]")


@cli.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show fleet addresses, pending orders and outstanding proposals."""
    from bitfleet.connectors.chain import ChainClient
    from bitfleet.fleet.key_fleet import KeyFleet
    from bitfleet.fleet.proposals import BUY, SELL, ProposalStore
    from bitfleet.fleet.slot_coordinator import SlotCoordinator
    from bitfleet.observability.metrics import metrics

    cfg: BotConfig = ctx.obj["config"]
    data_dir = cfg.storage.data_path
    chain = ChainClient(cfg.chain, cfg.feeds)
    fleet = KeyFleet(chain, cfg.chain)
    slots = SlotCoordinator(fleet, chain, data_dir, max_pending_secs=cfg.chain.max_pending_secs)
    proposals = ProposalStore(data_dir)

    table = Table(title="Fleet")
    table.add_column("Holder", style="cyan")
    table.add_column("Pending", justify="center")
    table.add_column("Gamer")
    table.add_column("Type")
    table.add_column("Qty", justify="right")
    table.add_column("Status")
    for holder in fleet.get_all_addresses():
        order = slots.read_pending_order(holder)
        if order is None:
            table.add_row(holder, "-", "", "", "", "")
        else:
            table.add_row(
                holder, "yes", order.gamer, order.order_type,
                str(order.number_of_bits), order.status.value,
            )
    console.print(table)

    console.print(f"Mode: {'simulation' if is_simulation(cfg) else '[bold red]LIVE[/bold red]'}")
    for side in (BUY, SELL):
        state = "[red]HALTED[/red]" if proposals.is_halted(side) else "running"
        console.print(f"{side}: {proposals.count_proposals(side)} proposal(s), {state}")
    if cfg.observability.enable_metrics:
        console.print_json(json.dumps(metrics.snapshot(), default=str))


if __name__ == "__main__":
    cli()
