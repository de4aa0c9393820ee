"""Main CLI entry point for the td-commissions command."""

import functools
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from ..core.config import Settings, load_settings
from ..errors import CommissionEngineError
from ..storage.database import Database
from ..storage.models import AgentType, CommissionStatus, FinancialBreakdown, TransactionStage
from ..team.agents import AgentRegistry
from ..transactions.ledger import LedgerStore
from ..transactions.tracker import TransactionTracker

console = Console()


@dataclass
class Services:
    """Stores wired to one database."""

    db: Database
    agents: AgentRegistry
    ledger: LedgerStore
    tracker: TransactionTracker


def get_services(settings: Settings) -> Services:
    """Build the registry, ledger and tracker over a shared database."""
    db = Database(settings.db_path)
    agents = AgentRegistry(db)
    ledger = LedgerStore(db)
    tracker = TransactionTracker(db, agents, ledger, strict_validation=settings.strict_breakdown)
    return Services(db=db, agents=agents, ledger=ledger, tracker=tracker)


def handle_errors(func):
    """Print engine errors in red and exit with status 1."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except CommissionEngineError as e:
            console.print(f"[red]Error:[/red] {e}")
            raise click.exceptions.Exit(1)
    return wrapper


def money(amount: float) -> str:
    return f"{amount:,.2f}"


def breakdown_panel(breakdown: FinancialBreakdown, title: str) -> Panel:
    return Panel.fit(
        f"[bold]Agency:[/bold]          {money(breakdown.agency_commission)}\n"
        f"[bold]Total to agents:[/bold] {money(breakdown.total_agent_commission)}\n"
        f"[bold]Listing agent:[/bold]   {money(breakdown.listing_agent_commission)}"
        f"  [dim]({breakdown.listing_agent_id})[/dim]\n"
        f"[bold]Selling agent:[/bold]   {money(breakdown.selling_agent_commission)}"
        f"  [dim]({breakdown.selling_agent_id})[/dim]",
        title=title
    )


@click.group()
@click.version_option(version="1.0.0", prog_name="td-commissions")
@click.option("--db", "db_path", help="Custom database path")
@click.option("--verbose", "-v", is_flag=True, help="Show debug logging")
@click.pass_context
def cli(ctx, db_path: Optional[str], verbose: bool):
    """TD Commission Engine - sale transactions and commission ledger.

    \b
    Quick Start:
      td-commissions init
      td-commissions agent add jane@td.com Jane Doe
      td-commissions txn create "12 Elm St" house 100000 LISTING_ID SELLING_ID
      td-commissions txn stage TXN_ID earnest_money
    """
    settings = load_settings()
    if db_path:
        settings.db_path = Path(db_path)

    logging.basicConfig(
        level=logging.DEBUG if verbose else settings.log_level,
        format="%(message)s",
        handlers=[RichHandler(console=console, show_path=False)],
    )

    ctx.obj = get_services(settings)


@cli.command()
@click.pass_obj
def init(services: Services):
    """Initialize the database."""
    console.print(Panel.fit(
        f"[green]✓ Database initialized![/green]\n\n"
        f"Location: [cyan]{services.db.db_path}[/cyan]",
        title="TD Commission Engine"
    ))


# ============================================================================
# AGENTS
# ============================================================================

@cli.group()
def agent():
    """Manage agents."""
    pass


@agent.command("add")
@click.argument("email")
@click.argument("first_name")
@click.argument("last_name")
@click.option("--phone", default="", help="Phone number")
@click.option("--type", "agent_type", type=click.Choice([t.value for t in AgentType]),
              default=AgentType.BOTH.value, help="Listing, selling or both")
@click.pass_obj
@handle_errors
def agent_add(services: Services, email: str, first_name: str, last_name: str, phone: str, agent_type: str):
    """Add an agent."""
    a = services.agents.add_agent(email, first_name, last_name, phone=phone, agent_type=AgentType(agent_type))
    console.print(f"[green]✓ Added agent {a.full_name}[/green] [dim]{a.id}[/dim]")


@agent.command("list")
@click.option("--type", "agent_type", type=click.Choice([t.value for t in AgentType]),
              help="Filter by agent type")
@click.pass_obj
def agent_list(services: Services, agent_type: Optional[str]):
    """List active agents, highest earners first."""
    if agent_type:
        agents = services.agents.get_agents_by_type(AgentType(agent_type))
    else:
        agents = services.agents.get_active_agents()

    if not agents:
        console.print("[yellow]No agents found.[/yellow]")
        return

    table = Table(title=f"Agents ({len(agents)})")
    table.add_column("ID", style="dim")
    table.add_column("Name", style="cyan")
    table.add_column("Email")
    table.add_column("Type")
    table.add_column("Deals", justify="right")
    table.add_column("Earned", justify="right", style="green")

    for a in agents:
        table.add_row(a.id, a.full_name, a.email, a.agent_type.value,
                      str(a.transaction_count), money(a.total_commission_earned))

    console.print(table)


@agent.command("top")
@click.option("--limit", "-n", default=10, help="Number of agents")
@click.pass_obj
def agent_top(services: Services, limit: int):
    """Show top performers."""
    table = Table(title="Top Performers")
    table.add_column("#", justify="right")
    table.add_column("Name", style="cyan")
    table.add_column("Earned", justify="right", style="green")
    table.add_column("Deals", justify="right")

    for rank, a in enumerate(services.agents.get_top_performers(limit), 1):
        table.add_row(str(rank), a.full_name, money(a.total_commission_earned), str(a.transaction_count))

    console.print(table)


@agent.command("show")
@click.argument("agent_id")
@click.pass_obj
@handle_errors
def agent_show(services: Services, agent_id: str):
    """Show agent stats and commission summary."""
    stats = services.agents.get_agent_stats(agent_id)
    summary = services.ledger.get_agent_summary(agent_id)

    console.print(Panel.fit(
        f"[bold]Email:[/bold] {stats['email']}\n"
        f"[bold]Type:[/bold] {stats['type']}\n"
        f"[bold]Active:[/bold] {'yes' if stats['is_active'] else 'no'}\n\n"
        f"[bold]Total earned:[/bold] {money(stats['total_commission_earned'])}\n"
        f"[bold]Transactions:[/bold] {stats['transaction_count']}\n"
        f"[bold]Avg per transaction:[/bold] {money(stats['average_commission_per_transaction'])}\n\n"
        f"[bold]Ledger:[/bold] paid {money(summary['total_earned'])}, "
        f"processed {money(summary['processed_amount'])}, "
        f"pending {money(summary['pending_amount'])}",
        title=f"Agent {stats['id']}: {stats['name']}"
    ))


@agent.command("update")
@click.argument("agent_id")
@click.option("--email", help="New email")
@click.option("--first-name", help="New first name")
@click.option("--last-name", help="New last name")
@click.option("--phone", help="New phone")
@click.option("--type", "agent_type", type=click.Choice([t.value for t in AgentType]), help="New type")
@click.pass_obj
@handle_errors
def agent_update(services: Services, agent_id: str, email, first_name, last_name, phone, agent_type):
    """Update agent details."""
    a = services.agents.update_agent(
        agent_id, email=email, first_name=first_name, last_name=last_name,
        phone=phone, agent_type=agent_type
    )
    console.print(f"[green]✓ Updated agent {a.full_name}[/green]")


@agent.command("activate")
@click.argument("agent_id")
@click.pass_obj
@handle_errors
def agent_activate(services: Services, agent_id: str):
    """Reactivate an agent."""
    a = services.agents.activate(agent_id)
    console.print(f"[green]✓ {a.full_name} is active[/green]")


@agent.command("deactivate")
@click.argument("agent_id")
@click.pass_obj
@handle_errors
def agent_deactivate(services: Services, agent_id: str):
    """Deactivate an agent."""
    a = services.agents.deactivate(agent_id)
    console.print(f"[yellow]{a.full_name} deactivated[/yellow]")


# ============================================================================
# TRANSACTIONS
# ============================================================================

@cli.group()
def txn():
    """Manage transactions."""
    pass


@txn.command("create")
@click.argument("property_address")
@click.argument("property_type")
@click.argument("fee", type=float)
@click.argument("listing_agent_id")
@click.argument("selling_agent_id")
@click.option("--client", "client_name", default="", help="Client name")
@click.option("--contact", "client_contact", default="", help="Client contact")
@click.pass_obj
@handle_errors
def txn_create(services: Services, property_address, property_type, fee,
               listing_agent_id, selling_agent_id, client_name, client_contact):
    """Create a transaction at the agreement stage."""
    t = services.tracker.create_transaction(
        property_address, property_type, fee, listing_agent_id, selling_agent_id,
        client_name=client_name, client_contact=client_contact
    )
    console.print(f"[green]✓ Created transaction[/green] [cyan]{t.id}[/cyan]: {t.property_address}")


@txn.command("list")
@click.option("--stage", type=click.Choice([s.value for s in TransactionStage]), help="Filter by stage")
@click.option("--agent", "agent_id", help="Filter by agent (either side)")
@click.pass_obj
def txn_list(services: Services, stage: Optional[str], agent_id: Optional[str]):
    """List transactions, newest first."""
    if stage:
        txns = services.tracker.get_by_stage(TransactionStage(stage))
    elif agent_id:
        txns = services.tracker.get_by_agent(agent_id)
    else:
        txns = services.tracker.get_all_transactions()

    if not txns:
        console.print("[yellow]No transactions found.[/yellow]")
        return

    table = Table(title=f"Transactions ({len(txns)})")
    table.add_column("ID", style="dim")
    table.add_column("Property", style="cyan")
    table.add_column("Fee", justify="right")
    table.add_column("Stage")
    table.add_column("Listing", style="dim")
    table.add_column("Selling", style="dim")

    for t in txns:
        stage_str = f"[green]{t.stage.value}[/green]" if t.is_completed else t.stage.value
        table.add_row(t.id, t.property_address, money(t.total_service_fee), stage_str,
                      t.listing_agent_id, t.selling_agent_id)

    console.print(table)


@txn.command("show")
@click.argument("txn_id")
@click.pass_obj
@handle_errors
def txn_show(services: Services, txn_id: str):
    """Show a transaction."""
    t = services.tracker.get_transaction(txn_id)
    console.print(Panel.fit(
        f"[bold]Property:[/bold] {t.property_address} ({t.property_type})\n"
        f"[bold]Client:[/bold] {t.client_name or 'N/A'} {t.client_contact}\n"
        f"[bold]Fee:[/bold] {money(t.total_service_fee)}\n"
        f"[bold]Stage:[/bold] {t.stage.value}\n"
        f"[bold]Listing agent:[/bold] {t.listing_agent_id}\n"
        f"[bold]Selling agent:[/bold] {t.selling_agent_id}\n"
        f"[bold]Created:[/bold] {t.created_at.strftime('%Y-%m-%d %H:%M')}",
        title=f"Transaction {t.id}"
    ))
    if t.financial_breakdown:
        console.print(breakdown_panel(t.financial_breakdown, "Financial Breakdown"))


@txn.command("stage")
@click.argument("txn_id")
@click.argument("new_stage", type=click.Choice([s.value for s in TransactionStage]))
@click.pass_obj
@handle_errors
def txn_stage(services: Services, txn_id: str, new_stage: str):
    """Advance a transaction to the next stage."""
    t = services.tracker.update_stage(txn_id, TransactionStage(new_stage))
    console.print(f"[green]✓ Transaction {t.id} is now {t.stage.value}[/green]")
    if t.financial_breakdown:
        console.print(breakdown_panel(t.financial_breakdown, "Commissions Posted"))


@txn.command("simulate")
@click.argument("fee", type=float)
@click.argument("listing_agent_id")
@click.argument("selling_agent_id")
@click.pass_obj
@handle_errors
def txn_simulate(services: Services, fee: float, listing_agent_id: str, selling_agent_id: str):
    """Preview a commission split without saving anything."""
    breakdown = services.tracker.simulate_commission(fee, listing_agent_id, selling_agent_id)
    console.print(breakdown_panel(breakdown, "Commission Preview"))


@txn.command("breakdown")
@click.argument("txn_id")
@click.pass_obj
@handle_errors
def txn_breakdown(services: Services, txn_id: str):
    """Show the financial breakdown of a completed transaction."""
    breakdown = services.tracker.get_financial_summary(txn_id)
    console.print(breakdown_panel(breakdown, f"Transaction {txn_id}"))


# ============================================================================
# COMMISSIONS
# ============================================================================

@cli.group()
def commission():
    """Commission ledger."""
    pass


@commission.command("list")
@click.option("--agent", "agent_id", help="Filter by agent")
@click.option("--status", type=click.Choice([s.value for s in CommissionStatus]), help="Filter by status")
@click.option("--transaction", "txn_id", help="Filter by transaction")
@click.pass_obj
def commission_list(services: Services, agent_id, status, txn_id):
    """List ledger entries, newest first."""
    if agent_id:
        entries = services.ledger.get_by_agent(agent_id)
    elif status:
        entries = services.ledger.get_by_status(CommissionStatus(status))
    elif txn_id:
        entries = services.ledger.get_by_transaction(txn_id)
    else:
        entries = services.ledger.get_all()

    if not entries:
        console.print("[yellow]No commissions found.[/yellow]")
        return

    table = Table(title=f"Commissions ({len(entries)})")
    table.add_column("ID", style="dim")
    table.add_column("Transaction", style="dim")
    table.add_column("Type")
    table.add_column("Agent")
    table.add_column("Amount", justify="right", style="green")
    table.add_column("Status")
    table.add_column("Paid")

    for c in entries:
        table.add_row(
            c.id, c.transaction_id, c.commission_type.value, c.agent_id or "[dim]agency[/dim]",
            money(c.amount), c.status.value,
            c.paid_date.strftime('%Y-%m-%d') if c.paid_date else ""
        )

    console.print(table)


@commission.command("status")
@click.argument("commission_id")
@click.argument("new_status", type=click.Choice([s.value for s in CommissionStatus]))
@click.option("--notes", help="Replace the entry's notes")
@click.pass_obj
@handle_errors
def commission_status(services: Services, commission_id: str, new_status: str, notes: Optional[str]):
    """Update a commission's payment status."""
    old = services.ledger.get_commission(commission_id).status.value
    c = services.ledger.update_status(commission_id, CommissionStatus(new_status), notes=notes)
    console.print(f"[green]✓ Commission {c.id}: {old} → {c.status.value}[/green]")


@commission.command("summary")
@click.pass_obj
def commission_summary(services: Services):
    """Show ledger totals."""
    s = services.ledger.get_overall_summary()
    type_lines = "\n".join(f"  {k}: {money(v)}" for k, v in sorted(s['by_type'].items()))

    console.print(Panel.fit(
        f"[bold]Commission pool:[/bold] {money(s['total_commission_pool'])} "
        f"({s['total_commissions']} entries)\n\n"
        f"  Paid:      [green]{money(s['paid_total'])}[/green] ({s['paid_commissions']})\n"
        f"  Processed: {money(s['processed_total'])}\n"
        f"  Pending:   [yellow]{money(s['pending_total'])}[/yellow] ({s['pending_commissions']})\n\n"
        f"[bold]By type:[/bold]\n{type_lines or '  none'}",
        title="Commission Ledger"
    ))


def main():
    cli()


if __name__ == "__main__":
    main()
