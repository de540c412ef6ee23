"""
Command Line Interface for Agent Context Desk.
"""

import asyncio
import json
from pathlib import Path
from typing import Optional

import typer
from rich import print as rprint
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from ..bundles.budgets import calculate_overage, list_role_budgets, require_role_budget
from ..bundles.checksum import (
    content_checksum,
    framing_overhead,
    section_metrics,
    serialized_length,
    total_characters,
)
from ..bundles.errors import BundleError
from ..bundles.services import ContextBundleService
from ..config import get_settings
from ..core.logging import configure_logging
from ..db.audit_service import AuditService, parse_actor
from ..db.base import get_session_local, init_database

app = typer.Typer(help="Agent Context Desk - versioned context bundles for AI agents")
console = Console()


@app.callback()
def main_callback(
    log_level: Optional[str] = typer.Option(None, help="Override LOG_LEVEL"),
):
    """Configure logging before any command runs."""
    settings = get_settings()
    configure_logging(
        level=log_level or settings.log_level,
        json_output=settings.log_format == "json",
        environment=settings.environment,
    )


@app.command()
def serve(
    port: Optional[int] = typer.Option(None, help="Port to run the API server on"),
    host: Optional[str] = typer.Option(None, help="Host to bind the server to"),
    reload: bool = typer.Option(False, help="Reload on code changes"),
):
    """Run the HTTP API."""
    import uvicorn

    settings = get_settings()
    rprint(Panel.fit("Starting Agent Context Desk", style="bold blue"))
    uvicorn.run(
        "agent_context_desk.main:app",
        host=host or settings.api_host,
        port=port or settings.api_port,
        reload=reload,
    )


@app.command()
def init_db():
    """Create all tables in the configured database."""
    asyncio.run(init_database())
    console.print("✅ Database initialized")


@app.command()
def budgets():
    """Show the character budget of every role."""
    table = Table(title="Role Budgets", show_header=True, header_style="bold magenta")
    table.add_column("Role", style="cyan")
    table.add_column("Display Name")
    table.add_column("Hard Limit", justify="right", style="green")

    for budget in list_role_budgets():
        table.add_row(budget.role, budget.display_name, f"{budget.hard_limit:,}")

    console.print(table)


@app.command()
def receipt(bundle_id: str = typer.Argument(..., help="Bundle ID")):
    """Show the receipt stored with a bundle."""
    db = get_session_local()()
    try:
        stored_receipt, bundle = ContextBundleService(db).get_receipt(bundle_id)
    except BundleError as e:
        console.print(f"❌ {e.message}")
        raise typer.Exit(code=1)
    finally:
        db.close()

    data = stored_receipt.to_dict()
    table = Table(
        title=f"Receipt for {bundle.role} v{bundle.version}",
        show_header=True,
        header_style="bold cyan",
    )
    table.add_column("Field", style="yellow")
    table.add_column("Value")
    for key in (
        "receipt_id",
        "bundle_id",
        "repo_full_name",
        "ticket_id",
        "content_checksum",
        "bundle_checksum",
        "total_characters",
        "created_at",
    ):
        table.add_row(key, str(data[key]))
    table.add_row("git_ref", json.dumps(data["git_ref"]))
    table.add_row("red_reference", json.dumps(data["red_reference"]))
    table.add_row("manifest_reference", json.dumps(data["integration_manifest_reference"]))
    console.print(table)

    metrics = Table(title="Section Metrics", show_header=True, header_style="bold magenta")
    metrics.add_column("Section", style="cyan")
    metrics.add_column("Characters", justify="right")
    for section, count in sorted(data["section_metrics"].items()):
        metrics.add_row(section, f"{count:,}")
    console.print(metrics)


@app.command()
def versions(
    repo_full_name: str = typer.Argument(..., help="owner/repo"),
    ticket_pk: str = typer.Argument(..., help="Ticket primary key"),
    role: Optional[str] = typer.Option(None, help="Only show this role"),
    limit: int = typer.Option(20, help="Maximum bundles to show"),
):
    """List stored bundle versions for a ticket, newest first."""
    db = get_session_local()()
    try:
        bundles = ContextBundleService(db).list_for_ticket(
            repo_full_name, ticket_pk, role=role, limit=limit
        )
        rows = [bundle.to_summary() for bundle in bundles]
    except BundleError as e:
        console.print(f"❌ {e.message}")
        raise typer.Exit(code=1)
    finally:
        db.close()

    if not rows:
        console.print("No bundles stored for this ticket")
        return

    table = Table(title=f"Bundles for {repo_full_name} {ticket_pk}", show_header=True)
    table.add_column("Role", style="cyan")
    table.add_column("Version", justify="right", style="green")
    table.add_column("Bundle ID")
    table.add_column("Content Checksum", style="yellow")
    table.add_column("Created")
    for row in rows:
        table.add_row(
            row["role"],
            str(row["version"]),
            row["bundle_id"],
            row["content_checksum"][:16],
            row["created_at"] or "",
        )
    console.print(table)


@app.command()
def verify(
    bundle_id: Optional[str] = typer.Argument(None, help="Bundle ID"),
    receipt_id: Optional[str] = typer.Option(None, help="Verify by receipt ID instead"),
):
    """Rebuild a stored bundle from its receipt and compare checksums."""
    db = get_session_local()()
    try:
        report = asyncio.run(
            ContextBundleService(db).check_continuity(bundle_id=bundle_id, receipt_id=receipt_id)
        )
        result = report.to_response()
    except BundleError as e:
        console.print(f"❌ {e.message}")
        raise typer.Exit(code=1)
    finally:
        db.close()

    details = result["details"]
    console.print(
        f"Bundle {details['bundle_id']} ({details['role']} v{details['version']}), "
        f"receipt {details['receipt_id']}"
    )
    console.print(f"original_checksum: {result['original_checksum']}")
    console.print(f"rebuilt_checksum:  {result['rebuilt_checksum']}")
    console.print(result["run_continuity"]["explanation"])
    for warning in result["warnings"]:
        console.print(f"[yellow]⚠ {escape(warning)}[/yellow]")
    for error in result["errors"]:
        console.print(f"[red]✗ {escape(error)}[/red]")

    if not result["passed"]:
        console.print("❌ Continuity check failed")
        raise typer.Exit(code=1)
    console.print("✅ Continuity check passed")


@app.command()
def audit(
    entity_kind: Optional[str] = typer.Option(None, help="Entity kind, e.g. ContextBundle"),
    entity_id: Optional[str] = typer.Option(None, help="Entity ID"),
    trace_id: Optional[str] = typer.Option(None, help="Trace ID"),
    actor: Optional[str] = typer.Option(None, help="Actor as kind:id, e.g. user:octocat"),
    limit: int = typer.Option(50, help="Maximum entries to show"),
):
    """Show audit log entries for an entity, a trace or an actor."""
    if entity_kind and entity_id:
        title = f"Audit log for {entity_kind} {entity_id}"
    elif trace_id:
        title = f"Audit log for trace {trace_id}"
    elif actor:
        title = f"Audit log for actor {actor}"
    else:
        console.print("❌ Provide --entity-kind with --entity-id, --trace-id, or --actor")
        raise typer.Exit(code=1)

    db = get_session_local()()
    try:
        service = AuditService(db)
        if entity_kind and entity_id:
            entries = service.query_by_entity(entity_kind, entity_id, limit=limit)
        elif trace_id:
            entries = service.query_by_trace(trace_id, limit=limit)
        else:
            entries = service.query_by_actor(*parse_actor(actor), limit=limit)
        rows = [entry.to_dict() for entry in entries]
    finally:
        db.close()

    if not rows:
        console.print("No audit entries found")
        return

    table = Table(title=title, show_header=True, header_style="bold magenta")
    table.add_column("When")
    table.add_column("Actor", style="cyan")
    table.add_column("Action", style="green")
    table.add_column("Entity")
    table.add_column("Note")
    for row in rows:
        table.add_row(
            row["ts"] or "",
            f"{row['actor_kind']}:{row['actor_id']}",
            row["action"],
            f"{row['entity_kind']} {row['entity_id']}",
            row["note"] or "",
        )
    console.print(table)


@app.command()
def checksum(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="Bundle JSON file"),
    role: Optional[str] = typer.Option(None, help="Compare the size against this role's budget"),
):
    """Compute the content checksum and section metrics of a bundle JSON file."""
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        console.print(f"❌ Invalid JSON: {e}")
        raise typer.Exit(code=1)
    if not isinstance(payload, dict):
        console.print("❌ Bundle JSON must be an object")
        raise typer.Exit(code=1)

    metrics = section_metrics(payload)
    console.print(f"content_checksum: [bold]{content_checksum(payload)}[/bold]")
    console.print(f"total_characters: {total_characters(metrics):,}")
    console.print(
        f"serialized_length: {serialized_length(payload):,} "
        f"(framing {framing_overhead(payload, metrics):,})"
    )

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Section", style="cyan")
    table.add_column("Characters", justify="right")
    for section, count in metrics.items():
        table.add_row(section, f"{count:,}")
    console.print(table)

    if role:
        try:
            budget = require_role_budget(role)
        except BundleError as e:
            console.print(f"❌ {e.message}")
            raise typer.Exit(code=1)
        size = serialized_length(payload)
        overage = calculate_overage(role, size)
        style = "red" if overage else "green"
        console.print(
            f"[{style}]{budget.display_name}: {size:,} / {budget.hard_limit:,} "
            f"(overage {overage:,})[/{style}]"
        )


@app.command()
def version():
    """Show version information."""
    from .. import __version__

    rprint(Panel.fit(f"Agent Context Desk v{__version__}", style="bold green"))


def main():
    """Main CLI entry point."""
    app()


if __name__ == "__main__":
    main()
