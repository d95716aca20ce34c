"""A2P registry CLI: operator tooling for the registration orchestrator.

Runs the orchestrator in-process against the configured database and
upstream APIs. The HTTP API is started with ``a2p serve``.

Usage:
    a2p db init                      Create tables
    a2p registration status <id>     Show the status projection
    a2p registration advance <id>    Perform the next unit of work
    a2p ops attempts <id>            List compliance API attempts
    a2p ops reconcile <id>           Force reconciliation of pending attempts
    a2p ops sweep                    Reconcile and poll every open registration
    a2p serve                        Start the HTTP API
"""

import logging
import os
from collections.abc import Callable, Generator
from contextlib import contextmanager
from typing import Any, Optional, TypeVar

import typer
from rich.console import Console
from sqlalchemy.orm import Session, sessionmaker

from a2p_registry.cli.config import A2PConfig, load_config
from a2p_registry.cli.output import (
    format_attempts,
    format_reconcile_report,
    format_status,
    format_sweep,
)
from a2p_registry.db.connection import build_engine, init_db
from a2p_registry.errors import DomainError, error_from_exception, format_error
from a2p_registry.services.gateway_client import ComplianceGatewayClient
from a2p_registry.services.inventory import HttpPhoneNumberInventory
from a2p_registry.services.orchestrator import RegistrationOrchestrator
from a2p_registry.services.poller import run_status_sweep

_log = logging.getLogger(__name__)

T = TypeVar("T")

app = typer.Typer(
    name="a2p",
    help="A2P 10DLC registration orchestrator",
    no_args_is_help=True,
)
db_app = typer.Typer(help="Database management")
registration_app = typer.Typer(help="Inspect and drive registrations")
ops_app = typer.Typer(help="Operator tooling: attempts, reconciliation, sweeps")
config_app = typer.Typer(help="Configuration management")

app.add_typer(db_app, name="db")
app.add_typer(registration_app, name="registration")
app.add_typer(ops_app, name="ops")
app.add_typer(config_app, name="config")

console = Console()

# --- Global state ---
_config_path: str | None = None


@app.callback()
def main(
    config: Optional[str] = typer.Option(
        None, "--config", help="Path to a2p.yaml config file"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
):
    """A2P registry CLI."""
    global _config_path
    _config_path = config
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s:%(name)s:%(message)s",
    )


def _load() -> A2PConfig:
    try:
        return load_config(config_path=_config_path)
    except FileNotFoundError as e:
        console.print(f"[red]Config file not found:[/red] {e}")
        raise typer.Exit(1)
    except ValueError as e:
        console.print(f"[red]Config validation failed:[/red] {e}")
        raise typer.Exit(1)


@contextmanager
def _session(cfg: A2PConfig) -> Generator[Session, None, None]:
    """Session against the configured database, committed on success."""
    engine = build_engine(cfg.database.url, echo=cfg.database.echo)
    db = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
        engine.dispose()


def _with_orchestrator(action: Callable[[RegistrationOrchestrator], T]) -> T:
    """Run an action with a fully wired orchestrator, reporting domain errors."""
    cfg = _load()
    gateway = ComplianceGatewayClient.from_config(cfg.gateway)
    inventory = HttpPhoneNumberInventory.from_config(cfg.inventory)
    try:
        with _session(cfg) as db:
            orchestrator = RegistrationOrchestrator(
                db, gateway, inventory, settings=cfg.orchestrator
            )
            return action(orchestrator)
    except DomainError as e:
        console.print(f"[red]{format_error(error_from_exception(e))}[/red]")
        raise typer.Exit(1)
    finally:
        gateway.close()
        inventory.close()


# --- Version ---


@app.command()
def version():
    """Show the installed version."""
    from importlib.metadata import PackageNotFoundError
    from importlib.metadata import version as pkg_version

    try:
        v = pkg_version("a2p-registry")
    except PackageNotFoundError:
        v = "unknown"
    console.print(f"[bold]a2p-registry[/bold] v{v}")


# --- Config commands ---


@config_app.command("show")
def config_show():
    """Display resolved configuration (secrets masked)."""
    cfg = _load()
    for section, values in cfg.masked().items():
        console.print(f"[bold]{section}:[/bold]")
        for key, value in values.items():
            console.print(f"  {key}: {value}")


# --- Database commands ---


@db_app.command("init")
def db_init():
    """Create all tables in the configured database."""
    cfg = _load()
    engine = build_engine(cfg.database.url, echo=cfg.database.echo)
    try:
        init_db(bind=engine)
    finally:
        engine.dispose()
    console.print("[green]Database initialized.[/green]")


# --- Registration commands ---


@registration_app.command("status")
def registration_status(
    registration_id: str = typer.Argument(..., help="Registration ID"),
    as_json: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Show lifecycle status, sub-entities, numbers and the last error."""
    projection = _with_orchestrator(lambda o: o.get_registration_status(registration_id))
    console.print(format_status(projection, as_json=as_json))


@registration_app.command("advance")
def registration_advance(
    registration_id: str = typer.Argument(..., help="Registration ID"),
):
    """Perform the next outstanding unit of work."""

    def _run(orchestrator: RegistrationOrchestrator) -> dict[str, Any]:
        orchestrator.advance(registration_id)
        return orchestrator.get_registration_status(registration_id)

    console.print(format_status(_with_orchestrator(_run)))


@registration_app.command("poll")
def registration_poll(
    registration_id: str = typer.Argument(..., help="Registration ID"),
):
    """Refresh brand and campaign status from the compliance API."""

    def _run(orchestrator: RegistrationOrchestrator) -> dict[str, Any]:
        orchestrator.poll_status(registration_id)
        return orchestrator.get_registration_status(registration_id)

    console.print(format_status(_with_orchestrator(_run)))


@registration_app.command("abandon")
def registration_abandon(
    registration_id: str = typer.Argument(..., help="Registration ID"),
):
    """Abandon a draft registration."""
    _with_orchestrator(lambda o: o.abandon(registration_id))
    console.print(f"[yellow]Registration {registration_id} abandoned.[/yellow]")


@registration_app.command("events")
def registration_events(
    registration_id: str = typer.Argument(..., help="Registration ID"),
):
    """Print the audit trail."""

    def _run(orchestrator: RegistrationOrchestrator) -> str:
        orchestrator.store.get(registration_id)
        return orchestrator.events.export_text(registration_id)

    text = _with_orchestrator(_run)
    console.print(text or "No events recorded.", markup=False)


# --- Operator commands ---


@ops_app.command("attempts")
def ops_attempts(
    registration_id: str = typer.Argument(..., help="Registration ID"),
    as_json: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """List every compliance API attempt for a registration."""
    output = _with_orchestrator(
        lambda o: format_attempts(o.list_attempts(registration_id), as_json=as_json)
    )
    console.print(output)


@ops_app.command("reconcile")
def ops_reconcile(
    registration_id: str = typer.Argument(..., help="Registration ID"),
    as_json: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Resolve pending attempts now, interrupting stuck status checks."""
    report = _with_orchestrator(lambda o: o.force_reconcile(registration_id))
    console.print(format_reconcile_report(report, as_json=as_json))


@ops_app.command("sweep")
def ops_sweep(
    as_json: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Reconcile and poll every non-terminal registration once."""
    counts = _with_orchestrator(
        lambda o: run_status_sweep(
            o.db, o.registrar.gateway, o.binder.inventory, settings=o.settings
        )
    )
    console.print(format_sweep(counts, as_json=as_json))
    if counts["failed"]:
        raise typer.Exit(1)


# --- Server ---


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address"),
    port: Optional[int] = typer.Option(None, "--port", help="Bind port"),
):
    """Start the HTTP API with uvicorn."""
    import uvicorn

    cfg = _load()
    final_host = host or cfg.api.host
    final_port = port or cfg.api.port

    # Propagate the config path and database URL so the API process
    # loads the same configuration as the CLI.
    if _config_path:
        os.environ["A2P_CONFIG_PATH"] = str(_config_path)
    os.environ.setdefault("A2P_DATABASE_URL", cfg.database.url)

    console.print(f"[bold]Starting A2P registry API on {final_host}:{final_port}[/bold]")
    uvicorn.run(
        "a2p_registry.api.main:app",
        host=final_host,
        port=final_port,
        log_level=cfg.api.log_level,
    )


if __name__ == "__main__":
    app()
