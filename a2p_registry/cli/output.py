"""CLI output formatters for Rich tables and JSON.

Provides human-readable Rich output (default) and machine-parseable JSON
output (--json flag). All formatting goes through these functions so the
CLI commands stay clean.
"""

import json
from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from a2p_registry.db.models import ComplianceAttempt
from a2p_registry.services.reconciliation import ReconcileReport

console = Console()

# Status color map shared by registrations, sub-entities, numbers and attempts
STATUS_COLORS = {
    "draft": "dim",
    "brand_pending": "yellow",
    "campaign_pending": "yellow",
    "submitted": "blue",
    "approved": "green",
    "rejected": "red",
    "pending": "yellow",
    "success": "green",
    "error": "red",
    "selected": "white",
    "registered": "green",
    "failed": "red",
}


def _colored(status: str | None) -> str:
    if not status:
        return "—"
    color = STATUS_COLORS.get(status, "white")
    return f"[{color}]{status}[/{color}]"


def _render(renderable: Any) -> str:
    with console.capture() as capture:
        console.print(renderable)
    return capture.get()


def format_status(projection: dict[str, Any], as_json: bool = False) -> str:
    """Format the registration status projection as a Rich panel or JSON.

    Args:
        projection: Output of RegistrationOrchestrator.get_registration_status.
        as_json: If True, return JSON string instead of Rich output.

    Returns:
        Formatted string output.
    """
    if as_json:
        return json.dumps(projection, indent=2, default=str)

    lines = [
        f"[bold]Registration:[/bold] {projection['registration_id']}",
        f"[bold]Status:[/bold]       {_colored(projection['status'])}"
        + ("  [dim](abandoned)[/dim]" if projection.get("abandoned") else ""),
        f"[bold]Step:[/bold]         {projection['current_step']}",
        f"[bold]Version:[/bold]      {projection['version']}",
        "",
        f"[bold]Brand:[/bold]        {_colored(projection['brand_status'])}"
        f"  {projection.get('brand_ref') or ''}",
        f"[bold]Campaign:[/bold]     {_colored(projection['campaign_status'])}"
        f"  {projection.get('campaign_ref') or ''}",
    ]
    last_error = projection.get("last_error")
    if last_error:
        lines += [
            "",
            f"[bold red]Last error:[/bold red] {last_error['error_code'] or ''} "
            f"{last_error['error_message'] or ''} ({last_error['attempt_type']})",
        ]

    output = _render(Panel("\n".join(lines), title="A2P Registration", expand=False))

    numbers = projection.get("per_number_status") or []
    if numbers:
        table = Table(title="Phone Numbers")
        table.add_column("Number", style="cyan", no_wrap=True)
        table.add_column("Status")
        table.add_column("Error")
        for number in numbers:
            error = " ".join(
                part for part in (number.get("error_code"), number.get("error_message")) if part
            )
            table.add_row(number["phone_number"], _colored(number["status"]), error or "—")
        output += _render(table)
    return output


def format_attempts(attempts: list[ComplianceAttempt], as_json: bool = False) -> str:
    """Format the attempt log for a registration."""
    if as_json:
        return json.dumps(
            [
                {
                    "id": a.id,
                    "attempt_type": a.attempt_type,
                    "subject": a.subject,
                    "status": a.status,
                    "idempotency_key": a.idempotency_key,
                    "upstream_ref": a.upstream_ref,
                    "error_code": a.error_code,
                    "error_message": a.error_message,
                    "request": a.request_payload,
                    "response": a.response_payload,
                    "created_at": a.created_at,
                    "completed_at": a.completed_at,
                }
                for a in attempts
            ],
            indent=2,
            default=str,
        )

    if not attempts:
        return "No attempts recorded."

    table = Table(title="Compliance Attempts", show_lines=True)
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Type")
    table.add_column("Subject")
    table.add_column("Status")
    table.add_column("Ref")
    table.add_column("Error")
    table.add_column("Created")

    for attempt in attempts:
        table.add_row(
            attempt.id[:8],
            attempt.attempt_type,
            attempt.subject,
            _colored(attempt.status),
            attempt.upstream_ref or "—",
            f"{attempt.error_code or ''} {attempt.error_message or ''}".strip() or "—",
            attempt.created_at[:19] if attempt.created_at else "—",
        )
    return _render(table)


def format_reconcile_report(report: ReconcileReport, as_json: bool = False) -> str:
    if as_json:
        return json.dumps(
            {
                "registration_id": report.registration_id,
                "counts": report.counts(),
                "results": [r.__dict__ for r in report.results],
            },
            indent=2,
        )
    if not report.results:
        return "No pending attempts."

    table = Table(title=f"Reconciliation: {report.registration_id}")
    table.add_column("Attempt", style="cyan", no_wrap=True)
    table.add_column("Type")
    table.add_column("Subject")
    table.add_column("Action")
    table.add_column("Detail")
    for result in report.results:
        table.add_row(
            result.attempt_id[:8],
            result.attempt_type,
            result.subject,
            result.action,
            result.detail or "—",
        )
    return _render(table)


def format_sweep(counts: dict[str, int], as_json: bool = False) -> str:
    if as_json:
        return json.dumps(counts, indent=2)
    return (
        f"Visited [bold]{counts['visited']}[/bold], reconciled {counts['reconciled']}, "
        f"transitioned [green]{counts['transitioned']}[/green], "
        f"failed [red]{counts['failed']}[/red]"
    )
