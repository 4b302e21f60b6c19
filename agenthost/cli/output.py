"""CLI output formatters for Rich tables and JSON.

Provides human-readable Rich output (default) and machine-parseable JSON
(--json flag). All formatting goes through these functions so the CLI
commands stay clean.
"""

import dataclasses
import json

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from agenthost.db.models import AgentInstance
from agenthost.services.credential_delivery import DeliveryReport
from agenthost.services.provisioning_stepper import StepResult
from agenthost.services.provisioning_steps import StepView

console = Console()

STATUS_COLORS = {
    "pending": "yellow",
    "provisioning": "blue",
    "running": "green",
    "stopping": "yellow",
    "stopped": "dim",
    "failed": "red",
}

STEP_MARKERS = {
    "pending": "[dim]o[/dim]",
    "active": "[blue]>[/blue]",
    "completed": "[green]v[/green]",
    "error": "[red]x[/red]",
}


def _render(renderable) -> str:
    with console.capture() as capture:
        console.print(renderable)
    return capture.get()


def _instance_dict(instance: AgentInstance) -> dict:
    return {
        "id": instance.id,
        "agent_id": instance.agent_id,
        "status": instance.status,
        "current_step": instance.current_step,
        "server_id": instance.server_id,
        "server_ip": instance.server_ip,
        "tailscale_ip": instance.tailscale_ip,
        "region": instance.region,
        "error": instance.error,
        "started_at": instance.started_at,
        "stopped_at": instance.stopped_at,
        "created_at": instance.created_at,
    }


def format_instance_status(
    instance: AgentInstance | None,
    steps: list[StepView],
    uptime_seconds: int | None,
    as_json: bool = False,
) -> str:
    """Format an instance with its progress steps as a Rich panel or JSON.

    Args:
        instance: The instance, or None when the agent has never been provisioned.
        steps: Derived progress steps.
        uptime_seconds: Seconds since the instance started, if running.
        as_json: If True, return JSON string instead of Rich panel.

    Returns:
        Formatted string output.
    """
    if as_json:
        return json.dumps(
            {
                "instance": _instance_dict(instance) if instance else None,
                "steps": [dataclasses.asdict(step) for step in steps],
                "uptime_seconds": uptime_seconds,
            },
            indent=2,
        )

    if instance is None:
        return "No instance for this agent."

    color = STATUS_COLORS.get(instance.status, "white")
    lines = [
        f"[bold]Instance:[/bold] {instance.id}",
        f"[bold]Status:[/bold]   [{color}]{instance.status}[/{color}]",
        f"[bold]Region:[/bold]   {instance.region}",
        f"[bold]Server:[/bold]   {instance.server_id or '-'} ({instance.server_ip or 'no address'})",
    ]
    if uptime_seconds is not None:
        lines.append(f"[bold]Uptime:[/bold]   {uptime_seconds}s")
    lines.append("")
    for step in steps:
        lines.append(f"  {STEP_MARKERS.get(step.status, ' ')} {step.label}")
    if instance.error:
        lines.append("")
        lines.append(f"[bold red]Note:[/bold red] {instance.error}")

    return _render(Panel("\n".join(lines), title="Agent Instance", border_style="cyan"))


def format_step_results(results: list[StepResult], as_json: bool = False) -> str:
    """Format the outcome of a poll as a table or JSON."""
    if as_json:
        return json.dumps(
            [
                {
                    "instance_id": r.instance_id,
                    "action": r.action.value,
                    "status": r.status,
                    "current_step": r.current_step,
                }
                for r in results
            ],
            indent=2,
        )

    if not results:
        return "No instances to advance."

    table = Table(title="Provisioning Poll")
    table.add_column("Instance", style="cyan", no_wrap=True)
    table.add_column("Action")
    table.add_column("Status")
    table.add_column("Step")
    for r in results:
        color = STATUS_COLORS.get(r.status, "white")
        table.add_row(
            r.instance_id[:12],
            r.action.value,
            f"[{color}]{r.status}[/{color}]",
            r.current_step or "-",
        )
    return _render(table)


def format_delivery_report(report: DeliveryReport, as_json: bool = False) -> str:
    if as_json:
        return json.dumps(dataclasses.asdict(report), indent=2)
    if report.skipped_reason:
        return f"[yellow]Skipped:[/yellow] {report.skipped_reason}"
    lines = [
        f"Pushed {report.provider} credentials to {report.attempted} machine(s)",
        f"  [green]delivered:[/green] {len(report.delivered)}",
        f"  [red]failed:[/red]    {len(report.failed)}",
    ]
    for instance_id in report.failed:
        lines.append(f"    - {instance_id}")
    return "\n".join(lines)
