"""agenthost CLI: operator commands for the provisioning orchestrator.

Usage:
    agenthost poll                   Advance every provisioning instance once
    agenthost provision AGENT_ID     Queue a provisioning attempt
    agenthost status AGENT_ID        Show the agent's instance and progress
    agenthost stop|start|destroy AGENT_ID
    agenthost serve                  Run the HTTP API
"""

import logging
import time
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Optional

import typer
from rich.console import Console
from sqlalchemy.orm import Session

from agenthost.cli.output import (
    format_delivery_report,
    format_instance_status,
    format_step_results,
)
from agenthost.config import AppConfig, load_config
from agenthost.db.connection import configure_database, get_db_context, init_db
from agenthost.errors import AgentHostError, DomainError, format_error
from agenthost.services.agent_service import AgentService
from agenthost.services.bootstrap import generate_bootstrap
from agenthost.services.credential_delivery import CredentialDeliveryService
from agenthost.services.credential_encryption import TokenCipher
from agenthost.services.errors import MeshError, ProviderError
from agenthost.services.hetzner_client import HetznerClient
from agenthost.services.instance_service import InstanceService, InvalidStateTransition
from agenthost.services.lifecycle import LifecycleManager
from agenthost.services.machine_probe import MachineProbe
from agenthost.services.mesh_client import TailscaleClient
from agenthost.services.provisioning_queue import ProvisioningQueue
from agenthost.services.provisioning_stepper import ProvisioningStepper
from agenthost.services.provisioning_steps import compute_uptime, derive_steps
from agenthost.services.token_refresh import TokenRefreshService
from agenthost.services.vm_provisioner import ProvisioningJobRunner, VPNProvisioner
from agenthost.utils.redaction import redact_for_logging

_log = logging.getLogger(__name__)

app = typer.Typer(
    name="agenthost",
    help="Provisioning and lifecycle orchestration for agent machines",
    no_args_is_help=True,
)
config_app = typer.Typer(help="Configuration management")
app.add_typer(config_app, name="config")

console = Console()

# --- Global state ---
_config_path: str | None = None
_verbose: bool = False


@app.callback()
def main(
    config: Optional[str] = typer.Option(
        None, "--config", help="Path to agenthost.yaml config file"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    """agenthost: provision, run and tear down agent machines."""
    global _config_path, _verbose
    _config_path = config
    _verbose = verbose
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s:%(name)s:%(message)s",
    )


def _load() -> AppConfig:
    try:
        return load_config(config_path=_config_path)
    except FileNotFoundError as e:
        console.print(f"[red]Config file not found:[/red] {e}")
        raise typer.Exit(1)
    except ValueError as e:
        console.print(f"[red]Config validation failed:[/red] {e}")
        raise typer.Exit(1)


@dataclass
class _Runtime:
    config: AppConfig
    db: Session
    provider: HetznerClient
    probe: MachineProbe
    mesh: TailscaleClient | None

    def tokens(self) -> TokenRefreshService:
        return TokenRefreshService(self.db, self.config.google, TokenCipher.from_environment())

    def stepper(self) -> ProvisioningStepper:
        return ProvisioningStepper(
            self.db, self.config, self.provider, self.probe, tokens=self.tokens()
        )

    def lifecycle(self) -> LifecycleManager:
        return LifecycleManager(self.db, self.provider, self.mesh)


@contextmanager
def _runtime() -> Iterator[_Runtime]:
    """Config, a database session and outbound clients for one command.

    Domain and provider errors are printed and turned into exit code 1.
    """
    cfg = _load()
    logging.getLogger("agenthost").setLevel(
        logging.DEBUG if _verbose else cfg.log_level.upper()
    )
    configure_database(cfg.database.url, echo=cfg.database.echo)
    init_db()
    provider = HetznerClient(cfg.provider)
    probe = MachineProbe(cfg.provisioning, cfg.worker)
    mesh = None
    if cfg.mesh.oauth_client_id and cfg.mesh.oauth_client_secret:
        mesh = TailscaleClient(cfg.mesh)
    try:
        with get_db_context() as db:
            yield _Runtime(config=cfg, db=db, provider=provider, probe=probe, mesh=mesh)
    except (ProviderError, MeshError) as e:
        console.print(f"[red]{format_error(AgentHostError.from_message(e.code, e.message))}[/red]")
        raise typer.Exit(1)
    except (DomainError, InvalidStateTransition) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1)
    finally:
        provider.close()
        probe.close()
        if mesh is not None:
            mesh.close()


def _print_status(rt: _Runtime, agent_id: str, json_output: bool) -> None:
    instance = InstanceService(rt.db).get_latest_for_agent(agent_id)
    console.print(
        format_instance_status(
            instance, derive_steps(instance), compute_uptime(instance), as_json=json_output
        )
    )


# --- Provisioning ---


@app.command()
def poll(
    loop: bool = typer.Option(False, "--loop", help="Keep polling until interrupted"),
    interval: float = typer.Option(5.0, "--interval", help="Seconds between polls"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Advance every provisioning instance by one step."""
    with _runtime() as rt:
        stepper = rt.stepper()
        while True:
            results = stepper.poll_all()
            console.print(format_step_results(results, as_json=json_output))
            if not loop:
                break
            time.sleep(interval)


@app.command()
def provision(
    agent_id: str = typer.Argument(help="Agent ID"),
    region: str = typer.Option("us-east", "--region", "-r", help="Logical region"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Queue a provisioning attempt for an agent."""
    with _runtime() as rt:
        InstanceService(rt.db).queue_provisioning(agent_id, region=region)
        _print_status(rt, agent_id, json_output)


@app.command()
def status(
    agent_id: str = typer.Argument(help="Agent ID"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Show the agent's latest instance and its progress steps."""
    with _runtime() as rt:
        AgentService(rt.db).require_agent(agent_id)
        _print_status(rt, agent_id, json_output)


# --- Lifecycle ---


@app.command()
def stop(agent_id: str = typer.Argument(help="Agent ID")):
    """Gracefully stop the agent's running machine."""
    with _runtime() as rt:
        rt.lifecycle().stop(agent_id)
        console.print(f"[green]Agent {agent_id} stopped.[/green]")


@app.command()
def start(agent_id: str = typer.Argument(help="Agent ID")):
    """Power the agent's stopped machine back on."""
    with _runtime() as rt:
        rt.lifecycle().start(agent_id)
        console.print(f"[green]Agent {agent_id} started.[/green]")


@app.command()
def destroy(
    agent_id: str = typer.Argument(help="Agent ID"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
):
    """Delete the agent's machine and mesh device."""
    if not yes:
        typer.confirm(f"Destroy the machine of agent {agent_id}?", abort=True)
    with _runtime() as rt:
        result = rt.lifecycle().destroy(agent_id)
        if result.instance_id is None:
            console.print("[yellow]Nothing to destroy.[/yellow]")
            return
        console.print(
            f"[green]Destroyed.[/green] server deleted: {result.server_deleted}, "
            f"mesh device deleted: {result.mesh_deleted}"
        )


@app.command()
def rollback(job_id: str = typer.Argument(help="Provisioning job ID")):
    """Clean up the resources of a failed provisioning job."""
    with _runtime() as rt:
        result = rt.lifecycle().rollback_failed_provision(job_id)
        console.print(
            f"Rolled back job {job_id}: server={result.server_deleted}, mesh={result.mesh_deleted}"
        )


@app.command("provision-vm")
def provision_vm(
    agent_id: str = typer.Argument(help="Agent ID"),
    region: str = typer.Option("us-east", "--region", "-r", help="Logical region"),
    trigger_id: Optional[str] = typer.Option(
        None, "--trigger-id", help="Idempotency key of the triggering event"
    ),
):
    """Provision a mesh-enrolled machine through the job queue (VPN variant)."""
    with _runtime() as rt:
        if rt.mesh is None:
            console.print("[red]Mesh OAuth client is not configured.[/red]")
            raise typer.Exit(1)
        job = ProvisioningQueue(rt.db).enqueue(agent_id, trigger_id=trigger_id, region=region)
        runner = ProvisioningJobRunner(
            rt.db, VPNProvisioner(rt.config, rt.provider, rt.mesh), rt.lifecycle()
        )
        result = runner.run(job.id)
        console.print(f"[green]Provisioned {result.server_name}[/green]")
        console.print(f"  server_id:    {result.server_id}")
        console.print(f"  server_ip:    {result.server_ip}")
        console.print(f"  tailscale_ip: {result.tailscale_ip}")
        console.print(f"  snapshot:     {result.used_snapshot}")


# --- Credentials ---


@app.command("push-credentials")
def push_credentials(
    user_id: str = typer.Argument(help="User ID"),
    provider: str = typer.Option("google", "--provider", help="Integration provider"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
):
    """Push the user's current credentials to all of their running machines."""
    with _runtime() as rt:
        report = CredentialDeliveryService(rt.db, rt.config, rt.tokens()).push_credentials(
            user_id, provider
        )
        console.print(format_delivery_report(report, as_json=json_output))


@app.command("refresh-token")
def refresh_token(integration_id: str = typer.Argument(help="Integration ID")):
    """Refresh an integration's access token if it has expired."""
    with _runtime() as rt:
        refreshed = rt.tokens().refresh_token(integration_id)
        if refreshed is None:
            console.print("[yellow]Not refreshed[/yellow] (still valid, or the user must reconnect)")
        else:
            console.print("[green]Access token refreshed.[/green]")


@app.command("render-bootstrap")
def render_bootstrap(
    agent_id: str = typer.Argument(help="Agent ID"),
    instance_id: str = typer.Option("preview", "--instance-id", help="Instance ID to embed"),
):
    """Print the first-boot cloud-config an agent's machine would receive.

    Uses the agent's existing gateway token, or a placeholder when none has
    been minted yet. Nothing is written to the database.
    """
    with _runtime() as rt:
        agent = AgentService(rt.db).require_agent(agent_id)
        token = agent.gateway_token or "<gateway-token>"
        typer.echo(generate_bootstrap(agent, instance_id, token, rt.config), nl=False)


# --- Server ---


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address"),
    port: Optional[int] = typer.Option(None, "--port", help="Bind port"),
):
    """Run the HTTP API with uvicorn."""
    import uvicorn

    cfg = _load()
    uvicorn.run(
        "agenthost.api.main:app",
        host=host or cfg.api.host,
        port=port or cfg.api.port,
        log_level=cfg.log_level.lower(),
    )


# --- Config commands ---


@config_app.command("show")
def config_show():
    """Display resolved configuration (secrets masked)."""
    cfg = _load()
    masked = redact_for_logging(cfg.model_dump())
    for section, values in masked.items():
        if isinstance(values, dict):
            console.print(f"[bold]{section}:[/bold]")
            for key, value in values.items():
                console.print(f"  {key}: {value}")
        else:
            console.print(f"[bold]{section}:[/bold] {values}")


@config_app.command("validate")
def config_validate(
    config: Optional[str] = typer.Option(None, "--config", help="Config file path"),
):
    """Validate a config file and report what is missing for provisioning."""
    global _config_path
    if config:
        _config_path = config
    cfg = _load()
    console.print("[green]Config is valid.[/green]")
    missing = []
    if not cfg.provider.api_token:
        missing.append("provider.api_token")
    if not cfg.provider.ssh_key_ids:
        missing.append("provider.ssh_key_ids (VPN variant)")
    if not cfg.google.configured:
        missing.append("google.client_id / google.client_secret")
    for item in missing:
        console.print(f"  [yellow]not set:[/yellow] {item}")
