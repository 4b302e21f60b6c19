"""First-boot payload generation for agent machines.

``generate_bootstrap`` is pure in its arguments: the same agent, instance
id, gateway token, config and credentials always produce byte-identical
cloud-config, so payloads can be regenerated later for audit or diffing.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any

from agenthost.config import AppConfig, LLMConfig, WorkerConfig
from agenthost.db.models import Agent
from agenthost.services.bootstrap import templates
from agenthost.services.bootstrap.builder import BootstrapPayload, ServiceUnit, WriteFile
from agenthost.services.bootstrap.skills import (
    RECEIVER_DIR,
    CredentialPayload,
    SkillManifest,
    all_skills,
    credential_receiver_unit,
    receiver_env_file,
)

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_PROMPT = "You are a helpful AI assistant."
DEFAULT_AGENT_NAME = "Agent"
CADDY_STAGING_PATH = "/etc/agenthost/Caddyfile"

BASE_PACKAGES = [
    "ufw",
    "curl",
    "gnupg",
    "python3",
    "debian-keyring",
    "debian-archive-keyring",
    "apt-transport-https",
]

# Direct-provider env var -> LLMConfig attribute
_DIRECT_PROVIDER_KEYS: tuple[tuple[str, str], ...] = (
    ("OPENAI_API_KEY", "openai_api_key"),
    ("ANTHROPIC_API_KEY", "anthropic_api_key"),
    ("GOOGLE_API_KEY", "google_api_key"),
    ("GROQ_API_KEY", "groq_api_key"),
    ("XAI_API_KEY", "xai_api_key"),
)


@dataclass(frozen=True)
class LLMRouting:
    """Which model the worker talks to and the env vars that route it there."""

    provider: str
    model: str
    env: tuple[tuple[str, str], ...]


def resolve_llm_routing(agent_config: dict[str, Any], llm: LLMConfig) -> LLMRouting:
    """Pick provider, model and API key env vars for an agent.

    OpenRouter (the default) routes every model through one platform key and
    takes model ids already in ``vendor/model`` form. Any other provider gets
    the directly configured keys and a ``provider/model`` id.
    """
    provider = agent_config.get("llmProvider") or llm.default_provider
    env: list[tuple[str, str]] = []

    if provider == "openrouter":
        if llm.openrouter_api_key:
            env.append(("OPENROUTER_API_KEY", llm.openrouter_api_key))
            env.append(("OPENAI_API_BASE", llm.openrouter_base_url))
            env.append(("OPENAI_API_KEY", llm.openrouter_api_key))
        model = agent_config.get("llmModel") or llm.openrouter_default_model
    else:
        for env_name, attr in _DIRECT_PROVIDER_KEYS:
            value = getattr(llm, attr)
            if value:
                env.append((env_name, value))
        model = f"{provider}/{agent_config.get('llmModel') or llm.direct_default_model}"

    if not env:
        logger.warning("No model API key configured for provider %s", provider)
    return LLMRouting(provider=provider, model=model, env=tuple(env))


def build_system_prompt(personality: str | None, goal: str | None) -> str:
    parts = []
    if personality:
        parts.append(personality)
    if goal:
        parts.append(f"Your goal: {goal}")
    return "\n\n".join(parts) or DEFAULT_SYSTEM_PROMPT


def build_worker_settings(
    agent: Agent,
    routing: LLMRouting,
    gateway_token: str,
    skills: list[SkillManifest],
) -> dict[str, Any]:
    """The worker's own JSON config file."""
    agent_section: dict[str, Any] = {
        "model": routing.model,
        "name": agent.name or DEFAULT_AGENT_NAME,
        "systemPrompt": build_system_prompt(agent.personality, agent.goal),
    }
    temperature = (agent.config or {}).get("llmTemperature")
    if temperature is not None:
        agent_section["temperature"] = temperature
    return {
        "agent": agent_section,
        "gateway": {
            "auth": {"token": gateway_token},
            "http": {"endpoints": {"chatCompletions": {"enabled": True}}},
        },
        "skills": {"load": {"extraDirs": [skill.skill_dir for skill in skills]}},
    }


def _worker_env(routing: LLMRouting, instance_id: str) -> str:
    lines = [f"{name}={value}" for name, value in routing.env]
    lines.append(f"OPENCLAW_INSTANCE_ID={instance_id}")
    return "\n".join(lines) + "\n"


def _install_commands(worker: WorkerConfig) -> list[str]:
    return [
        f"curl -fsSL https://deb.nodesource.com/setup_{worker.node_major}.x | bash -",
        "apt-get install -y nodejs",
        f"npm install -g {worker.npm_package}",
        "curl -1sLf 'https://dl.cloudsmith.io/public/caddy/stable/gpg.key' "
        "| gpg --dearmor -o /usr/share/keyrings/caddy-stable-archive-keyring.gpg",
        "curl -1sLf 'https://dl.cloudsmith.io/public/caddy/stable/debian.deb.txt' "
        "| tee /etc/apt/sources.list.d/caddy-stable.list",
        "apt-get update",
        "apt-get install -y caddy",
        f"install -m 0644 {CADDY_STAGING_PATH} /etc/caddy/Caddyfile",
        "systemctl restart caddy",
    ]


def build_bootstrap(
    agent: Agent,
    instance_id: str,
    gateway_token: str,
    config: AppConfig,
    credentials: dict[str, CredentialPayload] | None = None,
) -> BootstrapPayload:
    """Assemble the typed payload for one agent machine.

    Args:
        agent: The agent being provisioned.
        instance_id: Instance row id, exported to the worker.
        gateway_token: The agent's shared secret.
        config: Application config (LLM keys, worker layout).
        credentials: Already-connected integrations by provider name; each
            becomes a pre-populated credential file.

    Returns:
        BootstrapPayload ready for ``to_cloud_config()``.
    """
    worker = config.worker
    skills = all_skills(worker)
    routing = resolve_llm_routing(agent.config or {}, config.llm)

    payload = BootstrapPayload(packages=list(BASE_PACKAGES))
    for port in (22, 443, 80):
        payload.allow(port)

    payload.add_file(
        WriteFile(
            path=f"{worker.home_dir}/.env",
            content=_worker_env(routing, instance_id),
            permissions="0600",
        )
    )
    settings = build_worker_settings(agent, routing, gateway_token, skills)
    payload.add_file(
        WriteFile(
            path=f"{worker.home_dir}/openclaw.json",
            content=json.dumps(settings, indent=2) + "\n",
            permissions="0600",
        )
    )

    routes = [route for skill in skills for route in skill.proxy_routes]
    payload.add_file(
        WriteFile(
            path=CADDY_STAGING_PATH,
            content=templates.render_caddyfile(
                routes,
                gateway_port=worker.gateway_port,
                receiver_port=worker.receiver_port,
                internal_prefix=worker.internal_prefix,
            ),
        )
    )

    payload.add_file(
        WriteFile(
            path=f"{RECEIVER_DIR}/credential_receiver.py",
            content=templates.credential_receiver_source(),
            permissions="0755",
        )
    )
    payload.add_file(receiver_env_file(gateway_token, worker))

    credentials = credentials or {}
    for skill in skills:
        for entry in skill.write_files:
            payload.add_file(entry)
        payload.services.extend(skill.services)
        creds = credentials.get(skill.provider)
        if creds is not None:
            cred_file = skill.credential_write_file(creds)
            if cred_file is not None:
                payload.add_file(cred_file)

    for command in _install_commands(worker):
        payload.add_command(command)

    payload.add_service(
        ServiceUnit(
            name="openclaw-gateway",
            description="Agent worker gateway",
            exec_start=f"{worker.binary} gateway --port {worker.gateway_port}",
            environment_file=f"{worker.home_dir}/.env",
        )
    )
    payload.add_service(credential_receiver_unit())

    payload.add_final_command(f"touch {worker.home_dir}/.provisioned")
    return payload


def generate_bootstrap(
    agent: Agent,
    instance_id: str,
    gateway_token: str,
    config: AppConfig,
    credentials: dict[str, CredentialPayload] | None = None,
) -> str:
    """Render the cloud-config document for one agent machine."""
    return build_bootstrap(agent, instance_id, gateway_token, config, credentials).to_cloud_config()


def generate_mesh_bootstrap(
    auth_key: str,
    hostname: str,
    snapshot: bool,
    tag: str = "tag:agent",
) -> str:
    """Cloud-config for the VPN variant: sync the clock, then join the mesh.

    Snapshot images already carry the mesh client, so only base images
    install it. Snapshot boots also drop a completion marker.
    """
    payload = BootstrapPayload(package_update=not snapshot)
    payload.add_command("systemctl restart systemd-timesyncd")
    payload.add_command(
        "timeout 60 bash -c 'until timedatectl show -p NTPSynchronized --value "
        "| grep -q yes; do sleep 2; done' || true"
    )
    if not snapshot:
        payload.add_command("curl -fsSL https://tailscale.com/install.sh | sh")
    payload.add_command(
        f"tailscale up --auth-key={auth_key} --advertise-tags={tag} --hostname={hostname}"
    )
    if snapshot:
        payload.add_final_command('echo "cloud-init complete" > /tmp/cloud-init-done')
    return payload.to_cloud_config()
