"""YAML configuration loader with env var resolution and Pydantic validation.

Builds the single AppConfig object handed to every outbound client at
startup. Nothing below the CLI/API entrypoints reads os.environ directly.

Loads config from (priority order):
1. --config <path> CLI flag
2. ./agenthost.yaml (working directory)
3. ~/.agenthost/config.yaml (user home)

${VAR} references in YAML values resolve from environment at load time.
AGENTHOST_<SECTION>_<KEY> env vars override YAML values, and a small set of
conventional variables (HETZNER_API_TOKEN, DATABASE_URL, ...) fill fields
that are still unset.
"""

import logging
import os
import re
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, field_validator

logger = logging.getLogger(__name__)

_ENV_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}")


def resolve_env_vars(value: str) -> str:
    """Resolve ${VAR} references in a string from environment variables.

    Args:
        value: String potentially containing ${VAR} references.

    Returns:
        String with all ${VAR} references replaced by their env values.
        Missing env vars resolve to empty string.
    """
    def _replace(match: re.Match) -> str:
        return os.environ.get(match.group(1), "")

    return _ENV_VAR_PATTERN.sub(_replace, value)


def _resolve_env_vars_recursive(data: Any) -> Any:
    """Recursively resolve ${VAR} references in a nested data structure."""
    if isinstance(data, str):
        return resolve_env_vars(data)
    elif isinstance(data, dict):
        return {k: _resolve_env_vars_recursive(v) for k, v in data.items()}
    elif isinstance(data, list):
        return [_resolve_env_vars_recursive(item) for item in data]
    return data


class DatabaseConfig(BaseModel):
    """Instance record store location."""

    url: str | None = None
    echo: bool = False


class ProviderConfig(BaseModel):
    """Cloud server provider (Hetzner Cloud) settings."""

    api_token: str = ""
    base_url: str = "https://api.hetzner.cloud/v1"
    server_type: str = "cpx11"
    image: str = "ubuntu-24.04"
    snapshot_id: str | None = None
    ssh_key_ids: list[str] = []
    max_attempts: int = 5
    backoff_base_seconds: float = 1.0
    backoff_cap_seconds: float = 60.0
    request_timeout_seconds: float = 30.0

    @field_validator("ssh_key_ids", mode="before")
    @classmethod
    def split_key_list(cls, value: Any) -> Any:
        """Accept a comma-separated string as well as a YAML list."""
        if isinstance(value, str):
            return [part.strip() for part in value.split(",") if part.strip()]
        return value

    @property
    def boot_image(self) -> str:
        """Image to boot: the prepared snapshot when configured, else the base image."""
        return self.snapshot_id or self.image


class MeshConfig(BaseModel):
    """Private overlay network (Tailscale) settings for the VPN variant."""

    api_base: str = "https://api.tailscale.com/api/v2"
    oauth_client_id: str = ""
    oauth_client_secret: str = ""
    auth_key: str | None = None
    tailnet: str = "-"
    tag: str = "tag:agent"
    auth_key_expiry_seconds: int = 3600


class LLMConfig(BaseModel):
    """Platform-held model API keys and default model selection."""

    default_provider: str = "openrouter"
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    openrouter_default_model: str = "anthropic/claude-sonnet-4.5"
    direct_default_model: str = "gpt-4.1-mini"
    openrouter_api_key: str = ""
    openai_api_key: str = ""
    anthropic_api_key: str = ""
    google_api_key: str = ""
    groq_api_key: str = ""
    xai_api_key: str = ""


class GoogleConfig(BaseModel):
    """OAuth client used for refreshing and delivering Google credentials."""

    client_id: str = ""
    client_secret: str = ""
    token_url: str = "https://oauth2.googleapis.com/token"

    @property
    def configured(self) -> bool:
        return bool(self.client_id and self.client_secret)


class WorkerConfig(BaseModel):
    """What gets installed on the machine and where it listens."""

    npm_package: str = "openclaw@latest"
    binary: str = "/usr/bin/openclaw"
    home_dir: str = "/root/.openclaw"
    node_major: int = 22
    gateway_port: int = 18789
    receiver_port: int = 18790
    completion_path: str = "/v1/chat/completions"
    internal_prefix: str = "/internal"


class ProvisioningConfig(BaseModel):
    """Ceilings and probe timeouts for the provisioning stepper."""

    timeout_seconds: int = 600
    probe_timeout_seconds: float = 4.0
    chat_probe_timeout_seconds: float = 10.0
    push_timeout_seconds: float = 10.0
    server_name_prefix: str = "aura"
    default_region: str = "us-east"


class ApiConfig(BaseModel):
    """HTTP API server settings."""

    host: str = "127.0.0.1"
    port: int = 8000
    api_key: str | None = None


class AppConfig(BaseModel):
    """Top-level configuration for the agenthost orchestrator."""

    log_level: str = "INFO"
    database: DatabaseConfig = DatabaseConfig()
    provider: ProviderConfig = ProviderConfig()
    mesh: MeshConfig = MeshConfig()
    llm: LLMConfig = LLMConfig()
    google: GoogleConfig = GoogleConfig()
    worker: WorkerConfig = WorkerConfig()
    provisioning: ProvisioningConfig = ProvisioningConfig()
    api: ApiConfig = ApiConfig()

    @classmethod
    def from_env(cls) -> "AppConfig":
        """Build a config purely from environment variables."""
        return cls(**_apply_well_known_env(_apply_env_overrides({})))


# Conventional variable names mapped onto (section, field). Applied only
# when the field was not set by YAML or an AGENTHOST_ override.
_WELL_KNOWN_ENV: dict[str, tuple[str, str]] = {
    "DATABASE_URL": ("database", "url"),
    "HETZNER_API_TOKEN": ("provider", "api_token"),
    "HETZNER_SNAPSHOT_ID": ("provider", "snapshot_id"),
    "HETZNER_SSH_KEY_IDS": ("provider", "ssh_key_ids"),
    "TAILSCALE_OAUTH_CLIENT_ID": ("mesh", "oauth_client_id"),
    "TAILSCALE_OAUTH_CLIENT_SECRET": ("mesh", "oauth_client_secret"),
    "TAILSCALE_AUTH_KEY": ("mesh", "auth_key"),
    "OPENROUTER_API_KEY": ("llm", "openrouter_api_key"),
    "OPENAI_API_KEY": ("llm", "openai_api_key"),
    "ANTHROPIC_API_KEY": ("llm", "anthropic_api_key"),
    "GOOGLE_API_KEY": ("llm", "google_api_key"),
    "GROQ_API_KEY": ("llm", "groq_api_key"),
    "XAI_API_KEY": ("llm", "xai_api_key"),
    "GOOGLE_CLIENT_ID": ("google", "client_id"),
    "GOOGLE_CLIENT_SECRET": ("google", "client_secret"),
}


def _find_config_file() -> Path | None:
    """Search for config file in standard locations.

    Returns:
        Path to config file if found, None otherwise.
    """
    candidates = [
        Path.cwd() / "agenthost.yaml",
        Path.cwd() / "agenthost.yml",
        Path.home() / ".agenthost" / "config.yaml",
        Path.home() / ".agenthost" / "config.yml",
    ]
    for candidate in candidates:
        if candidate.exists():
            return candidate
    return None


def _apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """Apply AGENTHOST_<SECTION>_<KEY> env var overrides to config data.

    Section names are matched longest-first. Values stay strings; pydantic
    coerces them to the declared field types during validation.

    Args:
        data: Parsed YAML config dict.

    Returns:
        Config dict with env var overrides applied.
    """
    prefix = "AGENTHOST_"
    known_sections = sorted(
        (name for name in AppConfig.model_fields if name != "log_level"),
        key=len,
        reverse=True,
    )
    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue
        suffix = key[len(prefix):].lower()
        if suffix == "log_level":
            data["log_level"] = value
            continue
        matched_section = None
        matched_field = None
        for section in known_sections:
            section_prefix = section + "_"
            if suffix.startswith(section_prefix):
                matched_section = section
                matched_field = suffix[len(section_prefix):]
                break
        if matched_section is None or not matched_field:
            continue
        section_data = data.setdefault(matched_section, {})
        if isinstance(section_data, dict):
            section_data[matched_field] = value
    return data


def _apply_well_known_env(data: dict[str, Any]) -> dict[str, Any]:
    """Fill still-unset fields from conventional environment variable names."""
    for env_name, (section, field) in _WELL_KNOWN_ENV.items():
        value = os.environ.get(env_name, "").strip()
        if not value:
            continue
        section_data = data.setdefault(section, {})
        if isinstance(section_data, dict) and not section_data.get(field):
            section_data[field] = value
    return data


def load_config(config_path: str | None = None) -> AppConfig:
    """Load agenthost configuration from YAML with env var resolution.

    Args:
        config_path: Explicit path to config file. If None, searches
            standard locations (cwd, then ~/.agenthost/).

    Returns:
        Parsed and validated AppConfig. When no file is found the result
        is built from environment variables alone.

    Raises:
        FileNotFoundError: If an explicit config_path does not exist.
        ValueError: If the merged configuration fails validation.
    """
    if config_path:
        path = Path(config_path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
    else:
        path = _find_config_file()

    raw_data: dict[str, Any] = {}
    if path is not None:
        logger.info("Loading config from %s", path)
        with open(path) as f:
            raw_data = yaml.safe_load(f) or {}
        if not isinstance(raw_data, dict):
            raise ValueError(f"Config file {path} must contain a mapping at top level")

    data = _resolve_env_vars_recursive(raw_data)
    data = _apply_env_overrides(data)
    data = _apply_well_known_env(data)

    # pydantic's ValidationError subclasses ValueError
    return AppConfig(**data)
