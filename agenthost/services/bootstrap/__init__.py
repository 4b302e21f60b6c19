"""First-boot payload generation for agent machines."""

from agenthost.services.bootstrap.builder import (
    BootstrapPayload,
    FirewallRule,
    ProxyRoute,
    ServiceUnit,
    WriteFile,
)
from agenthost.services.bootstrap.generator import (
    build_bootstrap,
    generate_bootstrap,
    generate_mesh_bootstrap,
    resolve_llm_routing,
)
from agenthost.services.bootstrap.skills import CredentialPayload, SkillManifest, get_skill

__all__ = [
    "BootstrapPayload",
    "WriteFile",
    "ServiceUnit",
    "FirewallRule",
    "ProxyRoute",
    "build_bootstrap",
    "generate_bootstrap",
    "generate_mesh_bootstrap",
    "resolve_llm_routing",
    "CredentialPayload",
    "SkillManifest",
    "get_skill",
]
