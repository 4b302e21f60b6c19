"""Worker skill manifests for third-party integrations.

A skill manifest lists everything one integration needs on the machine:
files under its skill directory, machine-local services, reverse proxy
routes and, when the user has already connected the integration, a
pre-populated credential file.
"""

import json
from dataclasses import dataclass

from agenthost.config import WorkerConfig
from agenthost.services.bootstrap import templates
from agenthost.services.bootstrap.builder import ProxyRoute, ServiceUnit, WriteFile

RECEIVER_DIR = "/opt/agenthost"
RECEIVER_ENV_FILE = "/etc/agenthost/receiver.env"
GOOGLE_CREDS_DIR = "/root/.google-creds"


@dataclass(frozen=True)
class CredentialPayload:
    """Fixed-shape credential document delivered to machines.

    Serialized with camelCase keys, which is what the credential receiver
    and the on-machine tools read.
    """

    email: str | None
    access_token: str
    refresh_token: str
    token_expiry: str
    client_id: str
    client_secret: str

    def to_dict(self) -> dict[str, str | None]:
        return {
            "email": self.email,
            "accessToken": self.access_token,
            "refreshToken": self.refresh_token,
            "tokenExpiry": self.token_expiry,
            "clientId": self.client_id,
            "clientSecret": self.client_secret,
        }


@dataclass(frozen=True)
class SkillManifest:
    """Everything one integration installs on a machine."""

    provider: str
    skill_dir_name: str
    push_path: str
    write_files: tuple[WriteFile, ...] = ()
    services: tuple[ServiceUnit, ...] = ()
    proxy_routes: tuple[ProxyRoute, ...] = ()
    credential_file: str | None = None

    @property
    def skill_dir(self) -> str:
        return f"/root/{self.skill_dir_name}"

    def credential_write_file(self, payload: CredentialPayload) -> WriteFile | None:
        """The pre-populated credential file for payload, if the skill has one."""
        if self.credential_file is None:
            return None
        return WriteFile(
            path=self.credential_file,
            content=json.dumps(payload.to_dict(), indent=2, sort_keys=True) + "\n",
            permissions="0600",
        )


def credential_receiver_unit() -> ServiceUnit:
    return ServiceUnit(
        name="credential-receiver",
        description="Credential receiver",
        exec_start=f"/usr/bin/python3 {RECEIVER_DIR}/credential_receiver.py",
        environment_file=RECEIVER_ENV_FILE,
    )


def receiver_env_file(gateway_token: str, worker: WorkerConfig) -> WriteFile:
    """Environment for the receiver unit; holds the gateway token (0600)."""
    content = (
        f"RECEIVER_TOKEN={gateway_token}\n"
        f"RECEIVER_PORT={worker.receiver_port}\n"
        f"CREDENTIALS_DIR={GOOGLE_CREDS_DIR}\n"
    )
    return WriteFile(path=RECEIVER_ENV_FILE, content=content, permissions="0600")


def google_workspace_skill(worker: WorkerConfig) -> SkillManifest:
    """Gmail and Calendar tooling plus its credential route."""
    skill_dir_name = "google-workspace-skill"
    skill_dir = f"/root/{skill_dir_name}"
    push_path = f"{worker.internal_prefix}/google-credentials"
    return SkillManifest(
        provider="google",
        skill_dir_name=skill_dir_name,
        push_path=push_path,
        write_files=(
            WriteFile(path=f"{skill_dir}/SKILL.md", content=templates.render_skill_md(skill_dir)),
            WriteFile(
                path=f"{skill_dir}/google_api.py",
                content=templates.google_api_source(),
                permissions="0755",
            ),
        ),
        proxy_routes=(
            ProxyRoute(
                match_path=push_path,
                upstream_port=worker.receiver_port,
                rewrite_path="/credentials/google",
            ),
        ),
        credential_file=f"{GOOGLE_CREDS_DIR}/tokens.json",
    )


SKILL_FACTORIES = {
    "google": google_workspace_skill,
}


def get_skill(provider: str, worker: WorkerConfig) -> SkillManifest | None:
    factory = SKILL_FACTORIES.get(provider)
    return factory(worker) if factory else None


def all_skills(worker: WorkerConfig) -> list[SkillManifest]:
    return [factory(worker) for factory in SKILL_FACTORIES.values()]
