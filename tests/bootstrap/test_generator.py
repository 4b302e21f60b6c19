"""Tests for first-boot cloud-config generation."""

import json

import pytest
import yaml

from agenthost.config import LLMConfig
from agenthost.db.models import Agent
from agenthost.services.bootstrap import (
    BootstrapPayload,
    CredentialPayload,
    ServiceUnit,
    WriteFile,
    build_bootstrap,
    generate_bootstrap,
    generate_mesh_bootstrap,
    resolve_llm_routing,
)

TOKEN = "a" * 64


@pytest.fixture
def agent() -> Agent:
    return Agent(
        id="agent-0001",
        user_id="user-1",
        name="Scout",
        personality="Friendly and concise.",
        goal="Keep the inbox tidy.",
        config={"llmTemperature": 0.3},
    )


@pytest.fixture
def credentials() -> dict[str, CredentialPayload]:
    return {
        "google": CredentialPayload(
            email="owner@example.com",
            access_token="ya29.access",
            refresh_token="1//refresh",
            token_expiry="2030-01-01T00:00:00+00:00",
            client_id="google-client",
            client_secret="google-secret",
        )
    }


def _parse(text: str) -> dict:
    assert text.startswith("#cloud-config\n")
    return yaml.safe_load(text)


def _files(doc: dict) -> dict[str, dict]:
    return {entry["path"]: entry for entry in doc["write_files"]}


class TestDeterminism:
    def test_same_inputs_same_bytes(self, agent, app_config, credentials):
        first = generate_bootstrap(agent, "inst-1", TOKEN, app_config, credentials)
        second = generate_bootstrap(agent, "inst-1", TOKEN, app_config, credentials)
        assert first == second

    def test_instance_id_changes_output(self, agent, app_config):
        assert generate_bootstrap(agent, "inst-1", TOKEN, app_config) != generate_bootstrap(
            agent, "inst-2", TOKEN, app_config
        )


class TestPayloadShape:
    def test_no_heredocs_in_runcmd(self, agent, app_config, credentials):
        doc = _parse(generate_bootstrap(agent, "inst-1", TOKEN, app_config, credentials))
        for command in doc["runcmd"]:
            assert "<<" not in command
            assert "\n" not in command

    def test_file_contents_are_literal_blocks(self, agent, app_config):
        text = generate_bootstrap(agent, "inst-1", TOKEN, app_config)
        assert "content: |" in text

    def test_firewall_first(self, agent, app_config):
        runcmd = _parse(generate_bootstrap(agent, "inst-1", TOKEN, app_config))["runcmd"]
        assert runcmd[:2] == ["ufw default deny incoming", "ufw default allow outgoing"]
        for port in (22, 80, 443):
            assert f"ufw allow {port}/tcp" in runcmd
        assert runcmd.index("ufw --force enable") < runcmd.index("apt-get install -y caddy")

    def test_services_started_after_install(self, agent, app_config):
        runcmd = _parse(generate_bootstrap(agent, "inst-1", TOKEN, app_config))["runcmd"]
        reload_at = runcmd.index("systemctl daemon-reload")
        assert runcmd.index("npm install -g openclaw@latest") < reload_at
        assert "systemctl enable --now openclaw-gateway" in runcmd[reload_at:]
        assert "systemctl enable --now credential-receiver" in runcmd[reload_at:]
        assert runcmd[-1] == "touch /root/.openclaw/.provisioned"

    def test_worker_settings(self, agent, app_config):
        files = _files(_parse(generate_bootstrap(agent, "inst-1", TOKEN, app_config)))
        settings = json.loads(files["/root/.openclaw/openclaw.json"]["content"])
        assert settings["gateway"]["auth"]["token"] == TOKEN
        assert settings["gateway"]["http"]["endpoints"]["chatCompletions"]["enabled"] is True
        assert settings["agent"]["name"] == "Scout"
        assert settings["agent"]["temperature"] == 0.3
        assert settings["agent"]["systemPrompt"] == (
            "Friendly and concise.\n\nYour goal: Keep the inbox tidy."
        )
        assert settings["skills"]["load"]["extraDirs"] == ["/root/google-workspace-skill"]
        assert files["/root/.openclaw/openclaw.json"]["permissions"] == "0600"

    def test_default_system_prompt(self, app_config):
        bare = Agent(id="agent-2", user_id="u", name="", config={})
        files = _files(_parse(generate_bootstrap(bare, "inst-1", TOKEN, app_config)))
        settings = json.loads(files["/root/.openclaw/openclaw.json"]["content"])
        assert settings["agent"]["systemPrompt"] == "You are a helpful AI assistant."
        assert settings["agent"]["name"] == "Agent"

    def test_env_file(self, agent, app_config):
        files = _files(_parse(generate_bootstrap(agent, "inst-1", TOKEN, app_config)))
        env = files["/root/.openclaw/.env"]
        assert env["permissions"] == "0600"
        assert "OPENROUTER_API_KEY=sk-or-test" in env["content"]
        assert "OPENCLAW_INSTANCE_ID=inst-1" in env["content"]

    def test_receiver_env_holds_gateway_token(self, agent, app_config):
        files = _files(_parse(generate_bootstrap(agent, "inst-1", TOKEN, app_config)))
        env = files["/etc/agenthost/receiver.env"]
        assert f"RECEIVER_TOKEN={TOKEN}" in env["content"]
        assert env["permissions"] == "0600"
        assert "/opt/agenthost/credential_receiver.py" in files


class TestCredentials:
    def test_prepopulated_credential_file(self, agent, app_config, credentials):
        files = _files(_parse(generate_bootstrap(agent, "inst-1", TOKEN, app_config, credentials)))
        entry = files["/root/.google-creds/tokens.json"]
        data = json.loads(entry["content"])
        assert entry["permissions"] == "0600"
        assert data == {
            "accessToken": "ya29.access",
            "clientId": "google-client",
            "clientSecret": "google-secret",
            "email": "owner@example.com",
            "refreshToken": "1//refresh",
            "tokenExpiry": "2030-01-01T00:00:00+00:00",
        }

    def test_no_credential_file_without_credentials(self, agent, app_config):
        files = _files(_parse(generate_bootstrap(agent, "inst-1", TOKEN, app_config)))
        assert "/root/.google-creds/tokens.json" not in files


class TestReverseProxy:
    def test_caddyfile_routes(self, agent, app_config):
        files = _files(_parse(generate_bootstrap(agent, "inst-1", TOKEN, app_config)))
        caddy = files["/etc/agenthost/Caddyfile"]["content"]
        assert ":443 {" in caddy
        assert "tls internal" in caddy
        assert ":80 {" in caddy
        assert "handle /internal/google-credentials {" in caddy
        assert "rewrite * /credentials/google" in caddy
        assert "reverse_proxy 127.0.0.1:18790" in caddy
        assert "reverse_proxy 127.0.0.1:18789" in caddy
        # specific route before the catch-all
        assert caddy.index("/internal/google-credentials") < caddy.index("handle {")


class TestLLMRouting:
    def test_openrouter_default(self):
        routing = resolve_llm_routing({}, LLMConfig(openrouter_api_key="sk-or"))
        assert routing.provider == "openrouter"
        assert routing.model == "anthropic/claude-sonnet-4.5"
        assert ("OPENROUTER_API_KEY", "sk-or") in routing.env
        assert ("OPENAI_API_BASE", "https://openrouter.ai/api/v1") in routing.env

    def test_direct_provider(self):
        llm = LLMConfig(openai_api_key="sk-openai", anthropic_api_key="sk-ant")
        routing = resolve_llm_routing({"llmProvider": "openai", "llmModel": "gpt-4.1"}, llm)
        assert routing.model == "openai/gpt-4.1"
        assert ("OPENAI_API_KEY", "sk-openai") in routing.env
        assert ("ANTHROPIC_API_KEY", "sk-ant") in routing.env

    def test_agent_model_overrides_default(self):
        routing = resolve_llm_routing({"llmModel": "openai/gpt-4o"}, LLMConfig())
        assert routing.model == "openai/gpt-4o"
        assert routing.env == ()

    def test_model_in_worker_settings(self, app_config):
        agent = Agent(id="a", user_id="u", name="A", config={"llmModel": "google/gemini-2.5"})
        files = _files(_parse(generate_bootstrap(agent, "i", TOKEN, app_config)))
        settings = json.loads(files["/root/.openclaw/openclaw.json"]["content"])
        assert settings["agent"]["model"] == "google/gemini-2.5"


class TestBuilder:
    def test_multiline_command_rejected(self):
        payload = BootstrapPayload()
        with pytest.raises(ValueError):
            payload.add_command("cat > /etc/x\nhello")

    def test_heredoc_rejected(self):
        payload = BootstrapPayload()
        with pytest.raises(ValueError):
            payload.add_command("cat > /etc/x <<EOF")

    def test_service_unit_rendered_as_file(self):
        payload = BootstrapPayload()
        payload.add_service(ServiceUnit("web", "Web server", "/usr/bin/web --port 1"))
        doc = yaml.safe_load(payload.to_cloud_config())
        unit = _files(doc)["/etc/systemd/system/web.service"]["content"]
        assert "ExecStart=/usr/bin/web --port 1" in unit
        assert "Restart=always" in unit
        assert doc["runcmd"] == ["systemctl daemon-reload", "systemctl enable --now web"]

    def test_shell_metacharacters_survive_in_files(self):
        content = "line with $HOME and `backticks` and 'quotes'\nEOF\n"
        payload = BootstrapPayload()
        payload.add_file(WriteFile("/tmp/x", content))
        doc = yaml.safe_load(payload.to_cloud_config())
        assert doc["write_files"][0]["content"] == content


class TestMeshBootstrap:
    def test_base_image_installs_tailscale(self):
        doc = _parse(generate_mesh_bootstrap("tskey-1", "agent-1", snapshot=False))
        assert doc["package_update"] is True
        assert "curl -fsSL https://tailscale.com/install.sh | sh" in doc["runcmd"]
        assert doc["runcmd"][-1] == (
            "tailscale up --auth-key=tskey-1 --advertise-tags=tag:agent --hostname=agent-1"
        )

    def test_snapshot_skips_install(self):
        doc = _parse(generate_mesh_bootstrap("tskey-1", "agent-1", snapshot=True))
        assert doc["package_update"] is False
        assert not any("install.sh" in command for command in doc["runcmd"])
        assert doc["runcmd"][-1] == 'echo "cloud-init complete" > /tmp/cloud-init-done'

    def test_clock_sync_before_join(self):
        runcmd = _parse(generate_mesh_bootstrap("k", "h", snapshot=True))["runcmd"]
        assert runcmd[0] == "systemctl restart systemd-timesyncd"


def test_build_bootstrap_returns_typed_payload(app_config):
    agent = Agent(id="a", user_id="u", name="A", config={})
    payload = build_bootstrap(agent, "i", TOKEN, app_config)
    assert isinstance(payload, BootstrapPayload)
    assert "caddy" not in payload.packages
