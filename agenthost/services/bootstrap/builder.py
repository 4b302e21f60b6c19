"""Typed builder for first-boot cloud-config payloads.

Files, systemd units and firewall rules are collected as typed entries and
serialized to ``#cloud-config`` YAML in one final step. File content only
ever travels through ``write_files`` as a literal block; ``runcmd`` entries
are restricted to single-line commands, so here-documents and other
multi-line shell constructs cannot be expressed at all.

Example:
    payload = BootstrapPayload(packages=["curl"])
    payload.add_file(WriteFile("/etc/motd", "hello\\n"))
    payload.add_service(ServiceUnit("web", "Web", "/usr/bin/web"))
    text = payload.to_cloud_config()
"""

from dataclasses import dataclass, field

import yaml

CLOUD_CONFIG_HEADER = "#cloud-config\n"


class _LiteralDumper(yaml.SafeDumper):
    """SafeDumper that renders multi-line strings as literal blocks."""

    def ignore_aliases(self, data: object) -> bool:
        return True


def _str_representer(dumper: yaml.SafeDumper, value: str) -> yaml.ScalarNode:
    if "\n" in value:
        return dumper.represent_scalar("tag:yaml.org,2002:str", value, style="|")
    return dumper.represent_scalar("tag:yaml.org,2002:str", value)


_LiteralDumper.add_representer(str, _str_representer)


def _check_command(command: str) -> str:
    """Reject runcmd entries that could smuggle file content."""
    if "\n" in command or "\r" in command:
        raise ValueError(f"Bootstrap command must be a single line: {command[:60]!r}")
    if "<<" in command:
        raise ValueError(
            f"Here-documents are not allowed in bootstrap commands: {command[:60]!r}"
        )
    return command


@dataclass(frozen=True)
class WriteFile:
    """One entry of the cloud-init write_files manifest."""

    path: str
    content: str
    owner: str = "root:root"
    permissions: str = "0644"

    def to_dict(self) -> dict[str, str]:
        return {
            "path": self.path,
            "owner": self.owner,
            "permissions": self.permissions,
            "content": self.content,
        }


@dataclass(frozen=True)
class ServiceUnit:
    """A systemd service, written as a unit file and enabled at boot."""

    name: str
    description: str
    exec_start: str
    environment_file: str | None = None
    environment: tuple[str, ...] = ("HOME=/root",)
    user: str = "root"
    restart_sec: int = 5
    after: tuple[str, ...] = ("network-online.target",)

    @property
    def path(self) -> str:
        return f"/etc/systemd/system/{self.name}.service"

    def render(self) -> str:
        """Render the unit file text."""
        lines = [
            "[Unit]",
            f"Description={self.description}",
            f"After={' '.join(self.after)}",
            f"Wants={' '.join(self.after)}",
            "",
            "[Service]",
            "Type=simple",
            f"User={self.user}",
        ]
        lines.extend(f"Environment={item}" for item in self.environment)
        if self.environment_file:
            lines.append(f"EnvironmentFile={self.environment_file}")
        lines.extend([
            f"ExecStart={self.exec_start}",
            "Restart=always",
            f"RestartSec={self.restart_sec}",
            "",
            "[Install]",
            "WantedBy=multi-user.target",
        ])
        return "\n".join(lines) + "\n"

    def to_write_file(self) -> WriteFile:
        return WriteFile(path=self.path, content=self.render())


@dataclass(frozen=True)
class FirewallRule:
    """An inbound allow rule; everything else incoming is denied."""

    port: int
    protocol: str = "tcp"

    def command(self) -> str:
        return f"ufw allow {self.port}/{self.protocol}"


@dataclass(frozen=True)
class ProxyRoute:
    """A reverse-proxy route from a public path to a machine-local port."""

    match_path: str
    upstream_port: int
    rewrite_path: str | None = None


@dataclass
class BootstrapPayload:
    """Collected first-boot configuration for one machine.

    runcmd order on the machine: firewall, setup commands, unit reload and
    service start, final commands.
    """

    packages: list[str] = field(default_factory=list)
    write_files: list[WriteFile] = field(default_factory=list)
    services: list[ServiceUnit] = field(default_factory=list)
    firewall_rules: list[FirewallRule] = field(default_factory=list)
    setup_commands: list[str] = field(default_factory=list)
    final_commands: list[str] = field(default_factory=list)
    package_update: bool = True

    def add_file(self, entry: WriteFile) -> None:
        self.write_files.append(entry)

    def add_service(self, unit: ServiceUnit) -> None:
        self.services.append(unit)

    def allow(self, port: int, protocol: str = "tcp") -> None:
        self.firewall_rules.append(FirewallRule(port, protocol))

    def add_command(self, command: str) -> None:
        self.setup_commands.append(_check_command(command))

    def add_final_command(self, command: str) -> None:
        self.final_commands.append(_check_command(command))

    def runcmd(self) -> list[str]:
        """Assemble the full runcmd list."""
        commands: list[str] = []
        if self.firewall_rules:
            commands.extend([
                "ufw default deny incoming",
                "ufw default allow outgoing",
            ])
            commands.extend(rule.command() for rule in self.firewall_rules)
            commands.append("ufw --force enable")
        commands.extend(self.setup_commands)
        if self.services:
            commands.append("systemctl daemon-reload")
            commands.extend(f"systemctl enable --now {unit.name}" for unit in self.services)
        commands.extend(self.final_commands)
        return [_check_command(command) for command in commands]

    def to_dict(self) -> dict:
        data: dict = {
            "package_update": self.package_update,
            "package_upgrade": False,
        }
        if self.packages:
            data["packages"] = list(self.packages)
        files = [entry.to_dict() for entry in self.write_files]
        files.extend(unit.to_write_file().to_dict() for unit in self.services)
        if files:
            data["write_files"] = files
        data["runcmd"] = self.runcmd()
        return data

    def to_cloud_config(self) -> str:
        """Serialize to cloud-config YAML. Output is deterministic."""
        body = yaml.dump(
            self.to_dict(),
            Dumper=_LiteralDumper,
            sort_keys=False,
            default_flow_style=False,
            allow_unicode=True,
            width=4096,
        )
        return CLOUD_CONFIG_HEADER + body
