"""Static file contents shipped onto provisioned machines."""

from importlib import resources

from agenthost.services.bootstrap.builder import ProxyRoute

_PACKAGE = "agenthost.services.bootstrap"


def shipped_source(module_file: str) -> str:
    """Return the source of a module in this package, as shipped to machines."""
    return resources.files(_PACKAGE).joinpath(module_file).read_text(encoding="utf-8")


def credential_receiver_source() -> str:
    return shipped_source("credential_receiver.py")


def google_api_source() -> str:
    return shipped_source("google_api.py")


def render_caddyfile(
    routes: list[ProxyRoute],
    gateway_port: int,
    receiver_port: int,
    internal_prefix: str = "/internal",
) -> str:
    """Render the reverse proxy config.

    Two destinations only: anything under internal_prefix goes to the
    credential receiver (with per-route rewrites), everything else to the
    worker gateway. Served on :443 with an internal certificate and on :80.
    """
    def site(address: str, tls_internal: bool) -> list[str]:
        lines = [f"{address} {{"]
        if tls_internal:
            lines.append("    tls internal")
        for route in routes:
            lines.append(f"    handle {route.match_path} {{")
            if route.rewrite_path:
                lines.append(f"        rewrite * {route.rewrite_path}")
            lines.append(f"        reverse_proxy 127.0.0.1:{route.upstream_port}")
            lines.append("    }")
        lines.extend([
            f"    handle {internal_prefix}/* {{",
            f"        reverse_proxy 127.0.0.1:{receiver_port}",
            "    }",
            "    handle {",
            f"        reverse_proxy 127.0.0.1:{gateway_port}",
            "    }",
            "}",
        ])
        return lines

    return "\n".join(site(":443", True) + [""] + site(":80", False)) + "\n"


GOOGLE_SKILL_MD = """\
---
name: google-workspace
description: Read, send, and manage Gmail and Google Calendar. Use when the user asks about emails, inbox, scheduling, or calendar events.
---

# Google Workspace

You have access to the user's Gmail inbox and Google Calendar through the
`google_api.py` tool. Every command prints JSON.

## Gmail

List emails:

    python3 {skill_dir}/google_api.py mail-list [--query "GMAIL_SEARCH"] [--max 10]

- `--query` uses Gmail search syntax (`is:unread`, `from:boss@co.com`)
- Returns an array of `{{ id, subject, from, date, snippet }}`

Read one email (get ids from mail-list first):

    python3 {skill_dir}/google_api.py mail-read MESSAGE_ID

Send an email. Always confirm with the user before sending:

    python3 {skill_dir}/google_api.py mail-send --to "a@example.com" --subject "Subject" --body "Body"

## Google Calendar

List events (defaults to today onwards):

    python3 {skill_dir}/google_api.py calendar-list [--start ISO] [--end ISO] [--max 10]

Create an event. Always confirm details with the user first:

    python3 {skill_dir}/google_api.py calendar-create --summary "Meeting" --start ISO --end ISO [--description D] [--attendees "a@co.com,b@co.com"]

## Notes

- If a command reports "Google credentials not configured", ask the user to
  connect Google in the dashboard.
- Token refresh is automatic.
"""


def render_skill_md(skill_dir: str) -> str:
    return GOOGLE_SKILL_MD.format(skill_dir=skill_dir)
