"""Gmail and Google Calendar command-line tool for the worker.

Shipped verbatim onto machines with the Google Workspace skill and invoked
by the worker as ``python3 /root/google-workspace-skill/google_api.py``.
Standard library only. Every command prints JSON on stdout; failures print
``{"error": ...}`` on stderr and exit 1.

Credentials are read from the file the credential receiver writes. Expired
access tokens are refreshed in place with the stored refresh token.
"""

import argparse
import base64
import html
import json
import os
import re
import sys
import urllib.error
import urllib.parse
import urllib.request
from datetime import datetime, timedelta, timezone

CREDS_PATH = os.environ.get("GOOGLE_CREDS_PATH", "/root/.google-creds/tokens.json")
TOKEN_URL = "https://oauth2.googleapis.com/token"
GMAIL_API = "https://gmail.googleapis.com/gmail/v1/users/me"
CALENDAR_API = "https://www.googleapis.com/calendar/v3"
REFRESH_MARGIN = timedelta(seconds=60)
MAX_BODY_CHARS = 3000


class ToolError(Exception):
    """A failure reported to the caller as JSON."""


def read_creds(path: str = CREDS_PATH) -> dict:
    if not os.path.exists(path):
        raise ToolError(
            "Google credentials not configured. Please connect Google in the dashboard."
        )
    with open(path) as f:
        return json.load(f)


def write_creds(creds: dict, path: str = CREDS_PATH) -> None:
    os.makedirs(os.path.dirname(path), mode=0o700, exist_ok=True)
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as f:
        json.dump(creds, f, indent=2, sort_keys=True)


def needs_refresh(creds: dict, now: datetime) -> bool:
    """True when the access token expires within the refresh margin."""
    expiry = creds.get("tokenExpiry")
    if not expiry:
        return True
    try:
        expires_at = datetime.fromisoformat(expiry.replace("Z", "+00:00"))
    except ValueError:
        return True
    return expires_at - now < REFRESH_MARGIN


def _http_json(url: str, data: bytes | None = None, headers: dict | None = None, method: str | None = None) -> dict:
    request = urllib.request.Request(url, data=data, headers=headers or {}, method=method)
    try:
        with urllib.request.urlopen(request, timeout=30) as response:
            raw = response.read()
    except urllib.error.HTTPError as e:
        raise ToolError(f"Google API {e.code}: {e.read().decode(errors='replace')[:500]}") from e
    return json.loads(raw) if raw else {}


def get_access_token() -> str:
    creds = read_creds()
    if needs_refresh(creds, datetime.now(timezone.utc)):
        if not (creds.get("refreshToken") and creds.get("clientId") and creds.get("clientSecret")):
            raise ToolError("Cannot refresh token: missing refresh token or client credentials.")
        body = urllib.parse.urlencode({
            "client_id": creds["clientId"],
            "client_secret": creds["clientSecret"],
            "refresh_token": creds["refreshToken"],
            "grant_type": "refresh_token",
        }).encode()
        data = _http_json(
            TOKEN_URL,
            data=body,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
        )
        creds["accessToken"] = data["access_token"]
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=int(data.get("expires_in", 3600)))
        creds["tokenExpiry"] = expires_at.isoformat()
        write_creds(creds)
    return creds["accessToken"]


def gfetch(url: str, token: str, body: dict | None = None) -> dict:
    headers = {"Authorization": f"Bearer {token}", "Content-Type": "application/json"}
    data = json.dumps(body).encode() if body is not None else None
    return _http_json(url, data=data, headers=headers, method="POST" if body is not None else "GET")


def get_header(headers: list, name: str) -> str:
    for header in headers or []:
        if header.get("name", "").lower() == name.lower():
            return header.get("value", "")
    return ""


def decode_base64url(data: str) -> str:
    padded = data + "=" * (-len(data) % 4)
    return base64.urlsafe_b64decode(padded).decode("utf-8", errors="replace")


def strip_html(text: str) -> str:
    text = re.sub(r"(?is)<(style|script)[^>]*>.*?</\1>", "", text)
    text = re.sub(r"<[^>]+>", " ", text)
    return re.sub(r"\s+", " ", html.unescape(text)).strip()


# ---- commands ----


def mail_list(args: argparse.Namespace) -> list:
    token = get_access_token()
    params = {"maxResults": str(args.max)}
    if args.query:
        params["q"] = args.query
    listing = gfetch(f"{GMAIL_API}/messages?{urllib.parse.urlencode(params)}", token)
    emails = []
    for ref in (listing.get("messages") or [])[: args.max]:
        msg = gfetch(
            f"{GMAIL_API}/messages/{ref['id']}?format=metadata"
            "&metadataHeaders=Subject&metadataHeaders=From&metadataHeaders=Date",
            token,
        )
        headers = (msg.get("payload") or {}).get("headers") or []
        emails.append({
            "id": msg.get("id"),
            "subject": get_header(headers, "Subject") or "(no subject)",
            "from": get_header(headers, "From"),
            "date": get_header(headers, "Date"),
            "snippet": msg.get("snippet", ""),
        })
    return emails


def mail_read(args: argparse.Namespace) -> dict:
    token = get_access_token()
    msg = gfetch(f"{GMAIL_API}/messages/{args.message_id}?format=full", token)
    payload = msg.get("payload") or {}
    headers = payload.get("headers") or []
    parts = payload.get("parts") or []
    plain = next((p for p in parts if p.get("mimeType") == "text/plain"), None)
    rich = next((p for p in parts if p.get("mimeType") == "text/html"), None)
    if plain and plain.get("body", {}).get("data"):
        body = decode_base64url(plain["body"]["data"])
    elif rich and rich.get("body", {}).get("data"):
        body = strip_html(decode_base64url(rich["body"]["data"]))
    elif payload.get("body", {}).get("data"):
        body = decode_base64url(payload["body"]["data"])
    else:
        body = msg.get("snippet", "")
    if len(body) > MAX_BODY_CHARS:
        body = body[:MAX_BODY_CHARS] + "\n...(truncated)"
    return {
        "id": msg.get("id"),
        "subject": get_header(headers, "Subject") or "(no subject)",
        "from": get_header(headers, "From"),
        "to": get_header(headers, "To"),
        "date": get_header(headers, "Date"),
        "body": body,
    }


def mail_send(args: argparse.Namespace) -> dict:
    token = get_access_token()
    raw = "\r\n".join([
        f"To: {args.to}",
        f"Subject: {args.subject}",
        'Content-Type: text/plain; charset="UTF-8"',
        "",
        args.body,
    ])
    encoded = base64.urlsafe_b64encode(raw.encode()).decode().rstrip("=")
    result = gfetch(f"{GMAIL_API}/messages/send", token, body={"raw": encoded})
    return {"success": True, "messageId": result.get("id")}


def _event_time(value: dict | None) -> str:
    value = value or {}
    return value.get("dateTime") or value.get("date") or ""


def calendar_list(args: argparse.Namespace) -> list:
    token = get_access_token()
    params = {"singleEvents": "true", "orderBy": "startTime", "maxResults": str(args.max)}
    if args.start:
        params["timeMin"] = args.start
    if args.end:
        params["timeMax"] = args.end
    if not args.start and not args.end:
        midnight = datetime.now(timezone.utc).replace(hour=0, minute=0, second=0, microsecond=0)
        params["timeMin"] = midnight.isoformat()
    result = gfetch(f"{CALENDAR_API}/calendars/primary/events?{urllib.parse.urlencode(params)}", token)
    return [
        {
            "id": event.get("id"),
            "summary": event.get("summary") or "(no title)",
            "start": _event_time(event.get("start")),
            "end": _event_time(event.get("end")),
            "description": event.get("description", ""),
            "attendees": [a.get("email") for a in event.get("attendees") or []],
            "htmlLink": event.get("htmlLink", ""),
        }
        for event in result.get("items") or []
    ]


def calendar_create(args: argparse.Namespace) -> dict:
    token = get_access_token()
    body: dict = {
        "summary": args.summary,
        "start": {"dateTime": args.start},
        "end": {"dateTime": args.end},
    }
    if args.description:
        body["description"] = args.description
    if args.attendees:
        body["attendees"] = [{"email": a.strip()} for a in args.attendees.split(",") if a.strip()]
    event = gfetch(f"{CALENDAR_API}/calendars/primary/events", token, body=body)
    return {
        "id": event.get("id"),
        "htmlLink": event.get("htmlLink"),
        "summary": event.get("summary"),
        "start": _event_time(event.get("start")),
        "end": _event_time(event.get("end")),
    }


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="google_api")
    commands = parser.add_subparsers(dest="command", required=True)

    p = commands.add_parser("mail-list")
    p.add_argument("--query")
    p.add_argument("--max", type=int, default=10)
    p.set_defaults(func=mail_list)

    p = commands.add_parser("mail-read")
    p.add_argument("message_id")
    p.set_defaults(func=mail_read)

    p = commands.add_parser("mail-send")
    p.add_argument("--to", required=True)
    p.add_argument("--subject", required=True)
    p.add_argument("--body", required=True)
    p.set_defaults(func=mail_send)

    p = commands.add_parser("calendar-list")
    p.add_argument("--start")
    p.add_argument("--end")
    p.add_argument("--max", type=int, default=10)
    p.set_defaults(func=calendar_list)

    p = commands.add_parser("calendar-create")
    p.add_argument("--summary", required=True)
    p.add_argument("--start", required=True)
    p.add_argument("--end", required=True)
    p.add_argument("--description")
    p.add_argument("--attendees")
    p.set_defaults(func=calendar_create)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        result = args.func(args)
    except ToolError as e:
        print(json.dumps({"error": str(e)}), file=sys.stderr)
        return 1
    print(json.dumps(result, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(main())
