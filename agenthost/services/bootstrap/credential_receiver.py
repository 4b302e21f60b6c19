"""Machine-local credential receiver.

This file is shipped verbatim onto every provisioned machine (see
``templates.credential_receiver_source``) and run by systemd with the
system Python, so it uses the standard library only.

Listens on 127.0.0.1; the reverse proxy forwards the internal credential
path to it. Requests must carry ``Authorization: Bearer <gateway token>``.

Environment:
    RECEIVER_TOKEN: the agent's gateway token
    RECEIVER_PORT: listen port (default 18790)
    CREDENTIALS_DIR: where provider token files are written
"""

import hmac
import json
import logging
import os
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer

logger = logging.getLogger("credential-receiver")

REQUIRED_FIELDS = ("accessToken", "refreshToken", "clientId", "clientSecret")
MAX_BODY_BYTES = 64 * 1024

# URL path -> file name under CREDENTIALS_DIR
CREDENTIAL_ROUTES = {
    "/credentials/google": "tokens.json",
}


def write_private_file(path: str, data: dict) -> None:
    """Atomically write JSON readable only by the owner (0600)."""
    directory = os.path.dirname(path)
    os.makedirs(directory, mode=0o700, exist_ok=True)
    tmp_path = path + ".tmp"
    fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w") as f:
        json.dump(data, f, indent=2, sort_keys=True)
    os.chmod(tmp_path, 0o600)
    os.replace(tmp_path, path)


def make_handler(token: str, credentials_dir: str) -> type:
    """Build a request handler class bound to a token and output directory."""

    class CredentialHandler(BaseHTTPRequestHandler):
        server_version = "credential-receiver/1"

        def log_message(self, format: str, *args: object) -> None:
            logger.info("%s %s", self.address_string(), format % args)

        def _send(self, status: int, body: dict) -> None:
            payload = json.dumps(body).encode()
            self.send_response(status)
            self.send_header("Content-Type", "application/json")
            self.send_header("Content-Length", str(len(payload)))
            self.end_headers()
            self.wfile.write(payload)

        def _authorized(self) -> bool:
            header = self.headers.get("Authorization", "")
            if not token or not header.startswith("Bearer "):
                return False
            return hmac.compare_digest(header[len("Bearer "):].encode(), token.encode())

        def do_GET(self) -> None:
            if self.path == "/health":
                self._send(200, {"status": "ok"})
            else:
                self._send(404, {"error": "not found"})

        def do_POST(self) -> None:
            file_name = CREDENTIAL_ROUTES.get(self.path)
            if file_name is None:
                self._send(404, {"error": "not found"})
                return
            if not self._authorized():
                self._send(401, {"error": "unauthorized"})
                return

            try:
                length = int(self.headers.get("Content-Length", "0"))
            except ValueError:
                length = -1
            if length <= 0 or length > MAX_BODY_BYTES:
                self._send(400, {"error": "invalid body"})
                return
            try:
                data = json.loads(self.rfile.read(length))
            except ValueError:
                self._send(400, {"error": "invalid JSON"})
                return
            if not isinstance(data, dict):
                self._send(400, {"error": "invalid body"})
                return

            missing = [name for name in REQUIRED_FIELDS if not data.get(name)]
            if missing:
                self._send(400, {"error": "missing fields", "fields": missing})
                return

            write_private_file(os.path.join(credentials_dir, file_name), data)
            logger.info("Stored credentials at %s", file_name)
            self._send(200, {"status": "ok"})

    return CredentialHandler


def main() -> None:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(message)s")
    token = os.environ.get("RECEIVER_TOKEN", "")
    port = int(os.environ.get("RECEIVER_PORT", "18790"))
    credentials_dir = os.environ.get("CREDENTIALS_DIR", "/root/.google-creds")
    if not token:
        raise SystemExit("RECEIVER_TOKEN is not set")
    server = ThreadingHTTPServer(("127.0.0.1", port), make_handler(token, credentials_dir))
    logger.info("Listening on 127.0.0.1:%d", port)
    server.serve_forever()


if __name__ == "__main__":
    main()
