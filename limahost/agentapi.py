"""The host agent's HTTP API: data types, client and server."""

from __future__ import annotations

import io
import json
import logging
import socketserver
import threading
from dataclasses import dataclass
from http.server import BaseHTTPRequestHandler
from typing import Any, Protocol
from urllib.parse import urlsplit

from .httpclient import (
    ErrorJSON,
    Response,
    UnixHTTPClient,
    get,
    new_http_client_with_socket_path,
)

__all__ = [
    "Info",
    "HostAgentClient",
    "new_host_agent_client",
    "Backend",
    "serve",
]

_log = logging.getLogger(__name__)


@dataclass
class Info:
    """Information about a running host agent."""

    ssh_local_port: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {"sshLocalPort": self.ssh_local_port} if self.ssh_local_port else {}

    @classmethod
    def from_dict(cls, data: Any) -> "Info":
        if not isinstance(data, dict):
            raise ValueError("info: expected an object")
        port = data.get("sshLocalPort") or 0
        if isinstance(port, bool) or not isinstance(port, int):
            raise ValueError("info.sshLocalPort: expected an integer")
        return cls(ssh_local_port=port)


class HostAgentClient:
    """Client of the host agent API (version v1)."""

    def __init__(self, http_client: UnixHTTPClient, version: str = "v1",
                 dummy_host: str = "lima-hostagent"):
        self.http_client = http_client
        self.version = version
        self.dummy_host = dummy_host

    def info(self) -> Info:
        resp = get(self.http_client, f"http://{self.dummy_host}/{self.version}/info")
        try:
            return Info.from_dict(resp.json())
        finally:
            resp.close()


def new_host_agent_client(socket_path: str) -> HostAgentClient:
    """Create a client for the UNIX socket at ``socket_path`` (which must exist)."""
    return HostAgentClient(new_http_client_with_socket_path(socket_path))


class _Agent(Protocol):
    def info(self) -> Info: ...


def _json_response(status: int, body: bytes) -> Response:
    return Response(status, io.BytesIO(body), {"Content-Type": "application/json"})


class Backend:
    """Request handlers backed by a host agent."""

    def __init__(self, agent: _Agent):
        self.agent = agent

    def _on_error(self, err: Exception, status: int) -> Response:
        body = json.dumps(ErrorJSON(message=str(err)).to_dict()) + "\n"
        return _json_response(status, body.encode())

    def get_info(self) -> Response:
        """Handle ``GET /v1/info``."""
        try:
            info = self.agent.info()
            body = json.dumps(info.to_dict(), separators=(",", ":")).encode()
        except Exception as e:  # noqa: BLE001 - reported to the client
            return self._on_error(e, 500)
        return _json_response(200, body)

    def handle(self, method: str, path: str) -> Response:
        """Route a request to its handler."""
        if path == "/v1/info":
            if method != "GET":
                return Response(405, io.BytesIO(b""), {})
            return self.get_info()
        return Response(404, io.BytesIO(b"404 page not found\n"),
                        {"Content-Type": "text/plain; charset=utf-8"})


def serve(socket_path: str, backend: Backend) -> socketserver.ThreadingUnixStreamServer:
    """Serve ``backend`` on a UNIX socket in a background thread.

    Returns the server; call ``shutdown()`` and ``server_close()`` to stop it.
    """

    class _Handler(BaseHTTPRequestHandler):
        def _dispatch(self) -> None:
            resp = backend.handle(self.command, urlsplit(self.path).path)
            body = resp.read()
            self.send_response(resp.status_code)
            for key, value in resp.headers.items():
                self.send_header(key, value)
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            if self.command != "HEAD":
                self.wfile.write(body)

        do_GET = do_POST = do_PUT = do_DELETE = do_PATCH = do_HEAD = _dispatch

        def log_message(self, format: str, *args: Any) -> None:  # noqa: A002
            _log.debug(format, *args)

    server = socketserver.ThreadingUnixStreamServer(socket_path, _Handler)
    server.daemon_threads = True
    threading.Thread(target=server.serve_forever, daemon=True).start()
    return server