"""HTTP over UNIX sockets, with status checking."""

from __future__ import annotations

import http
import http.client
import io
import json
import os
import socket
from dataclasses import dataclass, field
from typing import Any, BinaryIO, Optional
from urllib.parse import urlsplit

HTTP_STATUS_ERROR_BODY_MAX_LENGTH = 64 * 1024


@dataclass
class ErrorJSON:
    """Error payload sent with a non-2XX status and JSON content type."""

    message: str = ""

    def to_dict(self) -> dict[str, str]:
        return {"message": self.message}


@dataclass
class Response:
    """A received HTTP response with its body buffered."""

    status_code: int
    body: BinaryIO = field(default_factory=io.BytesIO)
    headers: dict[str, str] = field(default_factory=dict)

    def read(self) -> bytes:
        return self.body.read()

    def json(self) -> Any:
        return json.loads(self.read())

    def close(self) -> None:
        self.body.close()


class BodyTooLargeError(ValueError):
    """Raised by :func:`read_at_most` when the stream holds too many bytes."""

    def __init__(self, max_bytes: int, data: bytes):
        super().__init__(f"expected at most {max_bytes} bytes, got more")
        self.data = data


class HTTPStatusError(Exception):
    """Raised for a non-2XX HTTP response."""

    def __init__(self, status_code: int, body: str):
        super().__init__(status_code, body)
        self.status_code = status_code
        self.body = body

    def _error_json_message(self) -> Optional[str]:
        if not self.body or len(self.body) >= HTTP_STATUS_ERROR_BODY_MAX_LENGTH:
            return None
        try:
            obj = json.loads(self.body)
        except ValueError:
            return None
        if obj is None:
            return ""
        if isinstance(obj, dict):
            message = obj.get("message")
            if message is None:
                return ""
            if isinstance(message, str):
                return message
        return None

    def __str__(self) -> str:
        message = self._error_json_message()
        if message is not None:
            return message
        try:
            text = http.HTTPStatus(self.status_code).phrase
        except ValueError:
            text = ""
        return f"unexpected HTTP status {text}, body={json.dumps(self.body)}"


class _UnixConnection(http.client.HTTPConnection):
    def __init__(self, socket_path: str, host: str, timeout: Optional[float]):
        super().__init__(host, timeout=timeout)
        self._socket_path = socket_path

    def connect(self) -> None:
        sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        try:
            sock.settimeout(self.timeout)
            sock.connect(self._socket_path)
        except OSError:
            sock.close()
            raise
        self.sock = sock


class UnixHTTPClient:
    """A minimal HTTP client that talks over a UNIX socket."""

    def __init__(self, socket_path: str, host: str = "localhost", timeout: Optional[float] = None):
        self.socket_path = socket_path
        self.host = host
        self.timeout = timeout

    def request(self, method: str, path: str) -> Response:
        conn = _UnixConnection(self.socket_path, self.host, self.timeout)
        try:
            conn.request(method, path)
            raw = conn.getresponse()
            body = raw.read()
            return Response(
                status_code=raw.status,
                body=io.BytesIO(body),
                headers={k: v for k, v in raw.getheaders()},
            )
        finally:
            conn.close()


def new_http_client_with_socket_path(socket_path: str) -> UnixHTTPClient:
    """Create a client for the socket path (without ``unix://``); the path must exist."""
    socket_path = os.fspath(socket_path)
    os.stat(socket_path)
    return UnixHTTPClient(socket_path)


def read_at_most(stream: BinaryIO, max_bytes: int) -> bytes:
    """Read up to ``max_bytes``; reaching the limit raises :class:`BodyTooLargeError`."""
    data = stream.read(max_bytes)
    if len(data) >= max_bytes:
        raise BodyTooLargeError(max_bytes, data)
    return data


def successful(resp: Optional[Response]) -> None:
    """Raise :class:`HTTPStatusError` unless the response status is 2XX."""
    if resp is None:
        raise ValueError("nil response")
    if resp.status_code // 100 != 2:
        try:
            data = read_at_most(resp.body, HTTP_STATUS_ERROR_BODY_MAX_LENGTH)
        except BodyTooLargeError as e:
            data = e.data
        raise HTTPStatusError(resp.status_code, data.decode("utf-8", "replace"))


def get(client: UnixHTTPClient, url: str) -> Response:
    """Issue GET for ``url`` and check that the status is 2XX."""
    parts = urlsplit(url)
    path = parts.path or "/"
    if parts.query:
        path += "?" + parts.query
    resp = client.request("GET", path)
    try:
        successful(resp)
    except Exception:
        resp.close()
        raise
    return resp