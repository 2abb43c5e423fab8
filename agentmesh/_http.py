"""
Minimal async HTTP helper on top of stdlib urllib.

Blocking urllib calls run in a worker thread; the awaiting side is bounded
by ``asyncio.wait_for`` so a late response surfaces as MeshTimeoutError and
the await stays cancelable. Non-2xx responses are returned, not raised —
callers map status codes to their own error types.
"""

from __future__ import annotations

import asyncio
import http.client
import json
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from typing import Any

from agentmesh.errors import MeshTimeoutError, TransportError

# Slack on top of the socket timeout before the await itself gives up
_AWAIT_GRACE = 1.0


@dataclass
class HTTPResult:
    """Status, headers and raw body of an HTTP response."""

    status: int
    body: bytes = b""
    headers: dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def header(self, name: str, default: str | None = None) -> str | None:
        """Case-insensitive header lookup."""
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return default

    def json(self) -> Any:
        """Decode the body as JSON. Returns None for an empty body."""
        if not self.body:
            return None
        return json.loads(self.body.decode("utf-8"))

    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")


def _urlopen(req: urllib.request.Request, timeout: float) -> HTTPResult:
    try:
        with urllib.request.urlopen(req, timeout=timeout) as resp:
            return HTTPResult(
                status=resp.status,
                body=resp.read(),
                headers=dict(resp.headers.items()),
            )
    except urllib.error.HTTPError as e:
        try:
            body = e.read()
        except (OSError, http.client.HTTPException):
            body = b""
        headers = dict(e.headers.items()) if e.headers else {}
        return HTTPResult(status=e.code, body=body, headers=headers)
    except urllib.error.URLError as e:
        if isinstance(e.reason, TimeoutError):
            raise MeshTimeoutError(f"{req.get_method()} {req.full_url} timed out") from e
        raise TransportError(f"Connection failed: {e.reason}") from e
    except TimeoutError as e:
        raise MeshTimeoutError(f"{req.get_method()} {req.full_url} timed out") from e
    except http.client.HTTPException as e:
        raise TransportError(f"Malformed or truncated response from {req.full_url}: {e!r}") from e
    except OSError as e:
        raise TransportError(f"Connection failed: {e}") from e


async def request(
    method: str,
    url: str,
    *,
    data: bytes | None = None,
    headers: dict[str, str] | None = None,
    timeout: float,
) -> HTTPResult:
    """Perform one HTTP request with a hard deadline.

    Raises:
        MeshTimeoutError: no response within ``timeout`` seconds.
        TransportError: connection refused, DNS failure, reset, ...
    """
    req = urllib.request.Request(url, data=data, headers=headers or {}, method=method)
    try:
        return await asyncio.wait_for(
            asyncio.to_thread(_urlopen, req, timeout),
            timeout=timeout + _AWAIT_GRACE,
        )
    except MeshTimeoutError:
        raise
    except asyncio.TimeoutError as e:
        raise MeshTimeoutError(f"{method} {url} timed out after {timeout:.1f}s") from e


def encode_multipart(data: bytes, boundary: str, filename: str = "memory") -> bytes:
    """Wrap raw bytes in a single-file multipart/form-data body."""
    head = (
        f"--{boundary}\r\n"
        f'Content-Disposition: form-data; name="file"; filename="{filename}"\r\n'
        "Content-Type: application/octet-stream\r\n\r\n"
    ).encode("ascii")
    tail = f"\r\n--{boundary}--\r\n".encode("ascii")
    return head + data + tail
