"""Readiness probes.

A probe answers one question: is this process ready right now? The
supervisor runs probes on an interval and caches the answer; nothing on
the health request path ever calls a probe directly.

Targets are written as URLs:
  ""                      — liveness only, ready while the process is alive
  tcp://host:port         — ready when a TCP connection is accepted
  http(s)://host:port/... — ready on any 2xx/3xx response
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from urllib.parse import urlsplit

import httpx


class ReadinessProbe(ABC):
    """Base class for readiness checks."""

    target: str = ""

    @abstractmethod
    async def check(self) -> bool:
        """Return True if the process is ready."""


class LivenessProbe(ReadinessProbe):
    """The supervisor only runs this while the process is alive."""

    async def check(self) -> bool:
        return True


class TcpProbe(ReadinessProbe):
    def __init__(self, host: str, port: int, timeout: float = 2.0) -> None:
        self.host = host
        self.port = port
        self.timeout = timeout
        self.target = f"tcp://{host}:{port}"

    async def check(self) -> bool:
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(self.host, self.port),
                timeout=self.timeout,
            )
        except (OSError, asyncio.TimeoutError):
            return False
        writer.close()
        try:
            await writer.wait_closed()
        except OSError:
            pass
        return True


class HttpProbe(ReadinessProbe):
    def __init__(self, url: str, timeout: float = 2.0) -> None:
        self.url = url
        self.timeout = timeout
        self.target = url

    async def check(self) -> bool:
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.get(self.url)
        except httpx.HTTPError:
            return False
        return resp.status_code < 400


def probe_from_url(url: str, timeout: float = 2.0) -> ReadinessProbe:
    """Build the probe for a readiness target. Raises ValueError on a bad target."""
    if not url:
        return LivenessProbe()

    parts = urlsplit(url)
    if parts.scheme == "tcp":
        try:
            port = parts.port
        except ValueError as e:
            raise ValueError(f"invalid port in readiness target '{url}'") from e
        if not parts.hostname or port is None:
            raise ValueError(f"readiness target '{url}' needs a host and port")
        return TcpProbe(parts.hostname, port, timeout=timeout)
    if parts.scheme in ("http", "https"):
        if not parts.hostname:
            raise ValueError(f"readiness target '{url}' needs a host")
        return HttpProbe(url, timeout=timeout)
    raise ValueError(
        f"unsupported readiness target '{url}' (use tcp://, http:// or https://)"
    )
