"""Shared test fixtures."""

import json
import os
import tempfile
from pathlib import Path

import httpx
import pytest

from idelink.config import IdelinkConfig
from idelink.discovery.cache import CapabilityCache
from idelink.discovery.registry import InstanceRegistry
from idelink.discovery.resolver import InstanceResolver, Selector
from idelink.relay.server import RelayServer
from idelink.relay.state import RelaySession
from idelink.relay.transport import HostTransport


@pytest.fixture
def temp_dir():
    """Temporary directory for tests."""
    with tempfile.TemporaryDirectory() as d:
        yield Path(d).resolve()


@pytest.fixture
def config(temp_dir):
    """Test configuration."""
    return IdelinkConfig(
        data_dir=temp_dir / "data",
        install_root=temp_dir / "install",
        discovery_attempts=2,
        discovery_interval=0.0,
        max_walk_depth=3,
    )


@pytest.fixture
def live_pids():
    """Process ids the registry treats as running."""
    return set()


@pytest.fixture
def registry(config, live_pids):
    """Registry whose liveness check consults ``live_pids``."""
    return InstanceRegistry(
        config.data_dir,
        config.record_prefix,
        config.record_suffix,
        pid_exists=lambda pid: pid in live_pids,
    )


@pytest.fixture
def cache(config):
    """Capability cache in the test data dir."""
    return CapabilityCache(config.cache_path)


@pytest.fixture
def workspace(temp_dir):
    """Working directory; the walk covers src, repo and temp_dir."""
    path = temp_dir / "repo" / "src"
    path.mkdir(parents=True)
    return path


class FakeHost:
    """In-process stand-in for host endpoints, keyed by port.

    Modes per port: "ok" (JSON-RPC echo), "down" (connection refused),
    "slow" (read timeout), "no_content" (204), "error" (HTTP 500).
    """

    def __init__(self):
        self.modes: dict[int, str] = {}
        self.requests: list[tuple[int, dict]] = []
        self.tools = [{"name": "get_status", "description": "status", "inputSchema": {"type": "object"}}]

    def handler(self, request: httpx.Request) -> httpx.Response:
        port = request.url.port
        mode = self.modes.get(port, "down")

        if mode == "down":
            raise httpx.ConnectError("Connection refused", request=request)
        if mode == "slow":
            raise httpx.ReadTimeout("timed out", request=request)
        if mode == "error":
            return httpx.Response(500, json={"error": "boom"})

        if request.url.path == "/health":
            return httpx.Response(200, json={"status": "ok", "port": port})

        body = json.loads(request.content)
        self.requests.append((port, body))
        if mode == "no_content":
            return httpx.Response(204)

        if body["method"] == "tools/list":
            result = {"tools": self.tools}
        else:
            result = {"content": [{"type": "text", "text": f"handled by {port}"}]}
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body.get("id"), "result": result})

    def transport(self, timeout: float = 5.0) -> HostTransport:
        client = httpx.AsyncClient(transport=httpx.MockTransport(self.handler))
        return HostTransport(timeout=timeout, client=client)


@pytest.fixture
def fake_host():
    """Fake host endpoints reachable through an httpx mock transport."""
    return FakeHost()


@pytest.fixture
def make_relay(config, registry, cache, workspace, fake_host):
    """Factory for relay servers wired to the fake host."""

    def _make(selector: Selector = Selector(), start_dir: Path = None) -> RelayServer:
        resolver = InstanceResolver(
            registry,
            start_dir=start_dir or workspace,
            descriptor_patterns=config.descriptor_patterns,
            max_walk_depth=config.max_walk_depth,
        )
        return RelayServer(
            session=RelaySession(resolver, selector),
            transport=fake_host.transport(),
            cache=cache,
            install_root=config.install_root,
        )

    return _make


@pytest.fixture
def publish(registry, live_pids):
    """Publish a live record, optionally with a fixed modification time."""

    def _publish(pid: int, port: int, project: str = "", mtime: float = None) -> Path:
        live_pids.add(pid)
        registry.publish(pid, port, project)
        path = registry.path_for(pid)
        if mtime is not None:
            os.utime(path, (mtime, mtime))
        return path

    return _publish
