"""Pytest configuration and shared fixtures."""
from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Any, Callable, Dict, Generator, List, Optional, Set
from unittest.mock import MagicMock, patch

import pytest
import yaml
from fastapi.testclient import TestClient

# Add project root to path
import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

# Keep the API's module-level repository out of the source tree
os.environ.setdefault("PROVISIONER_STATE_DIR", tempfile.mkdtemp(prefix="provisioner-state-"))

from provisioner.app import app
from provisioner.clients.base import ControlResult, content_hash
from provisioner.converge.runner import Orchestrator
from provisioner.errors import ErrorKind
from provisioner.storage import DesiredStateStore, RunRepository

MUTATIONS = {
    "install",
    "uninstall",
    "start",
    "stop",
    "write_config",
    "remove_config",
    "create_index",
    "remove_index",
}


class FakeControlPlane:
    """In-memory control plane that records every call it receives.

    ``failures`` maps a method name to the ControlResult it returns on every
    call, ``fail_once`` to a result returned on the next call only.
    ``drop_writes`` makes write_config report success without storing
    anything, and ``service_ports`` listen only while the service runs.
    ``config_ports`` maps a config name to the ports it declares; like the
    real product, those only open once the service is started after the
    file was written.
    """

    def __init__(self, name: str = "default") -> None:
        self.name = name
        self.installed = False
        self.running = False
        self.configs: Dict[str, str] = {}
        self.indexes: Dict[str, Dict[str, Any]] = {}
        self.open_ports: Set[int] = set()
        self.service_ports: Set[int] = set()
        self.config_ports: Dict[str, Set[int]] = {}
        self.loaded_configs: Dict[str, str] = {}
        self.modes: Dict[str, Optional[str]] = {}
        self.drop_writes = False
        self.failures: Dict[str, ControlResult] = {}
        self.fail_once: Dict[str, ControlResult] = {}
        self.calls: List[str] = []

    @property
    def mutations(self) -> List[str]:
        return [call for call in self.calls if call.split(":", 1)[0] in MUTATIONS]

    def _enter(self, method: str, arg: Optional[Any] = None) -> Optional[ControlResult]:
        self.calls.append(method if arg is None else f"{method}:{arg}")
        if method in self.fail_once:
            return self.fail_once.pop(method)
        return self.failures.get(method)

    def install(self) -> ControlResult:
        failure = self._enter("install")
        if failure:
            return failure
        self.installed = True
        return ControlResult.succeeded(detail="installed")

    def uninstall(self) -> ControlResult:
        failure = self._enter("uninstall")
        if failure:
            return failure
        self.installed = False
        self.running = False
        self.configs.clear()
        self.loaded_configs.clear()
        self.modes.clear()
        self.indexes.clear()
        return ControlResult.succeeded(detail="removed")

    def start(self) -> ControlResult:
        failure = self._enter("start")
        if failure:
            return failure
        if not self.installed:
            return ControlResult.failed(ErrorKind.failed, "not installed")
        self.running = True
        self.loaded_configs = dict(self.configs)
        return ControlResult.succeeded()

    def stop(self) -> ControlResult:
        failure = self._enter("stop")
        if failure:
            return failure
        self.running = False
        return ControlResult.succeeded()

    def status(self) -> ControlResult:
        failure = self._enter("status")
        if failure:
            return failure
        return ControlResult.succeeded(
            {"installed": self.installed, "running": self.running, "pid": 4242 if self.running else None}
        )

    def write_config(self, name: str, content: str, mode: Optional[str] = None) -> ControlResult:
        failure = self._enter("write_config", name)
        if failure:
            return failure
        digest = content_hash(content)
        if not self.drop_writes:
            self.configs[name] = digest
            self.modes[name] = mode
        return ControlResult.succeeded(digest)

    def read_config_hash(self, name: str) -> ControlResult:
        failure = self._enter("read_config_hash", name)
        if failure:
            return failure
        return ControlResult.succeeded(self.configs.get(name))

    def remove_config(self, name: str) -> ControlResult:
        failure = self._enter("remove_config", name)
        if failure:
            return failure
        self.configs.pop(name, None)
        return ControlResult.succeeded()

    def create_index(self, name: str, attrs: Dict[str, Any]) -> ControlResult:
        failure = self._enter("create_index", name)
        if failure:
            return failure
        self.indexes[name] = dict(attrs)
        return ControlResult.succeeded()

    def remove_index(self, name: str) -> ControlResult:
        failure = self._enter("remove_index", name)
        if failure:
            return failure
        self.indexes.pop(name, None)
        return ControlResult.succeeded()

    def list_indexes(self) -> ControlResult:
        failure = self._enter("list_indexes")
        if failure:
            return failure
        if not self.running:
            return ControlResult.failed(ErrorKind.unreachable, "management port closed")
        return ControlResult.succeeded(sorted(self.indexes))

    def port_listening(self, port: int) -> ControlResult:
        failure = self._enter("port_listening", port)
        if failure:
            return failure
        listening = port in self.open_ports or (self.running and port in self._serving_ports())
        return ControlResult.succeeded(listening)

    def _serving_ports(self) -> Set[int]:
        ports = set(self.service_ports)
        for name, declared in self.config_ports.items():
            if name in self.loaded_configs:
                ports |= declared
        return ports


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def fake_plane() -> FakeControlPlane:
    return FakeControlPlane("default")


@pytest.fixture
def core_declaration() -> Dict[str, Any]:
    """A service `core` and an index `main` that depends on it."""
    return {
        "version": 1,
        "converge": {"settle_attempts": 3, "settle_interval": 0},
        "resources": [
            {"kind": "service", "name": "core", "desired": {"installed": True, "running": True}},
            {"kind": "index", "name": "main", "depends_on": ["core"]},
        ],
    }


@pytest.fixture
def write_declaration(temp_dir: Path) -> Callable[[Dict[str, Any]], Path]:
    """Write a declaration dict to YAML and return its path."""

    def _write(data: Dict[str, Any], name: str = "declaration.yaml") -> Path:
        path = temp_dir / name
        path.write_text(yaml.safe_dump(data, sort_keys=False))
        return path

    return _write


@pytest.fixture
def repo(temp_dir: Path) -> RunRepository:
    return RunRepository(temp_dir / "state")


@pytest.fixture
def make_orchestrator(
    write_declaration: Callable[[Dict[str, Any]], Path],
    repo: RunRepository,
    fake_plane: FakeControlPlane,
) -> Callable[..., Orchestrator]:
    """Build an Orchestrator over a declaration, wired to fake control planes."""

    def _make(data: Dict[str, Any], planes: Optional[Dict[str, FakeControlPlane]] = None) -> Orchestrator:
        fleet = planes or {"default": fake_plane}
        return Orchestrator(
            store=DesiredStateStore(write_declaration(data)),
            repo=repo,
            control_plane_factory=lambda name, settings: fleet[name],
            sleep=MagicMock(),
        )

    return _make


@pytest.fixture
def api_client(
    write_declaration: Callable[[Dict[str, Any]], Path],
    core_declaration: Dict[str, Any],
    repo: RunRepository,
    fake_plane: FakeControlPlane,
) -> Generator[TestClient, None, None]:
    """Create a test client for the FastAPI app."""
    store = DesiredStateStore(write_declaration(core_declaration))
    # Patch the module-level objects used by app routes
    with patch("provisioner.app.store", store), patch("provisioner.app.repo", repo), patch(
        "provisioner.app.control_plane_factory", lambda name, settings: fake_plane
    ):
        with TestClient(app) as client:
            yield client


@pytest.fixture
def plane_factory() -> Callable[[str], FakeControlPlane]:
    """Build extra fake control planes for multi-target declarations."""
    return FakeControlPlane
