"""Control plane for a Splunk Enterprise server or Universal Forwarder install."""
from __future__ import annotations

import logging
import re
import socket
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx

from ..errors import ErrorKind
from ..models import ControlPlaneSettings
from ..runtime.cli import ProductCLI
from .base import AgentControlPlane, ControlResult, content_hash
from .retry import retry_request

log = logging.getLogger(__name__)

STATUS_PATTERN = re.compile(r"splunkd is running \(PID: (?P<pid>\d+)\)")


class SplunkControlPlane(AgentControlPlane):
    """Drive one product installation through its CLI and management API."""

    def __init__(
        self,
        settings: ControlPlaneSettings,
        name: str = "default",
        cli: Optional[ProductCLI] = None,
        http: Optional[httpx.Client] = None,
    ) -> None:
        self.name = name
        self.settings = settings
        self.cli = cli or ProductCLI(
            settings.home,
            user=settings.user,
            use_sudo=settings.use_sudo,
            timeout=settings.command_timeout,
        )
        self.http = http or httpx.Client(
            verify=settings.verify_tls,
            timeout=httpx.Timeout(settings.request_timeout, connect=5.0),
        )

    @property
    def etc_dir(self) -> Path:
        return self.settings.home / "etc"

    @property
    def management_url(self) -> str:
        s = self.settings
        return f"{s.management_scheme}://{s.management_host}:{s.management_port}"

    def close(self) -> None:
        self.http.close()

    # Lifecycle ------------------------------------------------------------

    def install(self) -> ControlResult:
        if self.cli.available():
            return ControlResult.succeeded(detail="already installed")
        package = self.settings.package
        if package is None:
            return ControlResult.failed(ErrorKind.failed, "no installer package configured")
        if not package.exists():
            return ControlResult.failed(ErrorKind.failed, f"installer package {package} not found")

        if package.suffix == ".deb":
            result = self.cli.host("dpkg", "-i", str(package))
        else:
            result = self.cli.host("tar", "-xzf", str(package), "-C", str(self.settings.home.parent))
        if not result.ok:
            return result

        owner = f"{self.settings.user}:{self.settings.user}"
        result = self.cli.host("chown", "-R", owner, str(self.settings.home))
        if not result.ok:
            return result

        result = self.cli.host(
            str(self.cli.binary),
            "enable",
            "boot-start",
            "-user",
            self.settings.user,
            "--accept-license",
            "--answer-yes",
            "--no-prompt",
        )
        if not result.ok:
            return result
        log.info("Installed %s from %s", self.settings.home, package.name)
        return ControlResult.succeeded(detail=f"installed {package.name}")

    def uninstall(self) -> ControlResult:
        home = self.settings.home
        if not self.cli.available() and not home.exists():
            return ControlResult.succeeded(detail="not installed")
        if len(home.parts) < 3:
            return ControlResult.failed(
                ErrorKind.failed, f"refusing to remove shallow product home {home}"
            )

        if self.cli.available():
            stopped = self.cli.product("stop")
            if not stopped.ok:
                log.warning("Graceful stop before uninstall failed: %s", stopped.detail)
            disabled = self.cli.host(str(self.cli.binary), "disable", "boot-start")
            if not disabled.ok:
                log.warning("Could not disable boot-start: %s", disabled.detail)

        result = self.cli.host("rm", "-rf", str(home))
        if not result.ok:
            return result
        log.info("Removed %s", home)
        return ControlResult.succeeded(detail=f"removed {home}")

    def start(self) -> ControlResult:
        return self.cli.product("start", "--accept-license", "--answer-yes", "--no-prompt")

    def stop(self) -> ControlResult:
        return self.cli.product("stop")

    def status(self) -> ControlResult:
        if not self.cli.available():
            return ControlResult.succeeded({"installed": False, "running": False, "pid": None})
        result = self.cli.product("status")
        # `splunk status` exits non-zero when splunkd is stopped
        if not result.ok and result.error is not ErrorKind.failed:
            return result
        output = result.value or result.detail or ""
        match = STATUS_PATTERN.search(output)
        running = match is not None or "splunkd is running" in output
        pid = int(match.group("pid")) if match else None
        return ControlResult.succeeded({"installed": True, "running": running, "pid": pid})

    # Configuration files --------------------------------------------------

    def write_config(self, name: str, content: str, mode: Optional[str] = None) -> ControlResult:
        path = self._config_path(name)
        result = self.cli.as_user("mkdir", "-p", str(path.parent))
        if not result.ok:
            return result
        result = self.cli.as_user("tee", str(path), input=content)
        if not result.ok:
            return result
        if mode is not None:
            result = self.cli.as_user("chmod", mode, str(path))
            if not result.ok:
                return result
        return ControlResult.succeeded(content_hash(content), detail=f"wrote {path}")

    def read_config_hash(self, name: str) -> ControlResult:
        path = self._config_path(name)
        try:
            data = path.read_bytes()
        except FileNotFoundError:
            return ControlResult.succeeded(None)
        except PermissionError as exc:
            return ControlResult.failed(ErrorKind.permission_denied, str(exc))
        except OSError as exc:
            return ControlResult.failed(ErrorKind.failed, str(exc))
        return ControlResult.succeeded(content_hash(data))

    def remove_config(self, name: str) -> ControlResult:
        path = self._config_path(name)
        return self.cli.as_user("rm", "-f", str(path))

    # Indexes -------------------------------------------------------------

    def create_index(self, name: str, attrs: Dict[str, Any]) -> ControlResult:
        args: List[str] = ["add", "index", name]
        for key, value in attrs.items():
            args.extend([f"-{key}", str(value)])
        return self.cli.product(*args, auth=self._auth())

    def remove_index(self, name: str) -> ControlResult:
        return self.cli.product("remove", "index", name, auth=self._auth())

    def list_indexes(self) -> ControlResult:
        url = f"{self.management_url}/services/data/indexes"
        try:
            response = retry_request(
                self.http.get,
                url,
                params={"output_mode": "json", "count": 0},
                auth=self._auth(),
                max_retries=self.settings.request_retries,
            )
        except httpx.TimeoutException as exc:
            return ControlResult.failed(ErrorKind.timeout, f"{url}: {exc}")
        except httpx.TransportError as exc:
            return ControlResult.failed(ErrorKind.unreachable, f"{url}: {exc}")

        if response.status_code in (401, 403):
            return ControlResult.failed(
                ErrorKind.permission_denied, f"{url}: HTTP {response.status_code}"
            )
        if response.status_code >= 400:
            return ControlResult.failed(ErrorKind.failed, f"{url}: HTTP {response.status_code}")
        try:
            entries = response.json().get("entry", [])
        except ValueError as exc:
            return ControlResult.failed(ErrorKind.failed, f"{url}: invalid JSON ({exc})")
        names = [entry["name"] for entry in entries if entry.get("name")]
        return ControlResult.succeeded(names)

    # Network -------------------------------------------------------------

    def port_listening(self, port: int) -> ControlResult:
        try:
            with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
                sock.settimeout(1)
                return ControlResult.succeeded(sock.connect_ex(("127.0.0.1", port)) == 0)
        except socket.error as exc:
            return ControlResult.failed(ErrorKind.unreachable, str(exc))

    # helpers -------------------------------------------------------------

    def _config_path(self, name: str) -> Path:
        return self.etc_dir / name

    def _auth(self) -> tuple[str, str]:
        return (self.settings.username, self.settings.password)


def build_control_plane(name: str, settings: ControlPlaneSettings) -> SplunkControlPlane:
    """Default factory used by the orchestrator for each declared target."""
    return SplunkControlPlane(settings, name=name)
