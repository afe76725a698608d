"""Utilities for invoking the product CLI and privileged host commands."""
from __future__ import annotations

import logging
import subprocess
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from ..clients.base import ControlResult
from ..errors import ErrorKind

log = logging.getLogger(__name__)


class ProductCLI:
    """Wrapper around ``$HOME/bin/splunk`` and the host commands around it."""

    def __init__(
        self,
        home: Path,
        user: str = "splunk",
        use_sudo: bool = True,
        timeout: float = 300.0,
    ) -> None:
        self.home = home
        self.user = user
        self.use_sudo = use_sudo
        self.timeout = timeout
        self.binary = home / "bin" / "splunk"

    def available(self) -> bool:
        return self.binary.exists()

    def product(self, *args: str, auth: Optional[Tuple[str, str]] = None) -> ControlResult:
        """Run a product subcommand as the product user."""
        command = [str(self.binary), *args]
        secrets: List[str] = []
        if auth is not None:
            credential = f"{auth[0]}:{auth[1]}"
            command.extend(["-auth", credential])
            secrets.append(credential)
        return self._run(self._as_user(command), secrets=secrets)

    def as_user(self, *args: str, input: Optional[str] = None) -> ControlResult:
        """Run a host command (mkdir, tee, chmod, rm) as the product user."""
        return self._run(self._as_user(list(args)), input=input)

    def host(self, *args: str) -> ControlResult:
        """Run a privileged host command (dpkg, tar, chown)."""
        command = list(args)
        if self.use_sudo:
            command = ["sudo", *command]
        return self._run(command)

    def _as_user(self, command: List[str]) -> List[str]:
        if self.use_sudo:
            return ["sudo", "-u", self.user, *command]
        return command

    def _run(
        self,
        command: List[str],
        input: Optional[str] = None,
        secrets: Sequence[str] = (),
    ) -> ControlResult:
        printable = " ".join("***" if part in secrets else part for part in command)
        log.debug("Running %s", printable)
        try:
            process = subprocess.run(
                command,
                input=input,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except FileNotFoundError:
            return ControlResult.failed(ErrorKind.unreachable, f"{command[0]} not found")
        except PermissionError as exc:
            return ControlResult.failed(ErrorKind.permission_denied, str(exc))
        except subprocess.TimeoutExpired:
            return ControlResult.failed(
                ErrorKind.timeout, f"{printable} timed out after {self.timeout:.0f}s"
            )

        stdout = process.stdout or ""
        success = process.returncode == 0
        detail = stdout.strip() if success else (process.stderr or "").strip()
        if not detail:
            detail = "ok" if success else f"exit status {process.returncode}"
        if success:
            return ControlResult.succeeded(stdout, detail)
        kind = ErrorKind.failed
        if "permission denied" in detail.lower():
            kind = ErrorKind.permission_denied
        return ControlResult.failed(kind, detail, value=stdout)
