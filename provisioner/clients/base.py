"""Base definitions for product control planes."""
from __future__ import annotations

import hashlib
from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

from ..errors import ErrorKind


@dataclass(frozen=True)
class ControlResult:
    """Tagged result of a control-plane call: Ok(value) or Err(kind, detail)."""

    ok: bool
    value: Any = None
    error: Optional[ErrorKind] = None
    detail: str = ""

    @classmethod
    def succeeded(cls, value: Any = None, detail: str = "") -> "ControlResult":
        return cls(ok=True, value=value, detail=detail)

    @classmethod
    def failed(cls, error: ErrorKind, detail: str = "", value: Any = None) -> "ControlResult":
        return cls(ok=False, value=value, error=error, detail=detail)


class AgentControlPlane(Protocol):
    """Management interface of one installed product instance.

    Every method returns a ControlResult instead of raising for expected
    failures. ``status`` yields ``{"installed", "running", "pid"}``,
    ``write_config`` and ``read_config_hash`` deal in content hashes, and
    config names are relative to the product's ``etc/`` directory. A
    ``mode`` passed to ``write_config`` is applied to the file after writing.
    """

    name: str

    def install(self) -> ControlResult:
        ...

    def uninstall(self) -> ControlResult:
        ...

    def start(self) -> ControlResult:
        ...

    def stop(self) -> ControlResult:
        ...

    def status(self) -> ControlResult:
        ...

    def write_config(self, name: str, content: str, mode: Optional[str] = None) -> ControlResult:
        ...

    def read_config_hash(self, name: str) -> ControlResult:
        ...

    def remove_config(self, name: str) -> ControlResult:
        ...

    def create_index(self, name: str, attrs: Dict[str, Any]) -> ControlResult:
        ...

    def remove_index(self, name: str) -> ControlResult:
        ...

    def list_indexes(self) -> ControlResult:
        ...

    def port_listening(self, port: int) -> ControlResult:
        ...


def content_hash(content: str | bytes) -> str:
    """SHA-256 hex digest used to compare config payloads."""
    data = content.encode("utf-8") if isinstance(content, str) else content
    return hashlib.sha256(data).hexdigest()
