"""Pydantic models describing the desired-state declaration and run history."""
from __future__ import annotations

import re
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class ResourceKind(str, Enum):
    service = "service"
    index = "index"
    config = "config"
    forward_target = "forward_target"
    deploy_target = "deploy_target"
    port = "port"


# Kinds whose desired state is a config payload compared by content hash.
PAYLOAD_KINDS = {ResourceKind.config, ResourceKind.forward_target, ResourceKind.deploy_target}

# Kinds the engine can only observe; no action can change them directly.
PASSIVE_KINDS = {ResourceKind.port}

DEFAULT_CONFIG_PATHS = {
    ResourceKind.forward_target: "system/local/outputs.conf",
    ResourceKind.deploy_target: "system/local/deploymentclient.conf",
}

# Octal permission bits applied after a config write, "0755" or "755".
FILE_MODE = re.compile(r"^0?[0-7]{3}$")

ABSENT_STATE: Dict[ResourceKind, Dict[str, Any]] = {
    ResourceKind.service: {"installed": False, "running": False},
    ResourceKind.index: {"present": False},
    ResourceKind.config: {"present": False},
    ResourceKind.forward_target: {"present": False},
    ResourceKind.deploy_target: {"present": False},
    ResourceKind.port: {"listening": False},
}


class RunMode(str, Enum):
    apply = "apply"
    verify = "verify"
    teardown = "teardown"


class RunState(str, Enum):
    init = "INIT"
    loading = "LOADING_DESIRED_STATE"
    reconciling = "RECONCILING"
    verifying = "VERIFYING"
    completed = "COMPLETED"
    aborted = "ABORTED"


class ControlPlaneSettings(BaseModel):
    """Connection and layout settings for one product installation."""

    home: Path = Path("/opt/splunk")
    user: str = "splunk"
    use_sudo: bool = True
    package: Optional[Path] = None
    command_timeout: float = Field(default=300.0, gt=0)
    management_host: str = "127.0.0.1"
    management_port: int = Field(default=8089, ge=1, le=65535)
    management_scheme: Literal["http", "https"] = "https"
    verify_tls: bool = False
    username: str = "admin"
    password: str = Field(default="changeme", repr=False)
    request_timeout: float = Field(default=10.0, gt=0)
    request_retries: int = Field(default=2, ge=0)

    @field_validator("home")
    @classmethod
    def ensure_absolute(cls, value: Path) -> Path:
        if not value.is_absolute():
            raise ValueError("Product home must be an absolute path")
        return value


class ConvergeSettings(BaseModel):
    """Bounded polling window used while waiting for state to settle."""

    settle_attempts: int = Field(default=60, ge=1)
    settle_interval: float = Field(default=5.0, ge=0)


class Resource(BaseModel):
    """A named unit of desired configuration, immutable for the whole run."""

    model_config = ConfigDict(frozen=True)

    kind: ResourceKind
    name: str = Field(min_length=1)
    target: str = "default"
    desired: Dict[str, Any] = Field(default_factory=dict)
    depends_on: List[str] = Field(default_factory=list)
    params: Dict[str, Any] = Field(default_factory=dict)
    payload: Optional[str] = None
    required: bool = False
    on_mismatch: Literal["fail", "warn"] = "fail"

    @model_validator(mode="after")
    def check_params(self) -> "Resource":
        if self.kind is ResourceKind.port:
            port = self.params.get("port")
            if not isinstance(port, int) or not 1 <= port <= 65535:
                raise ValueError(f"port resource {self.name} needs params.port in 1-65535")
        elif self.kind is ResourceKind.config:
            path = self.params.get("path")
            if not path:
                raise ValueError(f"config resource {self.name} needs params.path")
        elif self.kind in (ResourceKind.forward_target, ResourceKind.deploy_target):
            if not self.params.get("host") or not self.params.get("port"):
                raise ValueError(f"{self.kind.value} {self.name} needs params.host and params.port")
        if self.kind in PAYLOAD_KINDS:
            path = str(self.params.get("path") or "")
            if path.startswith("/") or ".." in Path(path).parts:
                raise ValueError(f"config path for {self.name} must stay inside the product etc/ tree")
            mode = self.params.get("mode")
            if mode is not None and not FILE_MODE.match(str(mode)):
                raise ValueError(
                    f"config {self.name} has invalid params.mode {mode!r}; quote an octal string like \"0755\""
                )
        return self

    @property
    def is_passive(self) -> bool:
        return self.kind in PASSIVE_KINDS

    @property
    def carries_payload(self) -> bool:
        return self.kind in PAYLOAD_KINDS

    @property
    def config_path(self) -> str:
        return str(self.params.get("path") or DEFAULT_CONFIG_PATHS.get(self.kind, ""))

    @property
    def file_mode(self) -> Optional[str]:
        mode = self.params.get("mode")
        return str(mode) if mode is not None else None

    def absent(self) -> "Resource":
        """Return a copy of this resource whose desired state is "gone"."""
        return self.model_copy(update={"desired": dict(ABSENT_STATE[self.kind])})


class DesiredState(BaseModel):
    """The full declaration: control-plane targets, polling window, resources."""

    version: int = 1
    targets: Dict[str, ControlPlaneSettings] = Field(
        default_factory=lambda: {"default": ControlPlaneSettings()}
    )
    converge: ConvergeSettings = Field(default_factory=ConvergeSettings)
    resources: List[Resource] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_targets(self) -> "DesiredState":
        for resource in self.resources:
            if resource.target not in self.targets:
                raise ValueError(
                    f"resource {resource.name} targets unknown control plane {resource.target!r}"
                )
        return self

    def public_dump(self) -> Dict[str, Any]:
        """Serialize without credentials or rendered payloads."""
        data = self.model_dump(mode="json", exclude={"resources": {"__all__": {"payload"}}})
        for target in data["targets"].values():
            target.pop("password", None)
        return data


class StageEvent(BaseModel):
    stage: str
    status: Literal["started", "ok", "warn", "failed", "skipped"]
    detail: Optional[str] = None


class RunRecord(BaseModel):
    run_id: str
    mode: Optional[RunMode] = None
    ok: Optional[bool] = None
    events: List[StageEvent] = Field(default_factory=list)
    summary: Optional[str] = None
