"""Exception hierarchy shared by the converge engine and its surfaces."""
from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Failure categories reported by control-plane calls."""

    unreachable = "unreachable"
    timeout = "timeout"
    permission_denied = "permission_denied"
    failed = "failed"


class ProvisionerError(Exception):
    """Base class for every error raised by the provisioner."""


class DeclarationError(ProvisionerError):
    """Raised when the desired-state declaration cannot be loaded or rendered."""


class DependencyError(ProvisionerError):
    """Raised when the resource dependency graph is cyclic or inconsistent."""


class ProbeError(ProvisionerError):
    """Raised when the control plane cannot answer a read-only probe.

    A probe error is never the same thing as "resource absent".
    """

    def __init__(self, resource: str, kind: ErrorKind, detail: str = "") -> None:
        if kind is ErrorKind.failed:
            kind = ErrorKind.unreachable
        self.resource = resource
        self.kind = kind
        self.detail = detail
        message = f"probe of {resource} failed ({kind.value})"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class ActionError(ProvisionerError):
    """Raised when a corrective action is rejected by the control plane."""

    def __init__(self, action: str, kind: Optional[ErrorKind], detail: str = "") -> None:
        self.action = action
        self.kind = kind or ErrorKind.failed
        self.detail = detail
        message = f"{action} failed ({self.kind.value})"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class RunInProgressError(ProvisionerError):
    """Raised when another run already holds the lock for this host."""


class TeardownNotConfirmed(ProvisionerError):
    """Raised when a destructive teardown is requested without confirmation."""
