"""Read-only probes that observe the actual state of a declared resource."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import AbstractSet, Any, Dict, Mapping, Optional

from ..clients.base import AgentControlPlane, ControlResult
from ..errors import ErrorKind, ProbeError
from ..models import Resource, ResourceKind
from .diff import AttributeDiff, compute_diff

log = logging.getLogger(__name__)


@dataclass
class ObservedState:
    """What a probe saw. Built fresh on every probe and never cached."""

    present: bool
    attrs: Dict[str, Any] = field(default_factory=dict)
    note: Optional[str] = None

    def diff(self, desired: Mapping[str, Any]) -> AttributeDiff:
        return compute_diff(desired, self.attrs)

    def matches(self, desired: Mapping[str, Any]) -> bool:
        return not self.diff(desired).has_changes


class ResourceProbe:
    """Observes resources through their control plane without changing anything.

    ``removing`` names the targets whose product is being uninstalled in this
    run. A stopped product there cannot list its indexes, and its indexes go
    away with the product, so they are observed as absent.
    """

    def __init__(
        self,
        control_planes: Mapping[str, AgentControlPlane],
        removing: AbstractSet[str] = frozenset(),
    ) -> None:
        self.control_planes = control_planes
        self.removing = removing

    def probe(self, resource: Resource) -> ObservedState:
        plane = self.control_planes[resource.target]
        if resource.kind is ResourceKind.service:
            observed = self._probe_service(plane, resource)
        elif resource.kind is ResourceKind.index:
            observed = self._probe_index(plane, resource)
        elif resource.kind is ResourceKind.port:
            observed = self._probe_port(plane, resource)
        else:
            observed = self._probe_payload(plane, resource)
        log.debug("Probed %s %s: %s", resource.kind.value, resource.name, observed.attrs)
        return observed

    def _probe_service(self, plane: AgentControlPlane, resource: Resource) -> ObservedState:
        status = self._call(resource, plane.status())
        attrs: Dict[str, Any] = {
            "installed": bool(status.get("installed")),
            "running": bool(status.get("running")),
            "pid": status.get("pid"),
        }
        port = resource.desired.get("port")
        if port is not None:
            listening = self._call(resource, plane.port_listening(int(port)))
            attrs["port"] = port if listening else None
        return ObservedState(present=attrs["installed"], attrs=attrs)

    def _probe_index(self, plane: AgentControlPlane, resource: Resource) -> ObservedState:
        status = self._call(resource, plane.status())
        if not status.get("installed"):
            # Indexes of an uninstalled product are simply absent.
            return ObservedState(present=False, attrs={"present": False})
        if not status.get("running") and resource.target in self.removing:
            return ObservedState(
                present=False, attrs={"present": False}, note="removed with the stopped product"
            )
        names = self._call(resource, plane.list_indexes()) or []
        present = resource.name in names
        return ObservedState(present=present, attrs={"present": present})

    def _probe_port(self, plane: AgentControlPlane, resource: Resource) -> ObservedState:
        listening = bool(self._call(resource, plane.port_listening(int(resource.params["port"]))))
        return ObservedState(present=listening, attrs={"listening": listening})

    def _probe_payload(self, plane: AgentControlPlane, resource: Resource) -> ObservedState:
        digest = self._call(resource, plane.read_config_hash(resource.config_path))
        present = digest is not None
        return ObservedState(present=present, attrs={"present": present, "content_hash": digest})

    @staticmethod
    def _call(resource: Resource, result: ControlResult) -> Any:
        if not result.ok:
            raise ProbeError(resource.name, result.error or ErrorKind.unreachable, result.detail)
        return result.value

