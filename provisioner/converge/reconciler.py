"""Plan and apply the corrective actions that converge one resource."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Mapping, Optional, Tuple

from ..clients.base import AgentControlPlane, ControlResult
from ..errors import ActionError, ProbeError
from ..models import ConvergeSettings, Resource, ResourceKind
from .probe import ObservedState, ResourceProbe
from .report import Outcome

log = logging.getLogger(__name__)


class ActionKind(str, Enum):
    install = "install"
    configure = "configure"
    start = "start"
    stop = "stop"
    uninstall = "uninstall"


@dataclass(frozen=True)
class Action:
    kind: ActionKind
    resource: str
    payload_hash: Optional[str] = None

    def __str__(self) -> str:
        return f"{self.kind.value}({self.resource})"


class Reconciler:
    """Drives a single resource toward its desired state.

    Each resource gets one pass of planned actions followed by a bounded
    settle poll. If it has not converged, or an action was rejected, it gets
    exactly one retry that re-probes, re-plans and forces the config rewrite
    for payload-carrying resources. Whatever is still wrong after that is
    reported, never retried again.
    """

    def __init__(
        self,
        control_planes: Mapping[str, AgentControlPlane],
        probe: ResourceProbe,
        settings: ConvergeSettings,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.control_planes = control_planes
        self.probe = probe
        self.settings = settings
        self.sleep = sleep

    # Planning -------------------------------------------------------------

    def plan(self, resource: Resource, observed: ObservedState, force: bool = False) -> List[Action]:
        """Minimal ordered actions: install, configure, start/stop; stop before uninstall."""
        if resource.is_passive:
            return []
        if resource.kind is ResourceKind.service:
            return self._plan_service(resource, observed, force)

        desired = resource.desired
        observed_present = bool(observed.attrs.get("present"))
        if not desired.get("present", True):
            if observed_present:
                return [Action(ActionKind.uninstall, resource.name)]
            return []

        if resource.kind is ResourceKind.index:
            if not observed_present:
                return [Action(ActionKind.install, resource.name)]
            return []

        wanted_hash = desired.get("content_hash")
        stale = observed.attrs.get("content_hash") != wanted_hash
        if not observed_present or stale or force:
            return [Action(ActionKind.configure, resource.name, payload_hash=wanted_hash)]
        return []

    @staticmethod
    def _plan_service(resource: Resource, observed: ObservedState, force: bool) -> List[Action]:
        desired = resource.desired
        want_installed = bool(desired.get("installed", True))
        want_running = want_installed and bool(desired.get("running", True))
        installed = bool(observed.attrs.get("installed"))
        running = bool(observed.attrs.get("running"))

        actions: List[Action] = []
        if not want_installed:
            if running:
                actions.append(Action(ActionKind.stop, resource.name))
            if installed:
                actions.append(Action(ActionKind.uninstall, resource.name))
            return actions

        if not installed:
            actions.append(Action(ActionKind.install, resource.name))
        if want_running:
            if running and force and not observed.matches(desired):
                # running but still mismatched after a full pass: restart it
                actions.append(Action(ActionKind.stop, resource.name))
                actions.append(Action(ActionKind.start, resource.name))
            elif not running:
                actions.append(Action(ActionKind.start, resource.name))
        elif running:
            actions.append(Action(ActionKind.stop, resource.name))
        return actions

    # Execution ------------------------------------------------------------

    def execute(self, resource: Resource, actions: List[Action], applied: List[str]) -> None:
        """Apply actions in order, stopping at the first one the control plane rejects."""
        plane = self.control_planes[resource.target]
        for action in actions:
            log.info("Applying %s on %s", action, plane.name)
            result = self._dispatch(plane, resource, action)
            if not result.ok:
                log.error("%s failed: %s", action, result.detail)
                raise ActionError(str(action), result.error, result.detail)
            applied.append(str(action))

    @staticmethod
    def _dispatch(plane: AgentControlPlane, resource: Resource, action: Action) -> ControlResult:
        kind = action.kind
        if kind is ActionKind.start:
            return plane.start()
        if kind is ActionKind.stop:
            return plane.stop()
        if kind is ActionKind.configure:
            return plane.write_config(
                resource.config_path, resource.payload or "", mode=resource.file_mode
            )
        if kind is ActionKind.install:
            if resource.kind is ResourceKind.index:
                return plane.create_index(resource.name, dict(resource.params))
            return plane.install()
        if resource.kind is ResourceKind.service:
            return plane.uninstall()
        if resource.kind is ResourceKind.index:
            return plane.remove_index(resource.name)
        return plane.remove_config(resource.config_path)

    # Convergence ----------------------------------------------------------

    def reconcile(self, resource: Resource) -> Outcome:
        """Converge one resource. A ProbeError on the first probe propagates to the caller."""
        if resource.is_passive:
            converged, observed = self._settle(resource)
            if converged:
                return Outcome.passed(resource, "observed")
            return Outcome.mismatch(resource, observed.diff(resource.desired).describe())

        observed = self.probe.probe(resource)
        if observed.matches(resource.desired):
            return Outcome.passed(resource, observed.note or "already converged")

        applied: List[str] = []
        try:
            self.execute(resource, self.plan(resource, observed), applied)
            converged, observed = self._settle(resource)
        except ActionError as exc:
            log.warning("%s: %s, retrying once", resource.name, exc)
            converged = False
        except ProbeError as exc:
            return Outcome.failed(resource, str(exc), applied)
        if converged:
            return Outcome.passed(resource, "converged", applied)

        log.warning("%s has not converged, reconfiguring once", resource.name)
        try:
            observed = self.probe.probe(resource)
            if observed.matches(resource.desired):
                return Outcome.passed(resource, "converged on retry", applied)
            self.execute(resource, self.plan(resource, observed, force=True), applied)
            converged, observed = self._settle(resource)
        except (ActionError, ProbeError) as exc:
            return Outcome.failed(resource, str(exc), applied)
        if converged:
            return Outcome.passed(resource, "converged on retry", applied)
        detail = f"not converged after retry: {observed.diff(resource.desired).describe()}"
        return Outcome.mismatch(resource, detail, applied)

    def verify(self, resource: Resource, poll: bool = False) -> Outcome:
        """Judge a resource without acting on it. ProbeError propagates."""
        if poll:
            converged, observed = self._settle(resource)
        else:
            observed = self.probe.probe(resource)
            converged = observed.matches(resource.desired)
        if converged:
            return Outcome.passed(resource, observed.note or "verified")
        return Outcome.mismatch(resource, observed.diff(resource.desired).describe())

    def restart(self, resource: Resource, reason: str) -> Outcome:
        """Stop and start a running service so it rereads changed config files."""
        applied: List[str] = []
        actions = [Action(ActionKind.stop, resource.name), Action(ActionKind.start, resource.name)]
        try:
            self.execute(resource, actions, applied)
            converged, observed = self._settle(resource)
        except (ActionError, ProbeError) as exc:
            return Outcome.failed(resource, f"restart failed: {exc}", applied)
        if converged:
            return Outcome.passed(resource, f"restarted to load {reason}", applied)
        detail = f"not running after restart: {observed.diff(resource.desired).describe()}"
        return Outcome.mismatch(resource, detail, applied)

    def _settle(self, resource: Resource) -> Tuple[bool, ObservedState]:
        attempts = self.settings.settle_attempts
        observed = self.probe.probe(resource)
        for attempt in range(1, attempts):
            if observed.matches(resource.desired):
                return True, observed
            log.debug(
                "%s not settled (attempt %d/%d), waiting %.1fs",
                resource.name,
                attempt,
                attempts,
                self.settings.settle_interval,
            )
            self.sleep(self.settings.settle_interval)
            observed = self.probe.probe(resource)
        return observed.matches(resource.desired), observed
