"""Converge runner driving a whole declaration through apply, verify or teardown."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Sequence, Set

from ..clients.base import AgentControlPlane
from ..clients.splunk import build_control_plane
from ..errors import DeclarationError, DependencyError, ProbeError, TeardownNotConfirmed
from ..models import ControlPlaneSettings, Resource, ResourceKind, RunMode, RunState, StageEvent
from ..storage import DesiredStateStore, RunRepository
from .graph import dependency_map, order_resources
from .probe import ResourceProbe
from .reconciler import Reconciler
from .report import Outcome, OutcomeStatus, VerificationReport

log = logging.getLogger(__name__)

ControlPlaneFactory = Callable[[str, ControlPlaneSettings], AgentControlPlane]

EVENT_STATUS = {
    OutcomeStatus.PASS: "ok",
    OutcomeStatus.WARN: "warn",
    OutcomeStatus.FAIL: "failed",
}


@dataclass
class RunResult:
    run_id: str
    report: VerificationReport
    events: List[StageEvent] = field(default_factory=list)

    @property
    def state(self) -> RunState:
        return self.report.state

    @property
    def exit_code(self) -> int:
        return self.report.exit_code


class RunAborted(Exception):
    """Internal signal: stop the run and report what is left as failed."""


@dataclass
class Orchestrator:
    store: DesiredStateStore
    repo: RunRepository
    control_plane_factory: ControlPlaneFactory = build_control_plane
    sleep: Callable[[float], None] = time.sleep

    def apply(self, run_id: str) -> RunResult:
        return self.run(run_id, RunMode.apply)

    def verify(self, run_id: str) -> RunResult:
        return self.run(run_id, RunMode.verify)

    def teardown(self, run_id: str, confirm: bool = False) -> RunResult:
        return self.run(run_id, RunMode.teardown, confirm=confirm)

    def run(self, run_id: str, mode: RunMode, confirm: bool = False) -> RunResult:
        if mode is RunMode.teardown and not confirm:
            raise TeardownNotConfirmed("teardown removes every declared resource; pass confirm to proceed")
        with self.repo.lock(run_id):
            return self._run_locked(run_id, mode)

    # ------------------------------------------------------------------ phases

    def _run_locked(self, run_id: str, mode: RunMode) -> RunResult:
        result = RunResult(run_id=run_id, report=VerificationReport(mode=mode))
        self.repo.start_run(run_id, mode)
        log.info("Run %s started (%s)", run_id, mode.value)

        self._transition(result, RunState.loading)
        try:
            desired = self.store.load()
        except DeclarationError as exc:
            self._abort(result, [], str(exc))
            return self._finish(result)
        try:
            ordered = order_resources(desired.resources)
        except DependencyError as exc:
            self._abort(result, desired.resources, str(exc))
            return self._finish(result)
        self._record(result, "load", "ok", f"{len(ordered)} resources")

        planes = {
            name: self.control_plane_factory(name, settings)
            for name, settings in desired.targets.items()
        }
        try:
            removing: Set[str] = set()
            if mode is RunMode.teardown:
                sequence = [resource.absent() for resource in reversed(ordered)]
                blockers = dependency_map(ordered, reverse=True)
                removing = {r.target for r in ordered if r.kind is ResourceKind.service}
            else:
                sequence = list(ordered)
                blockers = dependency_map(ordered)
            probe = ResourceProbe(planes, removing=removing)
            reconciler = Reconciler(planes, probe, desired.converge, sleep=self.sleep)

            try:
                if mode is not RunMode.verify:
                    self._transition(result, RunState.reconciling)
                    self._reconcile_all(result, reconciler, sequence, blockers)
                self._transition(result, RunState.verifying)
                self._verify_all(result, reconciler, sequence, blockers)
            except RunAborted as exc:
                self._abort(result, sequence, str(exc))
                return self._finish(result)
        finally:
            for plane in planes.values():
                close = getattr(plane, "close", None)
                if callable(close):
                    close()

        self._transition(result, RunState.completed)
        return self._finish(result)

    def _reconcile_all(
        self,
        result: RunResult,
        reconciler: Reconciler,
        sequence: Sequence[Resource],
        blockers: Dict[str, List[str]],
    ) -> None:
        report = result.report
        services: Dict[str, Resource] = {}
        for resource in sequence:
            if resource.kind is ResourceKind.service and resource.desired.get("running"):
                services.setdefault(resource.target, resource)
        # target -> payload resources rewritten since its service last (re)started
        pending: Dict[str, List[str]] = {}

        for resource in sequence:
            if self._skip_if_blocked(result, resource, blockers, "reconcile"):
                continue
            if resource.is_passive and report.mode is RunMode.teardown:
                # judged once everything it observes has been torn down
                continue
            if resource.is_passive:
                self._restart_pending(result, reconciler, services, pending, resource.target)
            stage = f"reconcile.{resource.name}"
            self._record(result, stage, "started", resource.kind.value)
            try:
                outcome = reconciler.reconcile(resource)
            except ProbeError as exc:
                self._probe_failed(result, resource, stage, exc)
                continue
            report.record(outcome)
            self._record_outcome(result, stage, outcome)
            if resource.carries_payload and outcome.actions:
                pending.setdefault(resource.target, []).append(resource.name)

        for target in sorted(pending):
            self._restart_pending(result, reconciler, services, pending, target)

    def _restart_pending(
        self,
        result: RunResult,
        reconciler: Reconciler,
        services: Dict[str, Resource],
        pending: Dict[str, List[str]],
        target: str,
    ) -> None:
        """Restart the service of ``target`` once for all config rewritten on it so far."""
        service = services.get(target)
        if service is None or not pending.get(target):
            return
        previous = result.report.get(service.name)
        if previous is None:
            return
        changed = pending.pop(target)
        if previous.status is OutcomeStatus.FAIL:
            log.warning(
                "Not restarting %s after a failure; %s not loaded", service.name, ", ".join(changed)
            )
            return

        stage = f"restart.{service.name}"
        reason = ", ".join(changed)
        self._record(result, stage, "started", reason)
        outcome = reconciler.restart(service, reason)
        outcome = outcome.model_copy(update={"actions": previous.actions + outcome.actions})
        result.report.record(outcome)
        self._record_outcome(result, stage, outcome)
        if outcome.status is OutcomeStatus.FAIL and service.required:
            raise RunAborted(f"required resource {service.name}: {outcome.detail}")

    def _verify_all(
        self,
        result: RunResult,
        reconciler: Reconciler,
        sequence: Sequence[Resource],
        blockers: Dict[str, List[str]],
    ) -> None:
        report = result.report
        for resource in sequence:
            previous = report.get(resource.name)
            if previous is not None and previous.status is OutcomeStatus.FAIL:
                continue
            if previous is None and self._skip_if_blocked(result, resource, blockers, "verify"):
                continue
            stage = f"verify.{resource.name}"
            poll = resource.is_passive and report.mode is RunMode.teardown
            try:
                outcome = reconciler.verify(resource, poll=poll)
            except ProbeError as exc:
                self._probe_failed(result, resource, stage, exc)
                continue
            if previous is not None:
                update = {"actions": previous.actions}
                if outcome.status is OutcomeStatus.PASS:
                    update["detail"] = previous.detail
                outcome = outcome.model_copy(update=update)
            report.record(outcome)
            self._record_outcome(result, stage, outcome)

    # ------------------------------------------------------------------ helpers

    def _skip_if_blocked(
        self,
        result: RunResult,
        resource: Resource,
        blockers: Dict[str, List[str]],
        phase: str,
    ) -> bool:
        report = result.report
        for dependency in blockers.get(resource.name, []):
            outcome = report.get(dependency)
            if outcome is not None and outcome.status is OutcomeStatus.FAIL:
                skipped = Outcome.blocked(resource, dependency)
                report.record(skipped)
                self._record(result, f"{phase}.{resource.name}", "skipped", skipped.detail)
                log.warning("Skipping %s: %s", resource.name, skipped.detail)
                return True
        return False

    def _probe_failed(self, result: RunResult, resource: Resource, stage: str, exc: ProbeError) -> None:
        outcome = Outcome.failed(resource, str(exc))
        result.report.record(outcome)
        self._record_outcome(result, stage, outcome)
        if resource.required:
            raise RunAborted(f"required resource {resource.name}: {exc}")

    def _abort(self, result: RunResult, resources: Sequence[Resource], reason: str) -> None:
        report = result.report
        for resource in resources:
            if report.get(resource.name) is None:
                report.record(Outcome.failed(resource, f"run aborted: {reason}"))
        report.aborted = True
        report.abort_reason = reason
        log.error("Run %s aborted: %s", result.run_id, reason)
        self._transition(result, RunState.aborted, reason)

    def _finish(self, result: RunResult) -> RunResult:
        report = result.report
        report.finished_at = datetime.now(timezone.utc)
        lines = report.summary_lines()
        self.repo.save_report(report)
        self.repo.finalize_run(result.run_id, ok=report.exit_code != 2, summary=lines[-1])
        log.info("Run %s finished with exit code %d", result.run_id, report.exit_code)
        return result

    def _transition(self, result: RunResult, state: RunState, detail: Optional[str] = None) -> None:
        result.report.state = state
        status = "failed" if state is RunState.aborted else "ok"
        log.info("Run %s -> %s", result.run_id, state.value)
        self._record(result, f"state.{state.value}", status, detail)

    def _record_outcome(self, result: RunResult, stage: str, outcome: Outcome) -> None:
        self._record(result, stage, EVENT_STATUS[outcome.status], outcome.detail or None)

    def _record(self, result: RunResult, stage: str, status: str, detail: Optional[str] = None) -> None:
        event = StageEvent(stage=stage, status=status, detail=detail)
        result.events.append(event)
        self.repo.append_run_event(result.run_id, event)
