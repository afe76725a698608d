"""Helpers for reading the desired-state declaration and writing run history."""
from __future__ import annotations

import json
import logging
import os
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Tuple

import yaml
from pydantic import ValidationError

from .clients.base import content_hash
from .converge.report import VerificationReport
from .errors import DeclarationError, RunInProgressError
from .models import DesiredState, Resource, ResourceKind, RunMode, RunRecord, StageEvent
from .rendering import ConfigRenderer

log = logging.getLogger(__name__)

DEFAULT_DESIRED: Dict[ResourceKind, Dict[str, Any]] = {
    ResourceKind.service: {"installed": True, "running": True},
    ResourceKind.index: {"present": True},
    ResourceKind.config: {"present": True},
    ResourceKind.forward_target: {"present": True},
    ResourceKind.deploy_target: {"present": True},
    ResourceKind.port: {"listening": True},
}


class DesiredStateStore:
    """Loads a YAML declaration once per run and normalizes its resources."""

    def __init__(self, path: Path, renderer: Optional[ConfigRenderer] = None) -> None:
        self.path = path
        self.renderer = renderer

    def load(self) -> DesiredState:
        if not self.path.exists():
            raise DeclarationError(f"Missing desired-state declaration at {self.path}")
        try:
            data = yaml.safe_load(self.path.read_text())
        except yaml.YAMLError as exc:
            raise DeclarationError(f"{self.path} is not valid YAML: {exc}") from exc
        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise DeclarationError(f"{self.path} must contain a mapping at the top level")

        try:
            declared = DesiredState.model_validate(data)
        except ValidationError as exc:
            raise DeclarationError(f"{self.path} is invalid:\n{exc}") from exc

        renderer = self.renderer or ConfigRenderer(search_paths=[self.path.parent])
        resources = [self._normalize(resource, renderer) for resource in declared.resources]
        log.info("Loaded %d resources from %s", len(resources), self.path)
        return declared.model_copy(update={"resources": resources})

    @staticmethod
    def _normalize(resource: Resource, renderer: ConfigRenderer) -> Resource:
        desired = {**DEFAULT_DESIRED[resource.kind], **resource.desired}
        if resource.kind is ResourceKind.service and not desired.get("installed"):
            desired["running"] = False
        update: Dict[str, Any] = {"desired": desired}

        if resource.carries_payload:
            payload = renderer.render(resource)
            update["payload"] = payload
            if desired.get("present"):
                desired["content_hash"] = content_hash(payload)
            else:
                desired.pop("content_hash", None)
        return resource.model_copy(update=update)


class RunRepository:
    """File-backed run history, last report and the per-host run lock."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self.state_path = root / "state.json"
        self.report_path = root / "last_report.json"
        self.lock_path = root / "run.lock"
        self.root.mkdir(parents=True, exist_ok=True)

    def load_state(self) -> dict[str, Any]:
        if not self.state_path.exists():
            return {}
        return json.loads(self.state_path.read_text())

    def save_state(self, state: dict[str, Any]) -> None:
        self.state_path.write_text(json.dumps(state, indent=2))

    # Locking -------------------------------------------------------------

    @contextmanager
    def lock(self, run_id: str) -> Iterator[None]:
        """Hold an exclusive lock for one run against this host.

        The lock file records the run id and the pid of its holder. A lock
        left behind by a process that no longer exists is taken over.
        """
        fd = self._acquire()
        with os.fdopen(fd, "w") as handle:
            json.dump({"run_id": run_id, "pid": os.getpid()}, handle)
        try:
            yield
        finally:
            self.lock_path.unlink(missing_ok=True)

    def _acquire(self) -> int:
        try:
            return os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError:
            holder, pid = self._read_lock()
            if pid is None or _pid_alive(pid):
                raise RunInProgressError(
                    f"run {holder} is already in progress ({self.lock_path})"
                ) from None
        log.warning("Removing stale lock of run %s: pid %d is gone", holder, pid)
        self.lock_path.unlink(missing_ok=True)
        try:
            return os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
        except FileExistsError as exc:
            raise RunInProgressError(f"another run took the lock at {self.lock_path}") from exc

    def _read_lock(self) -> Tuple[str, Optional[int]]:
        try:
            text = self.lock_path.read_text().strip()
        except FileNotFoundError:
            return "unknown", None
        try:
            data = json.loads(text)
        except ValueError:
            return text or "unknown", None
        if not isinstance(data, dict):
            return text, None
        pid = data.get("pid")
        return str(data.get("run_id") or "unknown"), pid if isinstance(pid, int) else None

    # Run history helpers -------------------------------------------------

    def start_run(self, run_id: str, mode: RunMode) -> None:
        state = self.load_state()
        runs = state.setdefault("runs", [])
        runs.append({"run_id": run_id, "mode": mode.value, "ok": None, "events": []})
        self.save_state(state)

    def append_run_event(self, run_id: str, event: StageEvent) -> None:
        state = self.load_state()
        runs = state.setdefault("runs", [])
        for record in runs:
            if record["run_id"] == run_id:
                record.setdefault("events", []).append(event.model_dump(mode="json"))
                break
        else:
            runs.append(
                {"run_id": run_id, "ok": None, "events": [event.model_dump(mode="json")]}
            )
        self.save_state(state)

    def finalize_run(self, run_id: str, ok: bool, summary: str | None = None) -> None:
        state = self.load_state()
        runs = state.setdefault("runs", [])
        for record in runs:
            if record["run_id"] == run_id:
                record["ok"] = ok
                if summary:
                    record["summary"] = summary
                break
        else:
            runs.append({"run_id": run_id, "ok": ok, "events": [], "summary": summary})
        self.save_state(state)

    def get_run(self, run_id: str) -> RunRecord | None:
        state = self.load_state()
        for record in state.get("runs", []):
            if record.get("run_id") == run_id:
                return RunRecord.model_validate(record)
        return None

    # Reports -------------------------------------------------------------

    def save_report(self, report: VerificationReport) -> None:
        self.report_path.write_text(report.model_dump_json(indent=2))

    def load_report(self) -> VerificationReport | None:
        if not self.report_path.exists():
            return None
        return VerificationReport.model_validate_json(self.report_path.read_text())


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # exists, owned by another user
        return True
    return True
