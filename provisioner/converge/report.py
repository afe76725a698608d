"""Per-resource outcomes and the run report built from them."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, computed_field

from ..models import Resource, RunMode, RunState


class OutcomeStatus(str, Enum):
    PASS = "PASS"
    WARN = "WARN"
    FAIL = "FAIL"


STATUS_SYMBOLS = {
    OutcomeStatus.PASS: "✓",
    OutcomeStatus.WARN: "⚠",
    OutcomeStatus.FAIL: "✗",
}


class Outcome(BaseModel):
    """Result of converging and verifying one resource."""

    resource: str = Field(..., description="Resource name")
    kind: str = Field(..., description="Resource kind")
    status: OutcomeStatus
    detail: str = ""
    skipped: bool = Field(False, description="Blocked by a failed dependency")
    actions: List[str] = Field(default_factory=list, description="Actions applied this run")

    @classmethod
    def passed(cls, resource: Resource, detail: str = "", actions: Optional[List[str]] = None) -> "Outcome":
        return cls(
            resource=resource.name,
            kind=resource.kind.value,
            status=OutcomeStatus.PASS,
            detail=detail,
            actions=actions or [],
        )

    @classmethod
    def failed(cls, resource: Resource, detail: str, actions: Optional[List[str]] = None) -> "Outcome":
        return cls(
            resource=resource.name,
            kind=resource.kind.value,
            status=OutcomeStatus.FAIL,
            detail=detail,
            actions=actions or [],
        )

    @classmethod
    def mismatch(cls, resource: Resource, detail: str, actions: Optional[List[str]] = None) -> "Outcome":
        """Outcome for a difference nothing could fix, graded by ``on_mismatch``."""
        status = OutcomeStatus.WARN if resource.on_mismatch == "warn" else OutcomeStatus.FAIL
        return cls(
            resource=resource.name,
            kind=resource.kind.value,
            status=status,
            detail=detail,
            actions=actions or [],
        )

    @classmethod
    def blocked(cls, resource: Resource, dependency: str) -> "Outcome":
        return cls(
            resource=resource.name,
            kind=resource.kind.value,
            status=OutcomeStatus.FAIL,
            detail=f"blocked by dependency {dependency}",
            skipped=True,
        )

    def line(self) -> str:
        label = "SKIPPED" if self.skipped else self.status.value
        text = f"{STATUS_SYMBOLS[self.status]} {label:<7} {self.kind} {self.resource}"
        if self.detail:
            text += f": {self.detail}"
        return text


class VerificationReport(BaseModel):
    """Ordered outcomes of one run plus counts and the exit-code mapping."""

    mode: RunMode
    state: RunState = RunState.init
    outcomes: List[Outcome] = Field(default_factory=list)
    aborted: bool = False
    abort_reason: Optional[str] = None
    started_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    finished_at: Optional[datetime] = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def counts(self) -> Dict[str, int]:
        counts = {"pass": 0, "warn": 0, "fail": 0, "skipped": 0}
        for outcome in self.outcomes:
            counts[outcome.status.value.lower()] += 1
            if outcome.skipped:
                counts["skipped"] += 1
        return counts

    @computed_field  # type: ignore[prop-decorator]
    @property
    def exit_code(self) -> int:
        """0 when everything passed, 1 for warnings only, 2 for any failure."""
        statuses = {outcome.status for outcome in self.outcomes}
        if self.aborted or OutcomeStatus.FAIL in statuses:
            return 2
        if OutcomeStatus.WARN in statuses:
            return 1
        return 0

    def record(self, outcome: Outcome) -> None:
        """Add an outcome, replacing an earlier one for the same resource in place."""
        for index, existing in enumerate(self.outcomes):
            if existing.resource == outcome.resource:
                self.outcomes[index] = outcome
                return
        self.outcomes.append(outcome)

    def get(self, resource: str) -> Optional[Outcome]:
        for outcome in self.outcomes:
            if outcome.resource == resource:
                return outcome
        return None

    def summary_lines(self) -> List[str]:
        lines = [outcome.line() for outcome in self.outcomes]
        counts = self.counts
        lines.append(
            f"{self.mode.value}: {counts['pass']} passed, {counts['warn']} warnings, "
            f"{counts['fail']} failed ({counts['skipped']} skipped) -> exit {self.exit_code}"
        )
        if self.aborted:
            lines.append(f"run aborted: {self.abort_reason}")
        return lines
