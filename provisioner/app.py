"""FastAPI entrypoint exposing apply, verify and teardown runs over HTTP."""
from __future__ import annotations

import asyncio
import json
import os
from pathlib import Path
from typing import Any, Dict, List
from uuid import uuid4

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel
from sse_starlette.sse import EventSourceResponse

from .clients.splunk import build_control_plane
from .converge.report import VerificationReport
from .converge.runner import Orchestrator, RunResult
from .errors import DeclarationError, RunInProgressError, TeardownNotConfirmed
from .models import RunMode, RunRecord, StageEvent
from .storage import DesiredStateStore, RunRepository

ROOT_DIR = Path(__file__).resolve().parents[1]

DECLARATION_PATH = Path(
    os.environ.get("PROVISIONER_DECLARATION", ROOT_DIR / "declarations" / "server.yaml")
)
STATE_DIR = Path(os.environ.get("PROVISIONER_STATE_DIR", ROOT_DIR / ".provisioner"))

app = FastAPI(title="Logstack Provisioner", version="0.1.0")
store = DesiredStateStore(DECLARATION_PATH)
repo = RunRepository(STATE_DIR)
control_plane_factory = build_control_plane


class TeardownRequest(BaseModel):
    confirm: bool = False


class RunResponse(BaseModel):
    run_id: str
    mode: RunMode
    exit_code: int
    report: VerificationReport
    events: List[StageEvent]


def _execute(mode: RunMode, confirm: bool = False) -> RunResponse:
    orchestrator = Orchestrator(store=store, repo=repo, control_plane_factory=control_plane_factory)
    run_id = str(uuid4())
    try:
        result: RunResult = orchestrator.run(run_id, mode, confirm=confirm)
    except TeardownNotConfirmed as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except RunInProgressError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    return RunResponse(
        run_id=run_id,
        mode=mode,
        exit_code=result.exit_code,
        report=result.report,
        events=result.events,
    )


@app.get("/api/declaration")
def get_declaration() -> Dict[str, Any]:
    """Return the loaded declaration without credentials or payloads."""
    try:
        return store.load().public_dump()
    except DeclarationError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc


@app.post("/api/apply", response_model=RunResponse)
def apply_declaration() -> RunResponse:
    """Converge every declared resource and verify the result."""
    return _execute(RunMode.apply)


@app.post("/api/verify", response_model=RunResponse)
def verify_declaration() -> RunResponse:
    """Probe and judge every declared resource without changing anything."""
    return _execute(RunMode.verify)


@app.post("/api/teardown", response_model=RunResponse)
def teardown_declaration(request: TeardownRequest) -> RunResponse:
    """Remove every declared resource in reverse dependency order."""
    return _execute(RunMode.teardown, confirm=request.confirm)


@app.get("/api/runs/{run_id}", response_model=RunRecord)
def get_run(run_id: str) -> RunRecord:
    record = repo.get_run(run_id)
    if record is None:
        raise HTTPException(status_code=404, detail=f"run {run_id} not found")
    return record


@app.get("/api/reports/latest", response_model=VerificationReport)
def latest_report() -> VerificationReport:
    report = repo.load_report()
    if report is None:
        raise HTTPException(status_code=404, detail="no report recorded yet")
    return report


@app.get("/api/runs/{run_id}/events")
async def stream_run_events(run_id: str) -> EventSourceResponse:
    """Stream converge events for a given run identifier."""

    async def event_generator():
        sent = 0
        while True:
            record = repo.get_run(run_id)
            if record is None:
                yield {
                    "event": "error",
                    "data": json.dumps({"message": "run_not_found"}),
                }
                return

            while sent < len(record.events):
                event = record.events[sent]
                sent += 1
                yield {
                    "event": "stage",
                    "data": event.model_dump_json(),
                }

            if record.ok is not None:
                yield {
                    "event": "status",
                    "data": json.dumps(
                        {"ok": record.ok, "summary": record.summary or ""}
                    ),
                }
                return

            await asyncio.sleep(0.5)

    return EventSourceResponse(event_generator())
