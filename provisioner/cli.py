"""Command-line entry point: provisioner {apply,verify,teardown} DECLARATION."""
from __future__ import annotations

import logging
import uuid
from argparse import ArgumentParser
from pathlib import Path
from typing import List, Optional, Sequence

from .clients.splunk import build_control_plane
from .converge.runner import Orchestrator
from .errors import RunInProgressError, TeardownNotConfirmed
from .models import RunMode
from .storage import DesiredStateStore, RunRepository

log = logging.getLogger(__name__)

DEFAULT_STATE_DIR = Path("/var/lib/provisioner")

control_plane_factory = build_control_plane


def build_parser() -> ArgumentParser:
    parser = ArgumentParser(
        prog="provisioner",
        description="Converge a log-management server and forwarder toward a declared state.",
    )
    parser.add_argument("mode", choices=[mode.value for mode in RunMode])
    parser.add_argument("declaration", type=Path, help="YAML desired-state declaration")
    parser.add_argument(
        "--state-dir",
        type=Path,
        default=DEFAULT_STATE_DIR,
        help="Directory holding run history, the last report and the run lock",
    )
    parser.add_argument("--report", type=Path, help="Also write the JSON report to this path")
    parser.add_argument(
        "--yes",
        action="store_true",
        help="Confirm a destructive teardown",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)7s %(name)s %(message)s",
    )

    mode = RunMode(args.mode)
    orchestrator = Orchestrator(
        store=DesiredStateStore(args.declaration),
        repo=RunRepository(args.state_dir),
        control_plane_factory=control_plane_factory,
    )
    run_id = uuid.uuid4().hex
    try:
        result = orchestrator.run(run_id, mode, confirm=args.yes)
    except TeardownNotConfirmed as exc:
        print(f"refusing to tear down: {exc} (re-run with --yes)")
        return 2
    except RunInProgressError as exc:
        print(f"cannot start run: {exc}")
        return 2

    lines: List[str] = result.report.summary_lines()
    for line in lines:
        print(line)
    if args.report:
        args.report.write_text(result.report.model_dump_json(indent=2))
        log.info("Report written to %s", args.report)
    return result.exit_code
