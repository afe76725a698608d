"""Tests for the command-line entry point."""
from __future__ import annotations

import json
import pytest
from pathlib import Path
from unittest.mock import patch

import sys
sys.path.insert(0, str(Path(__file__).parent.parent.parent))

from provisioner import cli


@pytest.fixture
def wired(fake_plane):
    """Route the CLI's control planes to the in-memory fake."""
    with patch("provisioner.cli.control_plane_factory", lambda name, settings: fake_plane):
        yield fake_plane


def run_cli(*args: str) -> int:
    return cli.main(list(args))


class TestCommands:
    """Tests for apply, verify and teardown subcommands."""

    def test_apply_prints_report(self, wired, write_declaration, core_declaration, temp_dir, capsys):
        path = write_declaration(core_declaration)

        code = run_cli("apply", str(path), "--state-dir", str(temp_dir / "state"))

        out = capsys.readouterr().out
        assert code == 0
        assert "service core: converged" in out
        assert "index main: converged" in out
        assert wired.mutations == ["install", "start", "create_index:main"]

    def test_verify_exit_code_on_failure(self, wired, write_declaration, core_declaration, temp_dir, capsys):
        path = write_declaration(core_declaration)

        code = run_cli("verify", str(path), "--state-dir", str(temp_dir / "state"))

        assert code == 2
        assert "SKIPPED" in capsys.readouterr().out
        assert wired.mutations == []

    def test_teardown_requires_yes(self, wired, write_declaration, core_declaration, temp_dir, capsys):
        path = write_declaration(core_declaration)

        code = run_cli("teardown", str(path), "--state-dir", str(temp_dir / "state"))

        assert code == 2
        assert "refusing to tear down" in capsys.readouterr().out
        assert wired.calls == []

    def test_teardown_with_yes(self, wired, write_declaration, core_declaration, temp_dir):
        path = write_declaration(core_declaration)
        state = str(temp_dir / "state")
        run_cli("apply", str(path), "--state-dir", state)

        code = run_cli("teardown", str(path), "--state-dir", state, "--yes")

        assert code == 0
        assert not wired.installed

    def test_report_written(self, wired, write_declaration, core_declaration, temp_dir):
        path = write_declaration(core_declaration)
        report = temp_dir / "report.json"

        run_cli("apply", str(path), "--state-dir", str(temp_dir / "state"), "--report", str(report))

        data = json.loads(report.read_text())
        assert data["exit_code"] == 0
        assert [o["resource"] for o in data["outcomes"]] == ["core", "main"]

    def test_abort_still_prints_every_resource(self, wired, write_declaration, temp_dir, capsys):
        path = write_declaration(
            {
                "resources": [
                    {"kind": "index", "name": "a", "depends_on": ["b"]},
                    {"kind": "index", "name": "b", "depends_on": ["a"]},
                ]
            }
        )

        code = run_cli("apply", str(path), "--state-dir", str(temp_dir / "state"))

        out = capsys.readouterr().out
        assert code == 2
        assert "index a: run aborted" in out
        assert "index b: run aborted" in out
        assert "run aborted: dependency cycle" in out

    def test_run_in_progress(self, wired, write_declaration, core_declaration, temp_dir, capsys):
        state = temp_dir / "state"
        state.mkdir()
        (state / "run.lock").write_text("other")

        code = run_cli("apply", str(write_declaration(core_declaration)), "--state-dir", str(state))

        assert code == 2
        assert "already in progress" in capsys.readouterr().out

    def test_unknown_mode_rejected(self):
        with pytest.raises(SystemExit):
            run_cli("destroy", "x.yaml")
