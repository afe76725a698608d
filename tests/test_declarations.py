"""End-to-end runs of the bundled declarations against in-memory control planes."""
from __future__ import annotations

import pytest
from pathlib import Path
from unittest.mock import MagicMock

import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from provisioner.converge.report import OutcomeStatus
from provisioner.converge.runner import Orchestrator
from provisioner.storage import DesiredStateStore

DECLARATIONS = Path(__file__).parent.parent / "declarations"

APP_BUNDLE = [
    "deployment-apps/app_monitoring/default/inputs.conf",
    "deployment-apps/app_monitoring/default/props.conf",
    "deployment-apps/app_monitoring/metadata/default.meta",
    "deployment-apps/app_monitoring/bin/system_metrics.py",
]


def orchestrator_for(name: str, planes, repo) -> Orchestrator:
    return Orchestrator(
        store=DesiredStateStore(DECLARATIONS / name),
        repo=repo,
        control_plane_factory=lambda target, settings: planes[target],
        sleep=MagicMock(),
    )


def last_write(mutations) -> int:
    return max(i for i, call in enumerate(mutations) if call.startswith("write_config:"))


class TestServerDeclaration:
    """The indexer / deployment server install."""

    @pytest.fixture
    def server(self, plane_factory):
        plane = plane_factory("server")
        plane.service_ports = {8000, 8089}
        plane.config_ports = {"system/local/inputs.conf": {9997}}
        return plane

    def test_fresh_install(self, server, repo):
        result = orchestrator_for("server.yaml", {"server": server}, repo).apply("install")

        assert result.exit_code == 0, result.report.summary_lines()
        assert server.mutations[:2] == ["install", "start"]
        assert sorted(server.indexes) == ["app_logs", "infrastructure", "security", "system_metrics"]
        assert server.indexes["security"] == {"maxDataSize": 5000, "maxHotBuckets": 5}

    def test_full_app_bundle_written(self, server, repo):
        orchestrator_for("server.yaml", {"server": server}, repo).apply("install")

        assert set(APP_BUNDLE) <= set(server.configs)
        assert server.modes["deployment-apps/app_monitoring/bin/system_metrics.py"] == "0755"
        assert server.modes["deployment-apps/app_monitoring/default/props.conf"] is None

    def test_config_loaded_by_one_restart_after_writes(self, server, repo):
        """All config writes land before a single restart, which opens the receiving port."""
        result = orchestrator_for("server.yaml", {"server": server}, repo).apply("install")

        mutations = server.mutations
        assert mutations[-2:] == ["stop", "start"]
        assert mutations.count("stop") == 1
        assert last_write(mutations) < mutations.index("stop")
        assert result.report.get("receiving").status is OutcomeStatus.PASS
        splunkd = result.report.get("splunkd")
        assert splunkd.actions == ["install(splunkd)", "start(splunkd)", "stop(splunkd)", "start(splunkd)"]
        assert splunkd.detail.startswith("restarted to load system-inputs, saved-searches")

    def test_reapply_changes_nothing(self, server, repo):
        orchestrator = orchestrator_for("server.yaml", {"server": server}, repo)
        orchestrator.apply("install")
        server.calls.clear()

        result = orchestrator.apply("again")

        assert server.mutations == []
        assert result.exit_code == 0

    def test_drifted_config_restored_and_reloaded(self, server, repo):
        orchestrator = orchestrator_for("server.yaml", {"server": server}, repo)
        orchestrator.apply("install")
        server.configs["system/local/inputs.conf"] = "0" * 64
        server.calls.clear()

        result = orchestrator.apply("repair")

        assert server.mutations == ["write_config:system/local/inputs.conf", "stop", "start"]
        assert result.report.get("system-inputs").actions == ["configure(system-inputs)"]
        assert result.report.get("splunkd").detail == "restarted to load system-inputs"
        assert result.exit_code == 0

    def test_receiving_port_down_only_warns(self, server, repo):
        server.config_ports = {}

        result = orchestrator_for("server.yaml", {"server": server}, repo).apply("install")

        assert result.report.get("receiving").status is OutcomeStatus.WARN
        assert result.exit_code == 1

    def test_teardown_removes_everything(self, server, repo):
        orchestrator = orchestrator_for("server.yaml", {"server": server}, repo)
        orchestrator.apply("install")
        server.calls.clear()

        result = orchestrator.teardown("remove", confirm=True)

        assert result.exit_code == 0, result.report.summary_lines()
        assert server.mutations[-2:] == ["stop", "uninstall"]
        assert server.mutations[0] == "remove_config:deployment-apps/app_monitoring/bin/system_metrics.py"
        assert "start" not in server.mutations
        assert not server.installed

    def test_teardown_of_stopped_server(self, server, repo):
        """A stopped install is still removed; its indexes go with the product."""
        orchestrator = orchestrator_for("server.yaml", {"server": server}, repo)
        orchestrator.apply("install")
        server.running = False
        server.calls.clear()

        result = orchestrator.teardown("remove", confirm=True)

        assert result.exit_code == 0, result.report.summary_lines()
        assert "list_indexes" not in server.calls
        assert not any(call.startswith("remove_index") for call in server.calls)
        assert server.mutations[-1] == "uninstall"
        assert "stop" not in server.mutations
        assert result.report.get("app_logs").detail == "removed with the stopped product"
        assert not server.installed


class TestForwarderDeclaration:
    """The Universal Forwarder install."""

    def test_fresh_install(self, plane_factory, repo):
        forwarder = plane_factory("forwarder")
        forwarder.config_ports = {"system/local/web.conf": {8188}}

        result = orchestrator_for("forwarder.yaml", {"forwarder": forwarder}, repo).apply("install")

        assert result.exit_code == 0, result.report.summary_lines()
        assert set(forwarder.configs) == {
            "system/local/web.conf",
            "system/local/outputs.conf",
            "system/local/deploymentclient.conf",
        }
        assert forwarder.mutations.count("stop") == 1
        assert last_write(forwarder.mutations) < forwarder.mutations.index("stop")
        assert result.report.get("forwarder-management").status is OutcomeStatus.PASS
