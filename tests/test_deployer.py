"""Tests for the deployment trigger and the Helm release manager."""

import json
import subprocess
from unittest.mock import patch

import pytest

from control_plane.errors import StoreError, Unavailable
from control_plane.resources import Application, ServiceInstance
from control_plane.services.deployer import DeploymentTrigger
from control_plane.services.helm import HelmReleaseManager


def _app(**configurations):
    return Application(namespace="workspace", name="web", configurations=configurations)


def _completed(returncode=0, stdout="", stderr=""):
    return subprocess.CompletedProcess(args=["helm"], returncode=returncode, stdout=stdout, stderr=stderr)


def _status(state):
    return _completed(stdout=json.dumps({"info": {"status": state}}))


class TestDeploymentTrigger:
    def test_restart_issues_one_redeploy(self, release_manager):
        trigger = DeploymentTrigger(release_manager)

        assert trigger.trigger(_app(c1="s1")) is True
        assert release_manager.redeploys == [("workspace", "web", ["c1"])]

    def test_restart_false_skips_release_manager(self, release_manager):
        trigger = DeploymentTrigger(release_manager)

        assert trigger.trigger(_app(c1="s1"), restart=False) is False
        assert release_manager.redeploys == []

    def test_app_without_release_is_not_redeployed(self, release_manager):
        release_manager.deployed = False

        assert DeploymentTrigger(release_manager).trigger(_app()) is False

    def test_release_manager_failure_propagates(self, release_manager):
        release_manager.fail = Unavailable("busy")

        with pytest.raises(Unavailable):
            DeploymentTrigger(release_manager).trigger(_app())


class TestHelmReleaseManager:
    @patch("control_plane.services.helm.subprocess.run")
    def test_redeploy_upgrades_with_configurations_and_restart_token(self, mock_run, settings):
        mock_run.side_effect = [_status("deployed"), _completed()]

        issued = HelmReleaseManager(settings).redeploy_app(_app(c1="s1", c2="s2"))

        assert issued is True
        upgrade = mock_run.call_args_list[1][0][0]
        assert upgrade[:3] == ["helm", "upgrade", "web"]
        assert "--reuse-values" in upgrade
        assert "app.configurations={c1,c2}" in upgrade
        token = upgrade[upgrade.index("--set-string") + 1]
        assert token.startswith("app.restartedAt=")

    @patch("control_plane.services.helm.subprocess.run")
    def test_redeploy_without_release_returns_false(self, mock_run, settings):
        mock_run.return_value = _completed(returncode=1, stderr="Error: release: not found")

        assert HelmReleaseManager(settings).redeploy_app(_app()) is False
        assert mock_run.call_count == 1

    @patch("control_plane.services.helm.subprocess.run")
    def test_busy_release_is_unavailable(self, mock_run, settings):
        mock_run.return_value = _status("pending-upgrade")

        with pytest.raises(Unavailable, match="pending-upgrade"):
            HelmReleaseManager(settings).redeploy_app(_app())
        assert mock_run.call_count == 1

    @patch("control_plane.services.helm.subprocess.run")
    def test_failed_upgrade_is_unavailable(self, mock_run, settings):
        mock_run.side_effect = [_status("deployed"), _completed(returncode=1, stderr="boom")]

        with pytest.raises(Unavailable, match="rc=1"):
            HelmReleaseManager(settings).redeploy_app(_app())

    @patch("control_plane.services.helm.subprocess.run")
    def test_timeout_is_unavailable(self, mock_run, settings):
        mock_run.side_effect = subprocess.TimeoutExpired(cmd="helm", timeout=1)

        with pytest.raises(Unavailable, match="timed out"):
            HelmReleaseManager(settings).run(["upgrade", "web"])

    @patch("control_plane.services.helm.subprocess.run")
    def test_missing_binary_is_store_error(self, mock_run, settings):
        mock_run.side_effect = FileNotFoundError("helm")

        with pytest.raises(StoreError):
            HelmReleaseManager(settings).run(["version"])

    @patch("control_plane.services.helm.subprocess.run")
    def test_unparseable_status_is_unknown(self, mock_run, settings):
        mock_run.return_value = _completed(stdout="not json")

        assert HelmReleaseManager(settings).release_status("web", "workspace") == "unknown"

    @patch("control_plane.services.helm.subprocess.run")
    def test_upgrade_service_passes_repo_version_and_values(self, mock_run, settings):
        mock_run.return_value = _completed()
        service = ServiceInstance(
            namespace="workspace", name="db", chart="mysql",
            repo_url="https://charts.example.com", chart_version="9.1.0",
            values={"auth.database": "shop"},
        )

        HelmReleaseManager(settings).upgrade_service(service)

        cmd = mock_run.call_args[0][0]
        assert cmd[:4] == ["helm", "upgrade", "svc-db", "mysql"]
        assert cmd[cmd.index("--repo") + 1] == "https://charts.example.com"
        assert cmd[cmd.index("--version") + 1] == "9.1.0"
        assert "auth.database=shop" in cmd

    @patch("control_plane.services.helm.subprocess.run")
    def test_uninstall_skips_missing_release(self, mock_run, settings):
        mock_run.return_value = _completed(returncode=1)

        HelmReleaseManager(settings).uninstall("svc-db", "workspace")

        assert mock_run.call_count == 1

    @patch("control_plane.services.helm.subprocess.run")
    def test_uninstall_existing_release(self, mock_run, settings):
        mock_run.side_effect = [_status("deployed"), _completed()]

        HelmReleaseManager(settings).uninstall("svc-db", "workspace")

        assert mock_run.call_args_list[1][0][0] == ["helm", "uninstall", "svc-db", "-n", "workspace"]


def test_trigger_records_redeploy_metric(release_manager):
    with patch("control_plane.services.deployer.telemetry") as mock_telemetry:
        DeploymentTrigger(release_manager).trigger(_app())

    mock_telemetry.record_redeploy.assert_called_once()
    event_type = mock_telemetry.publish_event.call_args[0][1]
    assert event_type == "REDEPLOY"


def test_suppressed_restart_publishes_event(release_manager):
    with patch("control_plane.services.deployer.telemetry") as mock_telemetry:
        DeploymentTrigger(release_manager).trigger(_app(), restart=False)

    mock_telemetry.record_redeploy.assert_not_called()
    assert mock_telemetry.publish_event.call_args[0][1] == "RESTART_SUPPRESSED"
